"""Unit tests for select_addresses."""

from kubernetes_cloudflare_sync.cli import LabelSelector, Node, NodeAddress, select_addresses


def make_node(
    name: str,
    external: tuple = (),
    internal: tuple = (),
    ready: bool = True,
    labels: dict | None = None,
) -> Node:
    """Create a Node for testing."""
    addresses = tuple(NodeAddress("ExternalIP", ip) for ip in external) + tuple(
        NodeAddress("InternalIP", ip) for ip in internal
    )
    return Node(name=name, addresses=addresses, ready=ready, labels=labels or {})


def test_collects_external_addresses_sorted() -> None:
    nodes = [
        make_node("b", external=("203.0.113.20",), internal=("10.0.0.2",)),
        make_node("a", external=("203.0.113.10",), internal=("10.0.0.1",)),
    ]

    assert select_addresses(nodes) == ["203.0.113.10", "203.0.113.20"]


def test_result_independent_of_input_order() -> None:
    nodes = [
        make_node("a", external=("198.51.100.3", "198.51.100.1")),
        make_node("b", external=("198.51.100.2",)),
    ]

    assert select_addresses(nodes) == select_addresses(list(reversed(nodes)))


def test_duplicate_addresses_are_collapsed() -> None:
    nodes = [
        make_node("a", external=("203.0.113.10",)),
        make_node("b", external=("203.0.113.10",)),
    ]

    assert select_addresses(nodes) == ["203.0.113.10"]


def test_not_ready_node_contributes_nothing() -> None:
    nodes = [
        make_node("ready", external=("203.0.113.10",)),
        make_node("broken", external=("203.0.113.99",), ready=False),
    ]

    assert select_addresses(nodes) == ["203.0.113.10"]


def test_all_not_ready_yields_empty_set() -> None:
    nodes = [
        make_node("a", external=("203.0.113.10",), ready=False),
        make_node("b", external=("203.0.113.11",), internal=("10.0.0.1",), ready=False),
    ]

    assert select_addresses(nodes, use_internal_ip=True) == []
    assert select_addresses([]) == []


def test_internal_fallback_when_no_external_addresses() -> None:
    nodes = [make_node("a", internal=("10.0.0.1",)), make_node("b", internal=("10.0.0.2",))]

    assert select_addresses(nodes, use_internal_ip=True) == ["10.0.0.1", "10.0.0.2"]
    assert select_addresses(nodes, use_internal_ip=False) == []


def test_internal_fallback_is_never_additive() -> None:
    nodes = [
        make_node("a", external=("203.0.113.10",), internal=("10.0.0.1",)),
        make_node("b", internal=("10.0.0.2",)),
    ]

    assert select_addresses(nodes, use_internal_ip=True) == ["203.0.113.10"]


def test_skip_external_uses_internal_only() -> None:
    nodes = [make_node("a", external=("203.0.113.10",), internal=("10.0.0.1",))]

    assert select_addresses(nodes, skip_external_ip=True, use_internal_ip=True) == ["10.0.0.1"]
    assert select_addresses(nodes, skip_external_ip=True) == []


def test_other_address_types_are_ignored() -> None:
    node = Node(
        name="a",
        addresses=(NodeAddress("Hostname", "node-a"), NodeAddress("ExternalDNS", "a.example.com")),
        ready=True,
    )

    assert select_addresses([node], use_internal_ip=True) == []


def test_selector_filters_nodes() -> None:
    nodes = [
        make_node("edge", external=("203.0.113.10",), labels={"role": "edge"}),
        make_node("worker", external=("203.0.113.20",), labels={"role": "worker"}),
    ]

    assert select_addresses(nodes, LabelSelector("role=edge")) == ["203.0.113.10"]
    assert select_addresses(nodes, LabelSelector("")) == ["203.0.113.10", "203.0.113.20"]
