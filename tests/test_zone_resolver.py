"""Unit tests for find_zone."""

import pytest

from kubernetes_cloudflare_sync.cli import Zone, ZoneNotFoundError, find_zone

EXAMPLE = Zone(id="zone-example", name="example.com")
ANOTHER = Zone(id="zone-another", name="anotherexample.com")
COUK = Zone(id="zone-couk", name="example.co.uk")


def test_exact_match() -> None:
    assert find_zone([EXAMPLE], "example.com") == EXAMPLE


def test_subdomain_match() -> None:
    assert find_zone([EXAMPLE], "kubernetes.example.com") == EXAMPLE


def test_co_uk_style_domain() -> None:
    assert find_zone([EXAMPLE, COUK], "subdomain.example.co.uk") == COUK


def test_suffix_without_dot_boundary_does_not_match() -> None:
    assert find_zone([EXAMPLE, ANOTHER], "anotherexample.com") == ANOTHER
    assert find_zone([ANOTHER, EXAMPLE], "anotherexample.com") == ANOTHER

    with pytest.raises(ZoneNotFoundError):
        find_zone([EXAMPLE], "anotherexample.com")


def test_longest_zone_wins() -> None:
    delegated = Zone(id="zone-k8s", name="k8s.example.com")

    assert find_zone([EXAMPLE, delegated], "nodes.k8s.example.com") == delegated
    assert find_zone([delegated, EXAMPLE], "nodes.k8s.example.com") == delegated
    assert find_zone([delegated, EXAMPLE], "www.example.com") == EXAMPLE


def test_match_is_case_insensitive_and_ignores_trailing_dot() -> None:
    assert find_zone([Zone(id="z", name="Example.COM.")], "K8S.example.com").id == "z"


def test_no_zones_raises() -> None:
    with pytest.raises(ZoneNotFoundError) as excinfo:
        find_zone([], "k8s.example.com")

    assert excinfo.value.hostname == "k8s.example.com"
    assert "k8s.example.com" in str(excinfo.value)
