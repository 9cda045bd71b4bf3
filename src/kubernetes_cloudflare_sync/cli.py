#!/usr/bin/env python3
"""kubernetes-cloudflare-sync - Node IP to Cloudflare DNS Synchronization

Keeps the Cloudflare A records of one or more hostnames pointed at the
addresses of the ready nodes in a Kubernetes cluster. Node add/update/delete
events (and a periodic resync) trigger a reconciliation pass: the current
node address set is computed, compared against the last applied one, and when
it changed every configured hostname is converged to exactly one A record per
address.

Every option can be given as a command-line flag, an environment variable, or
a key in a YAML config file (flags win over environment, environment wins over
the file).

Environment variables:

    DNS Names:
        DNS_NAME               Hostnames to manage, comma-separated (same root expected)
                               Example: "k8s.example.com,nodes.example.com"

    Cloudflare:
        CF_API_TOKEN           API token (takes precedence over email + key)
        CF_API_EMAIL           Account email (legacy global API key auth)
        CF_API_KEY             Global API key (legacy global API key auth)
        CF_PROXY               Proxy records through Cloudflare (default: false)
        CF_TTL                 Record TTL in seconds (default: 120)

    Node Selection:
        NODE_SELECTOR          Kubernetes label selector, e.g. "role=edge,zone in (a,b)"
                               Empty = all nodes. An invalid selector is logged
                               and ignored.
        USE_INTERNAL_IP        Fall back to InternalIP addresses when no node
                               has an ExternalIP (default: false)
        SKIP_EXTERNAL_IP       Never publish ExternalIP addresses; use together
                               with USE_INTERNAL_IP (default: false)

    Runtime:
        SYNC_MODE              "once" or "watch" (default: watch)
        RESYNC_PERIOD_SECONDS  Periodic resync in watch mode (default: 60)
        RETRY_FAILED_SYNC      Retry an unchanged address set after a failed
                               pass instead of waiting for it to change
                               (default: false)
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)
        CONFIG_PATH            Optional YAML config file. Keys are the long flag
                               names with underscores, for example:
                                 dns_name:
                                   - k8s.example.com
                                 cloudflare_ttl: 300
                                 use_internal_ip: true
"""

from __future__ import annotations

import argparse
import logging
import os
import re
import sys
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import requests
import urllib3
import yaml
from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes import watch as k8s_watch
from kubernetes.client.rest import ApiException

# =============================================================================
# Configuration
# =============================================================================

CLOUDFLARE_API_URL = "https://api.cloudflare.com/client/v4"
RECORD_TYPE_A = "A"

DEFAULT_TTL = 120
DEFAULT_RESYNC_PERIOD_SECONDS = 60
MIN_RESYNC_PERIOD_SECONDS = 5
SYNC_MODES = ("once", "watch")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Option name -> environment variable supplying its default.
OPTION_ENV_VARS: Dict[str, str] = {
    "dns_name": "DNS_NAME",
    "cloudflare_api_token": "CF_API_TOKEN",
    "cloudflare_api_email": "CF_API_EMAIL",
    "cloudflare_api_key": "CF_API_KEY",
    "cloudflare_proxy": "CF_PROXY",
    "cloudflare_ttl": "CF_TTL",
    "use_internal_ip": "USE_INTERNAL_IP",
    "skip_external_ip": "SKIP_EXTERNAL_IP",
    "node_selector": "NODE_SELECTOR",
    "retry_failed_sync": "RETRY_FAILED_SYNC",
    "resync_period": "RESYNC_PERIOD_SECONDS",
    "sync_mode": "SYNC_MODE",
    "log_level": "LOG_LEVEL",
}
BOOL_OPTIONS = {"use_internal_ip", "skip_external_ip", "retry_failed_sync"}

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Errors
# =============================================================================


class SyncError(Exception):
    """Base class for all synchronization errors."""


class ConfigError(SyncError):
    """Missing or invalid configuration. Fatal at startup."""


class ZoneNotFoundError(SyncError):
    """No provider zone owns the hostname."""

    def __init__(self, hostname: str):
        super().__init__(f"zone id not found for dns-name={hostname}")
        self.hostname = hostname


class ProviderError(SyncError):
    """A DNS provider call failed (network, HTTP or API error)."""


class ClusterListError(SyncError):
    """Listing cluster nodes failed."""


# =============================================================================
# Enums
# =============================================================================


class AddressType(str, Enum):
    """Kubernetes node address types the selector knows about."""

    INTERNAL = "InternalIP"
    EXTERNAL = "ExternalIP"


class DriverState(Enum):
    """Phases of a reconciliation pass.

    IDLE -> COMPUTING_ADDRESSES -> IDLE                       (unchanged)
    IDLE -> COMPUTING_ADDRESSES -> RESOLVING_ZONES -> RECONCILING -> IDLE
    """

    IDLE = "idle"
    COMPUTING_ADDRESSES = "computing_addresses"
    RESOLVING_ZONES = "resolving_zones"
    RECONCILING = "reconciling"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class NodeAddress:
    """One labeled address of a node."""

    type: str
    address: str


@dataclass(frozen=True)
class Node:
    """Snapshot of a cluster node as seen by the address selector."""

    name: str
    addresses: Tuple[NodeAddress, ...] = ()
    ready: bool = False
    labels: Dict[str, str] = field(default_factory=dict, hash=False)


@dataclass(frozen=True)
class Zone:
    """A provider-managed zone."""

    id: str
    name: str


@dataclass(frozen=True)
class DNSRecord:
    """Represents a DNS record as known to the provider."""

    type: str
    name: str
    content: str
    ttl: int
    proxied: bool = False
    id: str = ""


@dataclass
class RecordPlan:
    """Operations needed to converge one hostname's A records."""

    updates: List[DNSRecord] = field(default_factory=list)
    deletes: List[DNSRecord] = field(default_factory=list)
    creates: List[DNSRecord] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.updates or self.deletes or self.creates)


@dataclass
class SyncResult:
    """Outcome of one resync trigger."""

    addresses: List[str]
    changed: bool = False
    synced: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    error: str = ""

    @property
    def ok(self) -> bool:
        return not self.failed and not self.error


# =============================================================================
# Label Selectors
# =============================================================================

_LABEL_KEY = r"(?:[A-Za-z0-9](?:[-A-Za-z0-9_.]*[A-Za-z0-9])?/)?[A-Za-z0-9](?:[-A-Za-z0-9_.]*[A-Za-z0-9])?"
_LABEL_VALUE = r"(?:[A-Za-z0-9](?:[-A-Za-z0-9_.]*[A-Za-z0-9])?)?"


class LabelSelector:
    """Kubernetes label selector supporting equality and set based requirements.

    Supported forms (comma-separated, all must match):
        key, !key, key=value, key==value, key!=value,
        key in (v1,v2), key notin (v1,v2)
    """

    EXISTS_RE = re.compile(rf"^(!?)\s*({_LABEL_KEY})$")
    EQUALITY_RE = re.compile(rf"^({_LABEL_KEY})\s*(==|=|!=)\s*({_LABEL_VALUE})$")
    SET_RE = re.compile(rf"^({_LABEL_KEY})\s+(in|notin)\s*\(([^()]*)\)$")
    VALUE_RE = re.compile(rf"^{_LABEL_VALUE}$")

    def __init__(self, expression: str = ""):
        self.expression = (expression or "").strip()
        self._requirements: List[Tuple[str, str, frozenset]] = [
            self._parse_requirement(part) for part in self._split(self.expression)
        ]

    @property
    def empty(self) -> bool:
        return not self._requirements

    def matches(self, labels: Dict[str, str]) -> bool:
        for key, operator, values in self._requirements:
            present = key in labels
            if operator == "exists" and not present:
                return False
            if operator == "!exists" and present:
                return False
            if operator in ("=", "in") and (not present or labels[key] not in values):
                return False
            if operator in ("!=", "notin") and present and labels[key] in values:
                return False
        return True

    def __str__(self) -> str:
        return self.expression

    def __repr__(self) -> str:
        return f"LabelSelector({self.expression!r})"

    @staticmethod
    def _split(expression: str) -> List[str]:
        if not expression:
            return []

        parts: List[str] = []
        depth = 0
        current = ""
        for char in expression:
            if char == "(":
                depth += 1
            elif char == ")":
                depth -= 1
                if depth < 0:
                    raise ValueError(f"unbalanced parenthesis in selector '{expression}'")
            if char == "," and depth == 0:
                parts.append(current.strip())
                current = ""
                continue
            current += char
        if depth != 0:
            raise ValueError(f"unbalanced parenthesis in selector '{expression}'")
        parts.append(current.strip())

        if any(not part for part in parts):
            raise ValueError(f"empty requirement in selector '{expression}'")
        return parts

    def _parse_requirement(self, text: str) -> Tuple[str, str, frozenset]:
        match = self.SET_RE.match(text)
        if match:
            key, operator, raw_values = match.groups()
            values = [v.strip() for v in raw_values.split(",")]
            if not any(values) or not all(self.VALUE_RE.match(v) for v in values):
                raise ValueError(f"invalid values in requirement '{text}'")
            return key, operator, frozenset(values)

        match = self.EQUALITY_RE.match(text)
        if match:
            key, operator, value = match.groups()
            return key, "=" if operator == "==" else operator, frozenset([value])

        match = self.EXISTS_RE.match(text)
        if match:
            negated, key = match.groups()
            return key, "!exists" if negated else "exists", frozenset()

        raise ValueError(f"invalid requirement '{text}'")


# =============================================================================
# Settings
# =============================================================================


@dataclass(frozen=True)
class Settings:
    """Validated runtime configuration."""

    hostnames: Tuple[str, ...]
    api_token: str = ""
    api_email: str = ""
    api_key: str = ""
    ttl: int = DEFAULT_TTL
    proxied: bool = False
    use_internal_ip: bool = False
    skip_external_ip: bool = False
    node_selector: LabelSelector = field(default_factory=LabelSelector)
    retry_failed_sync: bool = False
    resync_period: int = DEFAULT_RESYNC_PERIOD_SECONDS
    sync_mode: str = "watch"


def _build_parser() -> argparse.ArgumentParser:
    """Create the CLI parser. Defaults are filled in by parse_options()."""
    parser = argparse.ArgumentParser(
        prog="kubernetes-cloudflare-sync",
        description="Sync Kubernetes node IPs into Cloudflare DNS A records.",
    )
    parser.add_argument("--config", default="", help="YAML config file (env: CONFIG_PATH)")
    parser.add_argument(
        "--dns-name",
        help="the dns name for the nodes, comma-separated for multiple (same root)",
    )
    parser.add_argument("--cloudflare-api-token", help="the api token to use for cloudflare")
    parser.add_argument("--cloudflare-api-email", help="the email address to use for cloudflare")
    parser.add_argument("--cloudflare-api-key", help="the key to use for cloudflare")
    parser.add_argument(
        "--cloudflare-proxy", help="enable cloudflare proxy on dns (default false)"
    )
    parser.add_argument("--cloudflare-ttl", help=f"ttl for dns (default {DEFAULT_TTL})")
    parser.add_argument(
        "--use-internal-ip",
        action="store_true",
        default=None,
        help="use internal ips too if external ip's are not available",
    )
    parser.add_argument(
        "--skip-external-ip",
        action="store_true",
        default=None,
        help="don't sync external IPs (use in conjunction with --use-internal-ip)",
    )
    parser.add_argument("--node-selector", help="node selector query")
    parser.add_argument(
        "--retry-failed-sync",
        action="store_true",
        default=None,
        help="retry the same node ips on the next trigger after a failed sync",
    )
    parser.add_argument(
        "--resync-period",
        help=f"seconds between periodic resyncs in watch mode (default {DEFAULT_RESYNC_PERIOD_SECONDS})",
    )
    parser.add_argument("--sync-mode", choices=SYNC_MODES, help="once or watch (default watch)")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING, ERROR (default INFO)")
    return parser


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load option defaults from a YAML config file.

    Args:
        config_path: Path to the YAML file

    Returns:
        Mapping of option name to value. Unknown keys are logged and dropped.

    Raises:
        ConfigError: If the file can't be read or isn't a YAML mapping
    """
    path = Path(config_path)
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to load config from {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")

    options: Dict[str, Any] = {}
    for key, value in data.items():
        option = str(key).strip().replace("-", "_")
        if option not in OPTION_ENV_VARS:
            logger.warning(f"Ignoring unknown config key '{key}' in {config_path}")
            continue
        if option == "dns_name" and isinstance(value, list):
            value = ",".join(str(v) for v in value)
        elif option in BOOL_OPTIONS:
            value = _parse_bool(value, default=False)
        options[option] = value
    return options


def parse_options(
    argv: Optional[Sequence[str]] = None, environ: Optional[Dict[str, str]] = None
) -> argparse.Namespace:
    """Parse options with precedence flags > environment > config file."""
    environ = os.environ if environ is None else environ
    parser = _build_parser()

    known, _ = parser.parse_known_args(argv)
    config_path = known.config or environ.get("CONFIG_PATH", "")

    defaults: Dict[str, Any] = {}
    if config_path:
        defaults.update(load_config_file(config_path))
        logger.info(f"Loaded config file {config_path}")

    for option, env_name in OPTION_ENV_VARS.items():
        value = environ.get(env_name, "")
        if not value:
            continue
        defaults[option] = _parse_bool(value, default=False) if option in BOOL_OPTIONS else value

    parser.set_defaults(**defaults)
    return parser.parse_args(argv)


def build_settings(options: argparse.Namespace) -> Settings:
    """Validate parsed options into Settings.

    Raises:
        ConfigError: If hostnames or Cloudflare credentials are missing
    """
    hostnames = _parse_hostnames(options.dns_name)
    if not hostnames:
        raise ConfigError("dns name is required")

    api_token = str(options.cloudflare_api_token or "").strip()
    api_email = str(options.cloudflare_api_email or "").strip()
    api_key = str(options.cloudflare_api_key or "").strip()
    if not api_token:
        if not api_email:
            raise ConfigError("cloudflare api email is required (or set an api token)")
        if not api_key:
            raise ConfigError("cloudflare api key is required (or set an api token)")

    proxied = _parse_strict_bool(options.cloudflare_proxy)
    if proxied is None:
        logger.info("CloudflareProxy config not found or incorrect, defaulting to false")
        proxied = False

    ttl = _parse_int(options.cloudflare_ttl, default=0)
    if ttl <= 0:
        logger.info(f"CloudflareTTL config not found or incorrect, defaulting to {DEFAULT_TTL}")
        ttl = DEFAULT_TTL

    try:
        node_selector = LabelSelector(options.node_selector or "")
    except ValueError as e:
        logger.warning(f"node selector is invalid: {e}")
        node_selector = LabelSelector()

    sync_mode = str(options.sync_mode or "watch").strip().lower()
    if sync_mode not in SYNC_MODES:
        raise ConfigError(f"Invalid SYNC_MODE: {sync_mode}. Use 'once' or 'watch'")

    resync_period = max(
        MIN_RESYNC_PERIOD_SECONDS,
        _parse_int(options.resync_period, default=DEFAULT_RESYNC_PERIOD_SECONDS),
    )

    return Settings(
        hostnames=hostnames,
        api_token=api_token,
        api_email=api_email,
        api_key=api_key,
        ttl=ttl,
        proxied=proxied,
        use_internal_ip=bool(options.use_internal_ip),
        skip_external_ip=bool(options.skip_external_ip),
        node_selector=node_selector,
        retry_failed_sync=bool(options.retry_failed_sync),
        resync_period=resync_period,
        sync_mode=sync_mode,
    )


# =============================================================================
# Utility Functions
# =============================================================================

_TRUE_VALUES = {"1", "t", "true", "y", "yes", "on"}
_FALSE_VALUES = {"0", "f", "false", "n", "no", "off"}


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


def _parse_strict_bool(value: Any) -> Optional[bool]:
    """Parse a boolean, returning None when the value is missing or not a boolean."""
    if isinstance(value, bool):
        return value
    if value is None:
        return None
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    return None


def _parse_int(value: Any, *, default: int) -> int:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(str(value).strip())
    except ValueError:
        return default


def _normalize_name(name: str) -> str:
    """Lower-case a DNS name and drop any trailing dot."""
    return (name or "").strip().rstrip(".").lower()


def _parse_hostnames(value: Any) -> Tuple[str, ...]:
    """Parse comma-separated hostnames, dropping blanks and duplicates."""
    hostnames: List[str] = []
    for raw_item in str(value or "").split(","):
        hostname = _normalize_name(raw_item)
        if hostname and hostname not in hostnames:
            hostnames.append(hostname)
    return tuple(hostnames)


# =============================================================================
# Address Selection
# =============================================================================


def _collect_addresses(nodes: Iterable[Node], address_type: AddressType) -> Set[str]:
    return {
        addr.address
        for node in nodes
        for addr in node.addresses
        if addr.type == address_type and addr.address
    }


def select_addresses(
    nodes: Iterable[Node],
    selector: Optional[LabelSelector] = None,
    *,
    use_internal_ip: bool = False,
    skip_external_ip: bool = False,
) -> List[str]:
    """Compute the sorted, deduplicated address set of the matching ready nodes.

    Internal addresses are a fallback used only when no external address was
    collected, never in addition to them.
    """
    candidates = [
        node
        for node in nodes
        if node.ready and (selector is None or selector.matches(node.labels))
    ]

    addresses: Set[str] = set()
    if not skip_external_ip:
        addresses = _collect_addresses(candidates, AddressType.EXTERNAL)
    if use_internal_ip and not addresses:
        addresses = _collect_addresses(candidates, AddressType.INTERNAL)
    return sorted(addresses)


# =============================================================================
# Change Detection
# =============================================================================


class ChangeGate:
    """Remembers the last applied address set and suppresses repeat syncs.

    Nothing is applied until the first call to should_sync, so the first
    trigger after a restart always runs a full pass, even for an empty set.
    """

    def __init__(self) -> None:
        self._last_applied: Optional[List[str]] = None

    @property
    def last_applied(self) -> Optional[List[str]]:
        """Copy of the last applied set, or None before the first sync."""
        if self._last_applied is None:
            return None
        return list(self._last_applied)

    @staticmethod
    def _key(addresses: Sequence[str]) -> str:
        return ",".join(sorted(addresses))

    def should_sync(self, candidate: Sequence[str]) -> bool:
        """Return True and remember candidate if it differs from the last applied set."""
        if self._last_applied is not None and self._key(candidate) == self._key(
            self._last_applied
        ):
            return False
        self._last_applied = sorted(candidate)
        return True

    def restore(self, previous: Optional[Sequence[str]]) -> None:
        """Put back an earlier value so the next identical candidate syncs again."""
        self._last_applied = None if previous is None else sorted(previous)


# =============================================================================
# Zone Resolution
# =============================================================================


def find_zone(zones: Iterable[Zone], hostname: str) -> Zone:
    """Find the zone owning hostname, preferring the longest matching zone name.

    A zone matches when its name equals the hostname or the hostname ends with
    "." + zone name, so "example.com" never matches "anotherexample.com".

    Raises:
        ZoneNotFoundError: If no zone matches
    """
    target = _normalize_name(hostname)
    best: Optional[Zone] = None
    best_length = 0

    for zone in zones:
        zone_name = _normalize_name(zone.name)
        if not zone_name:
            continue
        if target != zone_name and not target.endswith("." + zone_name):
            continue
        if len(zone_name) > best_length:
            best = zone
            best_length = len(zone_name)

    if best is None:
        raise ZoneNotFoundError(hostname)
    return best


# =============================================================================
# Record Reconciliation
# =============================================================================


def plan_record_changes(
    hostname: str,
    addresses: Sequence[str],
    existing: Iterable[DNSRecord],
    *,
    ttl: int,
    proxied: bool,
) -> RecordPlan:
    """Diff a hostname's existing A records against the target addresses.

    - record whose IP is a target: kept, or updated when TTL/proxied drifted
      (TTL is not compared for proxied records, which Cloudflare stores as
      automatic, ttl=1)
    - record whose IP is not a target (or repeats an IP already kept): deleted
    - target IP without a record: created

    Records of other types or names are ignored.
    """
    name = _normalize_name(hostname)
    known = set(addresses)
    seen: Set[str] = set()
    plan = RecordPlan()

    for record in existing:
        if record.type.upper() != RECORD_TYPE_A or _normalize_name(record.name) != name:
            logger.debug(f"Ignoring unmanaged record type={record.type} name={record.name}")
            continue

        if record.content in known and record.content not in seen:
            seen.add(record.content)
            ttl_drifted = record.ttl != ttl and not proxied
            if ttl_drifted or record.proxied != proxied:
                plan.updates.append(replace(record, ttl=ttl, proxied=proxied))
        else:
            plan.deletes.append(record)

    for address in sorted(known - seen):
        plan.creates.append(
            DNSRecord(type=RECORD_TYPE_A, name=name, content=address, ttl=ttl, proxied=proxied)
        )
    return plan


def apply_record_plan(
    provider: DNSProvider, zone: Zone, hostname: str, plan: RecordPlan
) -> None:
    """Apply a plan: updates, then deletes, then creates.

    Raises:
        ProviderError: On the first failing call, with zone/record/hostname/ip context
    """
    for record in plan.updates:
        logger.info(
            f"Updating DNS record name={hostname} ip={record.content} "
            f"ttl={record.ttl} proxied={record.proxied}"
        )
        try:
            provider.update_record(zone.id, record.id, record)
        except ProviderError as e:
            raise ProviderError(
                f"failed to update dns record zone-id={zone.id} record-id={record.id} "
                f"name={hostname} ip={record.content}: {e}"
            ) from e

    for record in plan.deletes:
        logger.info(f"Removing DNS record name={hostname} ip={record.content}")
        try:
            provider.delete_record(zone.id, record.id)
        except ProviderError as e:
            raise ProviderError(
                f"failed to delete dns record zone-id={zone.id} record-id={record.id} "
                f"name={hostname} ip={record.content}: {e}"
            ) from e

    for record in plan.creates:
        logger.info(f"Adding DNS record name={hostname} ip={record.content}")
        try:
            provider.create_record(zone.id, record)
        except ProviderError as e:
            raise ProviderError(
                f"failed to create dns record zone-id={zone.id} "
                f"name={hostname} ip={record.content}: {e}"
            ) from e


def reconcile_hostname(
    provider: DNSProvider,
    zone: Zone,
    hostname: str,
    addresses: Sequence[str],
    *,
    ttl: int,
    proxied: bool,
) -> RecordPlan:
    """Converge hostname's A records in zone to addresses. Returns the applied plan."""
    try:
        existing = provider.list_records(zone.id, RECORD_TYPE_A, hostname)
    except ProviderError as e:
        raise ProviderError(
            f"failed to list dns records for zone-id={zone.id} name={hostname}: {e}"
        ) from e

    for record in existing:
        logger.debug(f"Found existing record name={record.name} ip={record.content}")

    plan = plan_record_changes(hostname, addresses, existing, ttl=ttl, proxied=proxied)
    if plan.is_empty:
        logger.info(f"DNS records for {hostname} already up to date")
        return plan

    apply_record_plan(provider, zone, hostname, plan)
    return plan


# =============================================================================
# DNS Provider Interface and Implementations
# =============================================================================


class DNSProvider(ABC):
    """Abstract base class for DNS providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def test_connection(self) -> bool:
        """Test connection to the DNS provider."""
        pass

    @abstractmethod
    def list_zones(self) -> List[Zone]:
        """List all zones visible to the configured credentials."""
        pass

    @abstractmethod
    def list_records(self, zone_id: str, record_type: str, name: str) -> List[DNSRecord]:
        """List records of one type and name in a zone."""
        pass

    @abstractmethod
    def create_record(self, zone_id: str, record: DNSRecord) -> str:
        """Create a record and return its provider id."""
        pass

    @abstractmethod
    def update_record(self, zone_id: str, record_id: str, record: DNSRecord) -> None:
        """Replace an existing record."""
        pass

    @abstractmethod
    def delete_record(self, zone_id: str, record_id: str) -> None:
        """Delete a record."""
        pass


class CloudflareDNSProvider(DNSProvider):
    """Cloudflare v4 API DNS provider implementation."""

    ZONES_PER_PAGE = 50
    RECORDS_PER_PAGE = 100

    def __init__(
        self,
        api_token: str = "",
        api_email: str = "",
        api_key: str = "",
        url: str = CLOUDFLARE_API_URL,
        timeout_seconds: float = 10.0,
    ):
        if not api_token and not (api_email and api_key):
            raise ConfigError("Cloudflare needs an api token, or an api email and api key")

        self._url = url.rstrip("/")
        self._timeout = timeout_seconds
        self._session = requests.Session()
        self._session.headers["Content-Type"] = "application/json"
        if api_token:
            self._session.headers["Authorization"] = f"Bearer {api_token}"
        else:
            self._session.headers["X-Auth-Email"] = api_email
            self._session.headers["X-Auth-Key"] = api_key

    @property
    def name(self) -> str:
        return "Cloudflare"

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        """Send one API call and return the decoded envelope.

        Raises:
            ProviderError: On transport errors, non-JSON bodies, HTTP errors or
                an envelope with success=false
        """
        try:
            response = self._session.request(
                method, f"{self._url}{path}", timeout=self._timeout, **kwargs
            )
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"{method} {path} failed: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if not isinstance(payload, dict):
            raise ProviderError(
                f"{method} {path} returned HTTP {response.status_code} without a JSON body"
            )
        if not response.ok or not payload.get("success", False):
            raise ProviderError(
                f"{method} {path} returned HTTP {response.status_code}: "
                f"{_format_cloudflare_errors(payload)}"
            )
        return payload

    def _get_all(self, path: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Collect the results of every page of a list endpoint."""
        results: List[Dict[str, Any]] = []
        page = 1
        while True:
            payload = self._request("GET", path, params={**params, "page": page})
            for item in payload.get("result") or []:
                if isinstance(item, dict):
                    results.append(item)
                else:
                    logger.warning(f"Skipping malformed entry from {path}: {item}")

            result_info = payload.get("result_info") or {}
            total_pages = _parse_int(result_info.get("total_pages"), default=1)
            if page >= total_pages:
                return results
            page += 1

    def test_connection(self) -> bool:
        try:
            self._request("GET", "/zones", params={"per_page": 5})
            logger.info(f"{self.name} connection successful")
            return True
        except ProviderError as e:
            logger.error(f"Failed to connect to {self.name}: {e}")
            return False

    def list_zones(self) -> List[Zone]:
        zones: List[Zone] = []
        for item in self._get_all("/zones", {"per_page": self.ZONES_PER_PAGE}):
            zone_id = item.get("id")
            zone_name = item.get("name")
            if not isinstance(zone_id, str) or not isinstance(zone_name, str):
                logger.warning(f"Skipping malformed zone: {item}")
                continue
            zones.append(Zone(id=zone_id, name=zone_name))
        return zones

    def list_records(self, zone_id: str, record_type: str, name: str) -> List[DNSRecord]:
        items = self._get_all(
            f"/zones/{zone_id}/dns_records",
            {"type": record_type, "name": name, "per_page": self.RECORDS_PER_PAGE},
        )
        records: List[DNSRecord] = []
        for item in items:
            record_id = item.get("id")
            content = item.get("content")
            if not isinstance(record_id, str) or not isinstance(content, str):
                logger.warning(f"Skipping malformed record: {item}")
                continue
            records.append(
                DNSRecord(
                    id=record_id,
                    type=str(item.get("type") or record_type),
                    name=str(item.get("name") or name),
                    content=content,
                    ttl=_parse_int(item.get("ttl"), default=1),
                    proxied=bool(item.get("proxied")),
                )
            )
        return records

    def create_record(self, zone_id: str, record: DNSRecord) -> str:
        payload = self._request(
            "POST", f"/zones/{zone_id}/dns_records", json=_cloudflare_record_body(record)
        )
        result = payload.get("result") or {}
        record_id = result.get("id") if isinstance(result, dict) else None
        if not isinstance(record_id, str):
            raise ProviderError(f"create in zone {zone_id} returned no record id")
        return record_id

    def update_record(self, zone_id: str, record_id: str, record: DNSRecord) -> None:
        self._request(
            "PUT",
            f"/zones/{zone_id}/dns_records/{record_id}",
            json=_cloudflare_record_body(record),
        )

    def delete_record(self, zone_id: str, record_id: str) -> None:
        self._request("DELETE", f"/zones/{zone_id}/dns_records/{record_id}")


def _cloudflare_record_body(record: DNSRecord) -> Dict[str, Any]:
    return {
        "type": record.type,
        "name": record.name,
        "content": record.content,
        "ttl": record.ttl,
        "proxied": record.proxied,
    }


def _format_cloudflare_errors(payload: Dict[str, Any]) -> str:
    errors = payload.get("errors") or []
    messages = []
    for error in errors:
        if isinstance(error, dict):
            messages.append(f"{error.get('code', '?')}: {error.get('message', '')}".strip())
        else:
            messages.append(str(error))
    return "; ".join(messages) or "unknown error"


# =============================================================================
# Node Source Interface and Implementations
# =============================================================================


class NodeSource(ABC):
    """Abstract base class for cluster membership sources."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the source name for logging."""
        pass

    @abstractmethod
    def list_nodes(self, selector: LabelSelector) -> List[Node]:
        """List the current nodes matching selector.

        Raises:
            ClusterListError: If the cluster can't be queried
        """
        pass

    @abstractmethod
    def watch(self, selector: LabelSelector, on_change: Callable[[], Any]) -> None:
        """Block, calling on_change for every node event and periodic resync."""
        pass


def node_from_kubernetes(obj: Any) -> Node:
    """Convert a kubernetes V1Node into a Node."""
    metadata = obj.metadata
    status = obj.status

    addresses: Tuple[NodeAddress, ...] = ()
    ready = False
    if status is not None:
        addresses = tuple(
            NodeAddress(type=addr.type, address=addr.address) for addr in status.addresses or []
        )
        ready = any(
            condition.type == "Ready" and condition.status == "True"
            for condition in status.conditions or []
        )

    return Node(
        name=metadata.name if metadata is not None else "",
        addresses=addresses,
        ready=ready,
        labels=dict((metadata.labels if metadata is not None else None) or {}),
    )


def load_kubernetes_config() -> None:
    """Load in-cluster config, falling back to the local kubeconfig.

    Raises:
        ConfigError: If neither is available
    """
    try:
        k8s_config.load_incluster_config()
        logger.info("Using in-cluster Kubernetes config")
        return
    except k8s_config.ConfigException:
        logger.debug("Not running in a cluster, trying kubeconfig")

    try:
        k8s_config.load_kube_config()
        logger.info("Using kubeconfig Kubernetes config")
    except (k8s_config.ConfigException, OSError) as e:
        raise ConfigError(f"Failed to load Kubernetes config: {e}") from e


class KubernetesNodeSource(NodeSource):
    """Kubernetes API node source using list and watch on core/v1 nodes."""

    def __init__(
        self,
        api: Optional[k8s_client.CoreV1Api] = None,
        resync_period_seconds: int = DEFAULT_RESYNC_PERIOD_SECONDS,
        retry_delay_seconds: float = 5.0,
    ):
        if api is None:
            load_kubernetes_config()
            api = k8s_client.CoreV1Api()
        self._api = api
        self._resync_period = resync_period_seconds
        self._retry_delay = retry_delay_seconds
        self._stopped = threading.Event()

    @property
    def name(self) -> str:
        return "Kubernetes"

    @staticmethod
    def _selector_kwargs(selector: LabelSelector) -> Dict[str, str]:
        return {} if selector.empty else {"label_selector": str(selector)}

    def list_nodes(self, selector: LabelSelector) -> List[Node]:
        try:
            response = self._api.list_node(**self._selector_kwargs(selector))
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            raise ClusterListError(f"failed to list nodes: {e}") from e
        return [node_from_kubernetes(item) for item in response.items or []]

    def stop(self) -> None:
        """Make watch() return after the current event."""
        self._stopped.set()

    def _list_resource_version(self, kwargs: Dict[str, str]) -> str:
        response = self._api.list_node(**kwargs)
        return getattr(response.metadata, "resource_version", None) or ""

    def watch(self, selector: LabelSelector, on_change: Callable[[], Any]) -> None:
        """Call on_change for every node event and once per quiet resync period.

        The stream resumes from the last seen resource version, so a restart
        does not replay an ADDED event per node. When the version is unknown
        or expired the nodes are listed again and on_change runs once.
        """
        kwargs = self._selector_kwargs(selector)
        resource_version = ""
        while not self._stopped.is_set():
            try:
                if not resource_version:
                    resource_version = self._list_resource_version(kwargs)
                    on_change()
                    if self._stopped.is_set():
                        return

                stream = k8s_watch.Watch()
                for event in stream.stream(
                    self._api.list_node,
                    resource_version=resource_version,
                    timeout_seconds=self._resync_period,
                    **kwargs,
                ):
                    event_type = event.get("type")
                    if event_type == "ERROR":
                        logger.warning(f"Node watch returned an error event: {event.get('raw_object')}")
                        resource_version = ""
                        break
                    metadata = getattr(event.get("object"), "metadata", None)
                    resource_version = getattr(metadata, "resource_version", None) or resource_version
                    logger.debug(f"Node event {event_type}: {getattr(metadata, 'name', '?')}")
                    on_change()
                    if self._stopped.is_set():
                        stream.stop()
                        return
            except (ApiException, urllib3.exceptions.HTTPError) as e:
                if getattr(e, "status", None) == 410:
                    resource_version = ""
                logger.warning(f"Node watch failed: {e}; retrying in {self._retry_delay}s")
                self._stopped.wait(self._retry_delay)
                continue

            if self._stopped.is_set() or not resource_version:
                continue
            logger.debug("Periodic resync")
            on_change()


# =============================================================================
# Provider Registry
# =============================================================================


def create_dns_provider(settings: Settings) -> DNSProvider:
    """Factory function to create the configured DNS provider."""
    return CloudflareDNSProvider(
        api_token=settings.api_token,
        api_email=settings.api_email,
        api_key=settings.api_key,
    )


def create_node_source(settings: Settings) -> NodeSource:
    """Factory function to create the cluster node source."""
    return KubernetesNodeSource(resync_period_seconds=settings.resync_period)


# =============================================================================
# Core Driver
# =============================================================================


class ReconciliationDriver:
    """Runs reconciliation passes, one at a time, for every configured hostname."""

    def __init__(
        self,
        *,
        dns_provider: DNSProvider,
        node_source: NodeSource,
        settings: Settings,
        change_gate: Optional[ChangeGate] = None,
    ):
        self.dns_provider = dns_provider
        self.node_source = node_source
        self.settings = settings
        self.change_gate = change_gate if change_gate is not None else ChangeGate()
        self.state = DriverState.IDLE
        self._lock = threading.Lock()

    def resync(self) -> SyncResult:
        """Run one pass. Failures are logged and reported, never raised."""
        with self._lock:
            try:
                return self._resync()
            finally:
                self.state = DriverState.IDLE

    def _resync(self) -> SyncResult:
        logger.info("Resyncing")
        self.state = DriverState.COMPUTING_ADDRESSES

        try:
            nodes = self.node_source.list_nodes(self.settings.node_selector)
        except ClusterListError as e:
            logger.error(f"Failed to list nodes: {e}")
            return SyncResult(addresses=[], error=str(e))

        addresses = select_addresses(
            nodes,
            self.settings.node_selector,
            use_internal_ip=self.settings.use_internal_ip,
            skip_external_ip=self.settings.skip_external_ip,
        )
        logger.info(f"ips: {addresses}")

        previous = self.change_gate.last_applied
        if not self.change_gate.should_sync(addresses):
            logger.info("No change detected")
            return SyncResult(addresses=addresses)

        result = SyncResult(addresses=addresses, changed=True)
        self._sync_hostnames(addresses, result)

        if not result.ok:
            if self.settings.retry_failed_sync:
                logger.warning("Sync failed, will retry these ips on the next trigger")
                self.change_gate.restore(previous)
            else:
                logger.warning("Sync failed, waiting for the node ips to change")
        return result

    def _sync_hostnames(self, addresses: List[str], result: SyncResult) -> None:
        self.state = DriverState.RESOLVING_ZONES
        try:
            zones = self.dns_provider.list_zones()
        except ProviderError as e:
            logger.error(f"Failed to list zones from {self.dns_provider.name}: {e}")
            result.error = f"failed to list zones: {e}"
            return

        for hostname in self.settings.hostnames:
            self.state = DriverState.RESOLVING_ZONES
            try:
                zone = find_zone(zones, hostname)
                logger.debug(f"dns-name={hostname} belongs to zone {zone.name} ({zone.id})")

                self.state = DriverState.RECONCILING
                reconcile_hostname(
                    self.dns_provider,
                    zone,
                    hostname,
                    addresses,
                    ttl=self.settings.ttl,
                    proxied=self.settings.proxied,
                )
            except (ZoneNotFoundError, ProviderError) as e:
                logger.error(f"Failed to sync dns-name={hostname}: {e}")
                result.failed[hostname] = str(e)
                continue
            result.synced.append(hostname)


# =============================================================================
# Main
# =============================================================================


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point."""
    try:
        options = parse_options(argv)
        if options.log_level:
            logging.getLogger().setLevel(
                getattr(logging, str(options.log_level).upper(), logging.INFO)
            )
        settings = build_settings(options)
        dns_provider = create_dns_provider(settings)
        node_source = create_node_source(settings)
    except ConfigError as e:
        logger.error(f"Configuration validation failed: {e}")
        sys.exit(1)

    logger.info(f"kubernetes-cloudflare-sync: {node_source.name} -> {dns_provider.name}")
    logger.info(f"DNS names: {', '.join(settings.hostnames)}")
    logger.info(f"TTL: {settings.ttl}, proxied: {settings.proxied}")
    logger.info(f"Node selector: {settings.node_selector or '(all nodes)'}")
    logger.info(
        f"Use internal ip: {settings.use_internal_ip}, skip external ip: {settings.skip_external_ip}"
    )
    logger.info(f"Sync mode: {settings.sync_mode}")
    if settings.sync_mode == "watch":
        logger.info(f"Resync period: {settings.resync_period}s")

    if not dns_provider.test_connection():
        logger.error(f"Cannot connect to {dns_provider.name}. Exiting.")
        sys.exit(1)

    driver = ReconciliationDriver(
        dns_provider=dns_provider,
        node_source=node_source,
        settings=settings,
    )

    try:
        if settings.sync_mode == "once":
            result = driver.resync()
            if not result.ok:
                sys.exit(1)
            return

        node_source.watch(settings.node_selector, driver.resync)

    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
