#!/usr/bin/env python3
"""adguard-external-dns - Kubernetes Ingress to AdGuard Home DNS rewrites

Watches Ingress resources and keeps an AdGuard Home DNS rewrite for each
ingress host pointing at the ingress load-balancer IP. The last reconciled
host/IP pair is stored back onto the ingress as two annotations so renames
can be detected on the next event:

    adguard-external-dns/old-host
    adguard-external-dns/old-ip

Configuration is read from an optional YAML file (CONFIG_PATH) whose keys are
the lower-case names below. Environment variables take precedence.

Environment variables:

    AdGuard:
        ADGUARD_HOST             AdGuard Home host[:port] (required)
        ADGUARD_USE_HTTPS        Use https instead of http (default: false)
        ADGUARD_USERNAME         Admin username (optional)
        ADGUARD_PASSWORD         Admin password (optional)

    Domain filtering:
        DOMAIN_REGEX             Only hosts matching this regex are synced
                                 (default: ".*")
        EXCLUDE_DOMAINS          Comma-separated patterns for hosts to skip.
                                 Supports three formats:
                                   - Exact domain: "auth.example.com"
                                   - Wildcard (fnmatch-style): "*.internal.*"
                                   - Regex (prefix with ~): "~^dev-[0-9]+[.]"

    Kubernetes:
        WATCH_NAMESPACE          Only watch this namespace (default: all)
        WATCH_TIMEOUT_SECONDS    Server-side watch timeout (default: 300)

    Runtime:
        CONFIG_PATH              YAML config file
                                 (default: /config/adguard-external-dns.yaml)
        REQUEST_TIMEOUT_SECONDS  AdGuard HTTP timeout (default: 5)
        MAX_RETRIES              Retries per AdGuard/Kubernetes call before the
                                 resource is skipped (default: 3)
        RETRY_BACKOFF_SECONDS    Base of the exponential retry backoff (default: 1)
        LOG_LEVEL                DEBUG, INFO, WARNING, ERROR (default: INFO)

Only one replica may run against a cluster at a time: the old-host/old-ip
annotations have a single writer.
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Set

import requests
import urllib3
import yaml
from kubernetes import client, config, watch
from kubernetes.client import ApiException
from requests.auth import HTTPBasicAuth

# =============================================================================
# Configuration
# =============================================================================

CONFIG_PATH = os.getenv("CONFIG_PATH", "/config/adguard-external-dns.yaml")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

FIELD_MANAGER = "adguard-external-dns"
OLD_HOST_ANNOTATION = "adguard-external-dns/old-host"
OLD_IP_ANNOTATION = "adguard-external-dns/old-ip"

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
# Exceptions
# =============================================================================


class AdGuardError(Exception):
    """AdGuard Home returned a non-success status or could not be reached."""


class InvariantViolation(ValueError):
    """An ingress carries state this controller cannot interpret safely."""


# =============================================================================
# Enums
# =============================================================================


class EventType(Enum):
    """Kind of change delivered by the ingress watcher.

    APPLIED:   An ingress was created or updated.
    DELETED:   An ingress was removed.
    RESTARTED: The watch was (re)started; carries every existing ingress.
    """

    APPLIED = "applied"
    DELETED = "deleted"
    RESTARTED = "restarted"


class Action(Enum):
    """Outcome of reconciling one desired record."""

    ADDED = "added"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class RewriteRecord:
    """A DNS rewrite as stored by AdGuard Home."""

    domain: str
    answer: str


@dataclass(frozen=True)
class IngressRecord:
    """A host/IP pair derived from, or recorded on, an ingress."""

    host: str
    ip: str

    def as_rewrite(self) -> RewriteRecord:
        return RewriteRecord(domain=self.host, answer=self.ip)


@dataclass(frozen=True)
class ReconciliationUnit:
    """What an ingress wants now, and what was last reconciled for it."""

    current: IngressRecord
    previous: Optional[IngressRecord] = None


@dataclass
class WatchEvent:
    type: EventType
    objects: List[Any] = field(default_factory=list)


@dataclass(frozen=True)
class Settings:
    """Runtime configuration. See the module docstring for each setting."""

    adguard_host: str = ""
    adguard_use_https: bool = False
    adguard_username: str = ""
    adguard_password: str = ""
    domain_regex: str = ".*"
    exclude_domains: str = ""
    watch_namespace: str = ""
    watch_timeout_seconds: int = 300
    request_timeout_seconds: float = 5.0
    max_retries: int = 3
    retry_backoff_seconds: float = 1.0


# =============================================================================
# Settings Loading
# =============================================================================


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _coerce(value: Any, target: Any, default: Any) -> Any:
    if target is bool or target == "bool":
        return _parse_bool(value, default=default)
    if target is int or target == "int":
        return int(value)
    if target is float or target == "float":
        return float(value)
    return str(value).strip()


def load_settings(
    config_path: str = CONFIG_PATH, environ: Optional[Mapping[str, str]] = None
) -> Settings:
    """Build Settings from the YAML config file and the environment.

    Args:
        config_path: Optional YAML file; a missing file is not an error.
        environ: Environment mapping, defaults to os.environ.

    Returns:
        Settings with environment variables overriding file values.
    """
    environ = os.environ if environ is None else environ

    file_values: Dict[str, Any] = {}
    path = Path(config_path) if config_path else None
    if path is not None and path.is_file():
        with open(path, "r") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config file {path} must contain a mapping")
        file_values = loaded
        logger.info(f"Loaded configuration from {path}")

    values: Dict[str, Any] = {}
    for f in fields(Settings):
        raw = environ.get(f.name.upper())
        if raw is None or raw == "":
            raw = file_values.get(f.name)
        if raw is None:
            continue
        try:
            values[f.name] = _coerce(raw, f.type, f.default)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid value for {f.name.upper()}: {raw!r}") from e

    return Settings(**values)


def validate_settings(settings: Settings) -> List[str]:
    """Return a list of configuration errors (empty when valid)."""
    errors = []

    if not settings.adguard_host:
        errors.append("ADGUARD_HOST is required")
    if "://" in settings.adguard_host:
        errors.append("ADGUARD_HOST must not include a scheme, use ADGUARD_USE_HTTPS instead")
    if bool(settings.adguard_username) != bool(settings.adguard_password):
        logger.warning("Only one of ADGUARD_USERNAME/ADGUARD_PASSWORD set. Ignoring credentials.")
    if settings.max_retries < 0:
        errors.append("MAX_RETRIES must be >= 0")
    if settings.retry_backoff_seconds < 0:
        errors.append("RETRY_BACKOFF_SECONDS must be >= 0")
    if settings.request_timeout_seconds <= 0:
        errors.append("REQUEST_TIMEOUT_SECONDS must be > 0")
    try:
        re.compile(settings.domain_regex)
    except re.error as e:
        errors.append(f"Invalid DOMAIN_REGEX '{settings.domain_regex}': {e}")

    return errors


# =============================================================================
# DNS Provider Interface and Implementations
# =============================================================================


class DNSProvider(ABC):
    """Abstract base class for DNS rewrite stores."""

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
    def get_records(self) -> Dict[str, str]:
        """Get all rewrites as a mapping of domain to answer."""
        pass

    @abstractmethod
    def add_record(self, record: RewriteRecord) -> None:
        """Add a rewrite. Raises AdGuardError on failure."""
        pass

    @abstractmethod
    def delete_record(self, record: RewriteRecord) -> None:
        """Delete the rewrite for record.domain. Raises AdGuardError on failure."""
        pass


class AdGuardDNSProvider(DNSProvider):
    """AdGuard Home DNS rewrite provider.

    Every call is a single HTTP request: there is no retry here, callers
    decide what to do with an AdGuardError.
    """

    def __init__(
        self,
        host: str,
        use_https: bool = False,
        username: str = "",
        password: str = "",
        timeout_seconds: float = 5.0,
    ):
        scheme = "https" if use_https else "http"
        self._url = f"{scheme}://{host.strip().rstrip('/')}"
        self._timeout = timeout_seconds
        self._auth = HTTPBasicAuth(username, password) if username and password else None
        self._session = requests.Session()
        if self._auth:
            self._session.auth = self._auth

    @property
    def name(self) -> str:
        return "AdGuard Home"

    def test_connection(self) -> bool:
        try:
            response = self._session.get(f"{self._url}/control/status", timeout=self._timeout)
            response.raise_for_status()
            logger.info(f"{self.name} connection successful")
            return True
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to connect to {self.name}: {e}")
            return False

    def get_records(self) -> Dict[str, str]:
        try:
            response = self._session.get(
                f"{self._url}/control/rewrite/list", timeout=self._timeout
            )
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, json.JSONDecodeError) as e:
            raise AdGuardError(f"Failed to list rewrites from {self.name}: {e}") from e

        if not isinstance(data, list):
            raise AdGuardError(
                f"Unexpected rewrite list from {self.name}: expected list, got {type(data).__name__}"
            )

        records: Dict[str, str] = {}
        for r in data:
            domain = r.get("domain") if isinstance(r, dict) else None
            answer = r.get("answer") if isinstance(r, dict) else None
            if not isinstance(domain, str) or not isinstance(answer, str):
                logger.warning(f"Skipping malformed record: {r}")
                continue
            if domain in records:
                logger.debug(f"Duplicate rewrite for {domain}, keeping {answer}")
            records[domain] = answer
        return records

    def add_record(self, record: RewriteRecord) -> None:
        self._post("/control/rewrite/add", record)
        logger.info(f"Added DNS record: {record.domain} -> {record.answer}")

    def delete_record(self, record: RewriteRecord) -> None:
        self._post("/control/rewrite/delete", record)
        logger.info(f"Deleted DNS record: {record.domain} -> {record.answer}")

    def _post(self, endpoint: str, record: RewriteRecord) -> None:
        data = {"domain": record.domain, "answer": record.answer}
        try:
            response = self._session.post(f"{self._url}{endpoint}", json=data, timeout=self._timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise AdGuardError(f"{endpoint} failed for {record.domain}: {e}") from e


# =============================================================================
# Domain Filtering
# =============================================================================


def _parse_exclude_patterns(value: str) -> List[re.Pattern]:
    """Parse domain exclusion patterns from a comma-separated string."""
    patterns: List[re.Pattern] = []
    if not value:
        return patterns

    for raw_item in value.split(","):
        item = raw_item.strip()
        if not item:
            continue

        try:
            if item.startswith("~"):
                patterns.append(re.compile(item[1:], re.IGNORECASE))
            elif "*" in item or "?" in item:
                regex_str = re.escape(item).replace(r"\*", ".*").replace(r"\?", ".")
                patterns.append(re.compile(f"^{regex_str}$", re.IGNORECASE))
            else:
                patterns.append(re.compile(f"^{re.escape(item)}$", re.IGNORECASE))
            logger.debug(f"Added exclusion pattern: {item}")
        except re.error as e:
            logger.warning(f"Invalid exclusion pattern '{item}': {e}")

    return patterns


class DomainFilter:
    """Decides whether a hostname is managed by this controller.

    A host is in scope when the include regex matches anywhere in it and no
    exclusion pattern matches.
    """

    def __init__(self, pattern: str = ".*", exclude: Optional[List[re.Pattern]] = None):
        self.pattern = re.compile(pattern or ".*")
        self.exclude = exclude or []

    @classmethod
    def from_settings(cls, settings: Settings) -> "DomainFilter":
        return cls(settings.domain_regex, _parse_exclude_patterns(settings.exclude_domains))

    def matches(self, host: str) -> bool:
        if not self.pattern.search(host):
            return False
        return not any(p.search(host) for p in self.exclude)


# =============================================================================
# Desired State Extraction
# =============================================================================


def _resource_name(ingress: Any) -> str:
    metadata = getattr(ingress, "metadata", None)
    namespace = getattr(metadata, "namespace", None) or "-"
    name = getattr(metadata, "name", None) or "-"
    return f"{namespace}/{name}"


def _first_host(ingress: Any) -> Optional[str]:
    spec = getattr(ingress, "spec", None)
    for rule in getattr(spec, "rules", None) or []:
        host = getattr(rule, "host", None)
        if host:
            return host
    return None


def _load_balancer_ip(ingress: Any) -> Optional[str]:
    status = getattr(ingress, "status", None)
    load_balancer = getattr(status, "load_balancer", None)
    entries = getattr(load_balancer, "ingress", None) or []
    if not entries:
        return None
    if len(entries) > 1:
        logger.warning(
            f"Ingress {_resource_name(ingress)} has {len(entries)} load-balancer addresses, "
            f"using the first one"
        )
    return entries[0].ip or None


def _previous_record(ingress: Any) -> Optional[IngressRecord]:
    metadata = getattr(ingress, "metadata", None)
    annotations = getattr(metadata, "annotations", None) or {}
    old_host = annotations.get(OLD_HOST_ANNOTATION)
    old_ip = annotations.get(OLD_IP_ANNOTATION)
    if old_host is None and old_ip is None:
        return None
    if old_host is None or old_ip is None:
        raise InvariantViolation(
            f"Ingress {_resource_name(ingress)} has only one of "
            f"{OLD_HOST_ANNOTATION}/{OLD_IP_ANNOTATION} set"
        )
    return IngressRecord(host=old_host, ip=old_ip)


def extract_units(ingress: Any) -> List[ReconciliationUnit]:
    """Derive the desired record and the previously reconciled one from an ingress.

    Returns an empty list while the ingress has no host or no load-balancer
    IP, whatever its annotations say. Otherwise raises InvariantViolation when
    the stored annotations are only half present.
    """
    ip = _load_balancer_ip(ingress)
    if ip is None:
        logger.debug(f"Ingress {_resource_name(ingress)} has no load-balancer IP yet")
        return []

    host = _first_host(ingress)
    if host is None:
        return []

    previous = _previous_record(ingress)
    return [ReconciliationUnit(current=IngressRecord(host=host, ip=ip), previous=previous)]


# =============================================================================
# State Tracking
# =============================================================================


class AnnotationStateTracker:
    """Records the last reconciled host/IP pair on the ingress itself."""

    def __init__(self, networking_api: client.NetworkingV1Api, field_manager: str = FIELD_MANAGER):
        self.networking_api = networking_api
        self.field_manager = field_manager

    def persist(self, ingress: Any, record: IngressRecord) -> None:
        body = {
            "metadata": {
                "annotations": {
                    OLD_HOST_ANNOTATION: record.host,
                    OLD_IP_ANNOTATION: record.ip,
                }
            }
        }
        self.networking_api.patch_namespaced_ingress(
            name=ingress.metadata.name,
            namespace=ingress.metadata.namespace,
            body=body,
            field_manager=self.field_manager,
            _content_type="application/merge-patch+json",
        )
        logger.debug(f"Recorded {record.host} -> {record.ip} on ingress {_resource_name(ingress)}")


# =============================================================================
# Reconciliation Engine
# =============================================================================


class ReconciliationEngine:
    """Applies watch events to the DNS provider, one event at a time.

    Each AdGuard or Kubernetes call is retried with exponential backoff. When
    a call still fails, the ingress it belongs to is skipped and the rest of
    the event is processed.
    """

    def __init__(
        self,
        *,
        dns_provider: DNSProvider,
        state_tracker: AnnotationStateTracker,
        domain_filter: DomainFilter,
        max_retries: int = 3,
        retry_backoff_seconds: float = 1.0,
    ):
        self.dns_provider = dns_provider
        self.state_tracker = state_tracker
        self.domain_filter = domain_filter
        self.max_retries = max_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self.failures = 0

    def handle_event(self, event: WatchEvent) -> None:
        logger.debug(f"Event: {event.type.value} ({len(event.objects)} ingress(es))")
        if event.type == EventType.APPLIED:
            for ingress in event.objects:
                self.on_applied(ingress)
        elif event.type == EventType.DELETED:
            for ingress in event.objects:
                self.on_deleted(ingress)
        elif event.type == EventType.RESTARTED:
            self.on_restarted(event.objects)

    def reconcile(self, desired: IngressRecord, actual: Optional[IngressRecord]) -> Action:
        """Converge the DNS provider from actual to desired.

        actual is whatever is believed to exist for this ingress: the recorded
        annotation pair, or the rewrite listed by the provider.
        """
        if actual is None:
            self._call("add", self.dns_provider.add_record, desired.as_rewrite())
            return Action.ADDED
        if actual != desired:
            logger.info(
                f"Record changed: {actual.host} -> {actual.ip} is now {desired.host} -> {desired.ip}"
            )
            self._call("delete", self.dns_provider.delete_record, actual.as_rewrite())
            self._call("add", self.dns_provider.add_record, desired.as_rewrite())
            return Action.UPDATED
        return Action.UNCHANGED

    def on_applied(self, ingress: Any) -> None:
        def apply(unit: ReconciliationUnit) -> None:
            self.reconcile(unit.current, unit.previous)
            self._persist(ingress, unit.current)

        self._for_each_unit(ingress, apply)

    def on_deleted(self, ingress: Any) -> None:
        def delete(unit: ReconciliationUnit) -> None:
            self._call("delete", self.dns_provider.delete_record, unit.current.as_rewrite())

        self._for_each_unit(ingress, delete)

    def on_restarted(self, ingresses: List[Any]) -> None:
        """Re-synchronize every existing ingress against the listed rewrites."""
        logger.info(f"Resynchronizing {len(ingresses)} ingress(es)")
        try:
            listed = self._call("list", self.dns_provider.get_records)
        except AdGuardError as e:
            self.failures += 1
            logger.error(f"Resync aborted, could not list rewrites: {e}")
            return

        wanted = self._desired_hosts(ingresses)
        counts = {action: 0 for action in Action}

        def resync(ingress: Any, unit: ReconciliationUnit) -> None:
            current, previous = unit.current, unit.previous
            if (
                previous is not None
                and previous.host != current.host
                and previous.host not in wanted
                and listed.get(previous.host) == previous.ip
            ):
                logger.info(f"Removing renamed record {previous.host} -> {previous.ip}")
                self._call("delete", self.dns_provider.delete_record, previous.as_rewrite())
                listed.pop(previous.host, None)

            answer = listed.get(current.host)
            actual = IngressRecord(host=current.host, ip=answer) if answer is not None else None
            counts[self.reconcile(current, actual)] += 1
            listed[current.host] = current.ip
            self._persist(ingress, current)

        for ingress in ingresses:
            self._for_each_unit(ingress, lambda unit, ingress=ingress: resync(ingress, unit))

        logger.info(
            f"Resync complete: {counts[Action.ADDED]} added, {counts[Action.UPDATED]} updated, "
            f"{counts[Action.UNCHANGED]} unchanged"
        )

    def _desired_hosts(self, ingresses: List[Any]) -> Set[str]:
        """Hosts wanted by any in-scope ingress of a snapshot."""
        hosts: Set[str] = set()
        for ingress in ingresses:
            try:
                units = extract_units(ingress)
            except InvariantViolation:
                # reported when the ingress itself is resynced
                continue
            hosts.update(
                u.current.host for u in units if self.domain_filter.matches(u.current.host)
            )
        return hosts

    def _for_each_unit(
        self, ingress: Any, action: Callable[[ReconciliationUnit], None]
    ) -> None:
        name = _resource_name(ingress)
        try:
            for unit in extract_units(ingress):
                if not self.domain_filter.matches(unit.current.host):
                    logger.debug(f"Skipping {unit.current.host} from {name} (filtered out)")
                    continue
                action(unit)
        except InvariantViolation as e:
            self.failures += 1
            logger.error(f"Skipping ingress {name}: {e}")
        except (AdGuardError, ApiException) as e:
            self.failures += 1
            logger.error(f"Giving up on ingress {name} after {self.max_retries} retries: {e}")

    def _persist(self, ingress: Any, record: IngressRecord) -> None:
        self._call("persist", self.state_tracker.persist, ingress, record)

    def _call(self, description: str, func: Callable[..., Any], *args: Any) -> Any:
        attempt = 0
        while True:
            try:
                return func(*args)
            except (AdGuardError, ApiException) as e:
                if attempt >= self.max_retries:
                    raise
                delay = self.retry_backoff_seconds * (2**attempt)
                attempt += 1
                logger.warning(
                    f"{description} failed (attempt {attempt}/{self.max_retries + 1}), "
                    f"retrying in {delay:.1f}s: {e}"
                )
                time.sleep(delay)


# =============================================================================
# Ingress Watcher
# =============================================================================


class IngressWatcher:
    """List-then-watch over Ingress resources.

    Yields a RESTARTED event with every ingress on startup and whenever the
    watch has to be re-listed (410 Gone or an API error), then APPLIED and
    DELETED events as they stream in.
    """

    MAX_BACKOFF_SECONDS = 30.0

    def __init__(
        self,
        networking_api: client.NetworkingV1Api,
        namespace: str = "",
        timeout_seconds: int = 300,
        backoff_seconds: float = 1.0,
    ):
        self.networking_api = networking_api
        self.namespace = namespace
        self.timeout_seconds = timeout_seconds
        self.backoff_seconds = backoff_seconds

    def _list_call(self) -> tuple[Callable[..., Any], Dict[str, Any]]:
        if self.namespace:
            return self.networking_api.list_namespaced_ingress, {"namespace": self.namespace}
        return self.networking_api.list_ingress_for_all_namespaces, {}

    def events(self) -> Iterator[WatchEvent]:
        list_func, kwargs = self._list_call()
        resource_version: Optional[str] = None
        backoff = self.backoff_seconds

        while True:
            if resource_version is None:
                try:
                    listing = list_func(**kwargs)
                except ApiException as e:
                    logger.error(f"Failed to list ingresses (status={e.status}): {e.reason}")
                    time.sleep(backoff)
                    backoff = min(backoff * 2, self.MAX_BACKOFF_SECONDS)
                    continue
                resource_version = listing.metadata.resource_version
                logger.info(f"Starting watch from resourceVersion {resource_version}")
                yield WatchEvent(EventType.RESTARTED, list(listing.items or []))

            watcher = watch.Watch()
            try:
                for raw in watcher.stream(
                    list_func,
                    resource_version=resource_version,
                    timeout_seconds=self.timeout_seconds,
                    **kwargs,
                ):
                    obj = raw.get("object")
                    event_type = str(raw.get("type", ""))
                    metadata = getattr(obj, "metadata", None)
                    if metadata is not None and metadata.resource_version:
                        resource_version = metadata.resource_version

                    if event_type in ("ADDED", "MODIFIED"):
                        yield WatchEvent(EventType.APPLIED, [obj])
                    elif event_type == "DELETED":
                        yield WatchEvent(EventType.DELETED, [obj])
                    else:
                        logger.debug(f"Ignoring watch event of type {event_type}")
                backoff = self.backoff_seconds
            except ApiException as e:
                resource_version = None
                if e.status == 410:
                    logger.warning("Watch resource version expired, re-listing")
                    continue
                logger.error(f"Ingress watch failed (status={e.status}): {e.reason}")
                time.sleep(backoff)
                backoff = min(backoff * 2, self.MAX_BACKOFF_SECONDS)
            except (urllib3.exceptions.HTTPError, OSError) as e:
                resource_version = None
                logger.warning(f"Ingress watch disconnected, re-listing: {e}")
                time.sleep(backoff)
                backoff = min(backoff * 2, self.MAX_BACKOFF_SECONDS)
            finally:
                watcher.stop()


# =============================================================================
# Main
# =============================================================================


def load_kubernetes_config() -> None:
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config()


def main():
    """Main entry point."""
    try:
        settings = load_settings()
    except (ValueError, yaml.YAMLError, OSError) as e:
        logger.error(f"Failed to load configuration: {e}")
        sys.exit(1)

    errors = validate_settings(settings)
    if errors:
        for error in errors:
            logger.error(error)
        logger.error("Configuration validation failed")
        sys.exit(1)

    scheme = "https" if settings.adguard_use_https else "http"
    logger.info(f"adguard-external-dns: ingresses -> {scheme}://{settings.adguard_host}")
    logger.info(f"Domain filter: {settings.domain_regex}")
    if settings.exclude_domains:
        logger.info(f"Domain exclusions: {settings.exclude_domains}")
    logger.info(f"Watching namespace: {settings.watch_namespace or '(all)'}")

    dns_provider = AdGuardDNSProvider(
        settings.adguard_host,
        use_https=settings.adguard_use_https,
        username=settings.adguard_username,
        password=settings.adguard_password,
        timeout_seconds=settings.request_timeout_seconds,
    )
    if not dns_provider.test_connection():
        logger.error(f"Cannot connect to {dns_provider.name}. Exiting.")
        sys.exit(1)

    load_kubernetes_config()
    networking_api = client.NetworkingV1Api()

    engine = ReconciliationEngine(
        dns_provider=dns_provider,
        state_tracker=AnnotationStateTracker(networking_api),
        domain_filter=DomainFilter.from_settings(settings),
        max_retries=settings.max_retries,
        retry_backoff_seconds=settings.retry_backoff_seconds,
    )
    watcher = IngressWatcher(
        networking_api,
        namespace=settings.watch_namespace,
        timeout_seconds=settings.watch_timeout_seconds,
    )

    try:
        for event in watcher.events():
            engine.handle_event(event)
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
