#!/usr/bin/env python3
"""kubehomedns - Ingress hostnames to Cloudflare A records

Keeps the A records of a Cloudflare zone pointed at the cluster's current
public IPv4 address. Desired hostnames come from the rules of every Ingress in
the cluster; the zone's records are the only durable state.

Two polling loops run side by side:

    Full sync        Every FULL_SYNC_INTERVAL_SECONDS, reconcile every Ingress
                     rule hostname.
    Label trigger    Every LABEL_POLL_INTERVAL_SECONDS, reconcile the first
                     rule hostname of each Ingress carrying the sentinel label,
                     then strip the label to acknowledge the trigger.

        kubectl label ingress my-app kubehomedns=

Environment variables:

    Credentials:
        CREDENTIALS_SOURCE             "env" or "secret" (default: env)
        CLOUDFLARE_API_KEY             API token (required when source is env)
        CLOUDFLARE_ZONE_ID             Zone identifier (required when source is env)
        CREDENTIALS_SECRET_NAMESPACE   Secret namespace (default: kubehomedns)
        CREDENTIALS_SECRET_NAME        Secret name (default: cloudflare-credentials)
                                       Keys: cloudflare_api_key, cloudflare_zone_id

    Endpoints:
        CLOUDFLARE_API_URL             (default: https://api.cloudflare.com/client/v4)
        PUBLIC_IP_URL                  (default: https://api.ipify.org?format=json)
        HTTP_TIMEOUT_SECONDS           Per-request timeout (default: 10)

    Loops:
        FULL_SYNC_INTERVAL_SECONDS     (default: 1800)
        LABEL_POLL_INTERVAL_SECONDS    (default: 120)
        LIST_TIMEOUT_SECONDS           Ingress listing timeout (default: 10)
        LIST_RETRY_SECONDS             Delay after a failed listing (default: 10)
        SENTINEL_LABEL                 Trigger label key (default: kubehomedns)
        EXCLUDE_HOSTS                  Comma-separated hostnames to leave alone.
                                       Supports exact names, wildcards ("*.lan")
                                       and regexes prefixed with "~".

    Runtime:
        SYNC_MODE                      "watch" or "once" (default: watch)
        LOG_LEVEL                      DEBUG, INFO, WARNING, ERROR (default: INFO)
        KUBECONFIG                     Kubeconfig path when not running in-cluster
        KUBEHOMEDNS_CONFIG_PATH        Optional YAML settings file
                                       (default: /config/kubehomedns.yaml).
                                       Keys are the lowercase variable names;
                                       environment variables take precedence.
                                       The API key is only read from the
                                       environment or the secret.
"""

from __future__ import annotations

import base64
import fnmatch
import ipaddress
import logging
import os
import re
import signal
import sys
import threading
from abc import ABC, abstractmethod
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

import requests
import urllib3
import yaml
from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.client.exceptions import ApiException

logger = logging.getLogger(__name__)

# =============================================================================
# Defaults
# =============================================================================

DEFAULT_CONFIG_PATH = "/config/kubehomedns.yaml"
DEFAULT_CLOUDFLARE_API_URL = "https://api.cloudflare.com/client/v4"
DEFAULT_PUBLIC_IP_URL = "https://api.ipify.org?format=json"
DEFAULT_SENTINEL_LABEL = "kubehomedns"
DEFAULT_SECRET_NAMESPACE = "kubehomedns"
DEFAULT_SECRET_NAME = "cloudflare-credentials"

SECRET_API_KEY_FIELD = "cloudflare_api_key"
SECRET_ZONE_ID_FIELD = "cloudflare_zone_id"

# Attempts for the read-modify-replace of an Ingress when the API reports a
# resourceVersion conflict.
ACKNOWLEDGE_ATTEMPTS = 3

# Cloudflare caps per_page at 100 for DNS record listings.
RECORDS_PAGE_SIZE = 100

# =============================================================================
# Errors
# =============================================================================


class KubeHomeDNSError(Exception):
    """Base class for all errors raised by kubehomedns."""


class ConfigError(KubeHomeDNSError):
    """Startup configuration is missing or invalid. Fatal."""


class ClusterAPIError(KubeHomeDNSError):
    """Listing or updating Kubernetes objects failed."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ProviderError(KubeHomeDNSError):
    """The DNS provider answered with a non-success status."""

    def __init__(self, operation: str, status: int, detail: str = ""):
        message = f"{operation} failed with HTTP {status}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.operation = operation
        self.status = status


class NetworkError(KubeHomeDNSError):
    """The request never got an answer (connect error, timeout)."""


class DecodeError(KubeHomeDNSError):
    """The DNS provider answered with a body we could not understand."""


class ProtocolError(KubeHomeDNSError):
    """The public IP service answered with an error or an unexpected body."""


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class ZoneHandle:
    """Provider-assigned zone identifier."""

    id: str


@dataclass(frozen=True)
class DNSRecord:
    """A record as held by the DNS provider."""

    id: str
    name: str
    content: str
    type: str = "A"
    ttl: int = 1
    proxied: bool = False


@dataclass(frozen=True)
class IngressRef:
    """Points at one Ingress object."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class IngressHost:
    """A hostname taken from one rule of an Ingress."""

    namespace: str
    ingress_name: str
    host: str
    labels: Mapping[str, str] = field(default_factory=dict)
    rule_index: int = 0

    @property
    def ref(self) -> IngressRef:
        return IngressRef(namespace=self.namespace, name=self.ingress_name)


class OutcomeKind(Enum):
    """What a single reconcile call ended up doing."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    FAILED = "failed"


@dataclass(frozen=True)
class ReconciliationOutcome:
    """Result of reconciling one hostname. Only used for logging and summaries."""

    hostname: str
    kind: OutcomeKind
    old_content: str = ""
    new_content: str = ""
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.kind != OutcomeKind.FAILED

    @classmethod
    def created(cls, hostname: str, content: str) -> ReconciliationOutcome:
        return cls(hostname=hostname, kind=OutcomeKind.CREATED, new_content=content)

    @classmethod
    def updated(cls, hostname: str, old: str, new: str) -> ReconciliationOutcome:
        return cls(hostname=hostname, kind=OutcomeKind.UPDATED, old_content=old, new_content=new)

    @classmethod
    def unchanged(cls, hostname: str, content: str) -> ReconciliationOutcome:
        return cls(
            hostname=hostname, kind=OutcomeKind.UNCHANGED, old_content=content, new_content=content
        )

    @classmethod
    def failed(cls, hostname: str, reason: str) -> ReconciliationOutcome:
        return cls(hostname=hostname, kind=OutcomeKind.FAILED, reason=reason)


# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True)
class Settings:
    """Process settings, loaded once at startup."""

    cloudflare_zone_id: str = ""
    cloudflare_api_key: str = field(default="", repr=False)
    credentials_source: str = "env"
    credentials_secret_namespace: str = DEFAULT_SECRET_NAMESPACE
    credentials_secret_name: str = DEFAULT_SECRET_NAME
    cloudflare_api_url: str = DEFAULT_CLOUDFLARE_API_URL
    public_ip_url: str = DEFAULT_PUBLIC_IP_URL
    http_timeout_seconds: float = 10.0
    full_sync_interval_seconds: float = 1800.0
    label_poll_interval_seconds: float = 120.0
    list_timeout_seconds: float = 10.0
    list_retry_seconds: float = 10.0
    sentinel_label: str = DEFAULT_SENTINEL_LABEL
    exclude_hosts: str = ""
    sync_mode: str = "watch"
    log_level: str = "INFO"
    kubeconfig: str = ""


@dataclass(frozen=True)
class Credentials:
    api_key: str = field(repr=False)
    zone_id: str


def load_settings_file(config_path: str) -> Dict[str, Any]:
    """Read the optional YAML settings file.

    A missing file yields an empty mapping. A file that exists but cannot be
    parsed, or does not hold a mapping, is a ConfigError.
    """
    path = Path(config_path)
    if not config_path or not path.is_file():
        return {}

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to read settings file {config_path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(
            f"Settings file {config_path} must contain a mapping, got {type(data).__name__}"
        )
    logger.debug(f"Loaded {len(data)} setting(s) from {config_path}")
    return data


def _parse_positive_float(name: str, value: str) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number, got '{value}'") from None
    if parsed <= 0:
        raise ConfigError(f"{name} must be greater than zero, got '{value}'")
    return parsed


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from defaults, the YAML settings file and the environment."""
    environ = os.environ if environ is None else environ
    file_values = load_settings_file(
        environ.get("KUBEHOMEDNS_CONFIG_PATH", DEFAULT_CONFIG_PATH).strip()
    )

    def pick(env_name: str, default: str) -> str:
        value = environ.get(env_name, "").strip()
        if value:
            return value
        file_value = file_values.get(env_name.lower())
        if file_value is None:
            return default
        if isinstance(file_value, list):
            return ",".join(str(v).strip() for v in file_value)
        return str(file_value).strip()

    credentials_source = pick("CREDENTIALS_SOURCE", "env").lower()
    if credentials_source not in {"env", "secret"}:
        raise ConfigError(
            f"Unsupported CREDENTIALS_SOURCE: '{credentials_source}'. Use 'env' or 'secret'"
        )

    sync_mode = pick("SYNC_MODE", "watch").lower()
    if sync_mode not in {"watch", "once"}:
        raise ConfigError(f"Invalid SYNC_MODE: '{sync_mode}'. Use 'once' or 'watch'")

    settings = Settings(
        cloudflare_zone_id=pick("CLOUDFLARE_ZONE_ID", ""),
        cloudflare_api_key=environ.get("CLOUDFLARE_API_KEY", "").strip(),
        credentials_source=credentials_source,
        credentials_secret_namespace=pick(
            "CREDENTIALS_SECRET_NAMESPACE", DEFAULT_SECRET_NAMESPACE
        ),
        credentials_secret_name=pick("CREDENTIALS_SECRET_NAME", DEFAULT_SECRET_NAME),
        cloudflare_api_url=pick("CLOUDFLARE_API_URL", DEFAULT_CLOUDFLARE_API_URL).rstrip("/"),
        public_ip_url=pick("PUBLIC_IP_URL", DEFAULT_PUBLIC_IP_URL),
        http_timeout_seconds=_parse_positive_float(
            "HTTP_TIMEOUT_SECONDS", pick("HTTP_TIMEOUT_SECONDS", "10")
        ),
        full_sync_interval_seconds=_parse_positive_float(
            "FULL_SYNC_INTERVAL_SECONDS", pick("FULL_SYNC_INTERVAL_SECONDS", "1800")
        ),
        label_poll_interval_seconds=_parse_positive_float(
            "LABEL_POLL_INTERVAL_SECONDS", pick("LABEL_POLL_INTERVAL_SECONDS", "120")
        ),
        list_timeout_seconds=_parse_positive_float(
            "LIST_TIMEOUT_SECONDS", pick("LIST_TIMEOUT_SECONDS", "10")
        ),
        list_retry_seconds=_parse_positive_float(
            "LIST_RETRY_SECONDS", pick("LIST_RETRY_SECONDS", "10")
        ),
        sentinel_label=pick("SENTINEL_LABEL", DEFAULT_SENTINEL_LABEL),
        exclude_hosts=pick("EXCLUDE_HOSTS", ""),
        sync_mode=sync_mode,
        log_level=pick("LOG_LEVEL", "INFO").upper(),
        kubeconfig=pick("KUBECONFIG", ""),
    )

    if credentials_source == "env":
        missing = [
            name
            for name, value in (
                ("CLOUDFLARE_API_KEY", settings.cloudflare_api_key),
                ("CLOUDFLARE_ZONE_ID", settings.cloudflare_zone_id),
            )
            if not value
        ]
        if missing:
            raise ConfigError(f"Missing required environment variable(s): {', '.join(missing)}")

    return settings


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# =============================================================================
# HTTP Transport
# =============================================================================


class HTTPTransport:
    """One requests session shared by the DNS provider and the IP resolver."""

    def __init__(self, timeout_seconds: float = 10.0, session: Optional[requests.Session] = None):
        self._session = session or requests.Session()
        self._timeout = timeout_seconds

    def request(
        self,
        method: str,
        url: str,
        *,
        credential: str = "",
        payload: Optional[Dict[str, Any]] = None,
    ) -> requests.Response:
        headers = {"Content-Type": "application/json"}
        # Anonymous callers (the IP resolver) send no Authorization header at all.
        if credential:
            headers["Authorization"] = f"Bearer {credential}"

        try:
            return self._session.request(
                method, url, headers=headers, json=payload, timeout=self._timeout
            )
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"{method} {url} failed: {e}") from e


# =============================================================================
# Public IP Resolver
# =============================================================================


class PublicIPResolver(ABC):
    """Abstract base class for public IP discovery."""

    @abstractmethod
    def resolve(self) -> str:
        """Return the current public IPv4 address of the cluster egress."""
        pass


class IpifyResolver(PublicIPResolver):
    """Asks an ipify-style JSON service ({"ip": "..."}) for our address."""

    def __init__(self, transport: HTTPTransport, url: str = DEFAULT_PUBLIC_IP_URL):
        self._transport = transport
        self._url = url

    def resolve(self) -> str:
        response = self._transport.request("GET", self._url)
        if not 200 <= response.status_code < 300:
            raise ProtocolError(f"Public IP lookup at {self._url} returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise ProtocolError(f"Public IP lookup returned invalid JSON: {e}") from e

        ip = data.get("ip") if isinstance(data, dict) else None
        if not isinstance(ip, str):
            raise ProtocolError(f"Public IP lookup response has no 'ip' field: {data!r}")

        try:
            ipaddress.IPv4Address(ip.strip())
        except ValueError as e:
            raise ProtocolError(f"Public IP lookup returned '{ip}', not an IPv4 address") from e
        return ip.strip()


# =============================================================================
# DNS Record Store Interface and Implementations
# =============================================================================


class DNSRecordStore(ABC):
    """Abstract base class for the record API of one DNS zone."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def list(self) -> List[DNSRecord]:
        """List every record in the zone, in provider order."""
        pass

    @abstractmethod
    def get_by_id(self, record_id: str) -> DNSRecord:
        """Fetch one record."""
        pass

    @abstractmethod
    def create(self, name: str, content: str) -> None:
        """Create an A record."""
        pass

    @abstractmethod
    def update(self, record_id: str, name: str, content: str) -> DNSRecord:
        """Overwrite an existing record as an A record and return what the provider stored."""
        pass

    @abstractmethod
    def delete(self, record_id: str) -> None:
        """Delete a record."""
        pass


def _record_from_payload(data: Any, operation: str) -> DNSRecord:
    if not isinstance(data, dict):
        raise DecodeError(f"{operation}: expected a record object, got {type(data).__name__}")

    record_id = data.get("id")
    name = data.get("name")
    content = data.get("content")
    if not isinstance(record_id, str) or not isinstance(name, str) or not isinstance(content, str):
        raise DecodeError(f"{operation}: record is missing id, name or content: {data!r}")

    ttl = data.get("ttl")
    return DNSRecord(
        id=record_id,
        name=name,
        content=content,
        type=str(data.get("type") or "A"),
        ttl=ttl if isinstance(ttl, int) else 1,
        proxied=bool(data.get("proxied", False)),
    )


class CloudflareRecordStore(DNSRecordStore):
    """Cloudflare v4 DNS records API for a single zone."""

    def __init__(
        self,
        transport: HTTPTransport,
        api_key: str,
        zone: ZoneHandle,
        api_url: str = DEFAULT_CLOUDFLARE_API_URL,
    ):
        self._transport = transport
        self._api_key = api_key
        self.zone = zone
        self._base = f"{api_url.rstrip('/')}/zones/{zone.id}/dns_records"

    @property
    def name(self) -> str:
        return "Cloudflare"

    def _url(self, record_id: str = "") -> str:
        return f"{self._base}/{record_id}" if record_id else self._base

    def _call(
        self,
        operation: str,
        method: str,
        url: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> requests.Response:
        response = self._transport.request(method, url, credential=self._api_key, payload=payload)
        if not 200 <= response.status_code < 300:
            raise ProviderError(operation, response.status_code, self._error_detail(response))
        return response

    @staticmethod
    def _error_detail(response: requests.Response) -> str:
        """Pull the first Cloudflare error message out of a failed response, if any."""
        try:
            body = response.json()
        except ValueError:
            return ""
        errors = body.get("errors") if isinstance(body, dict) else None
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            return str(errors[0].get("message") or "")
        return ""

    @staticmethod
    def _envelope(response: requests.Response, operation: str) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError as e:
            raise DecodeError(f"{operation}: response is not valid JSON: {e}") from e
        if not isinstance(body, dict) or "result" not in body:
            raise DecodeError(f"{operation}: response has no 'result' field")
        return body

    @classmethod
    def _result(cls, response: requests.Response, operation: str) -> Any:
        return cls._envelope(response, operation)["result"]

    @staticmethod
    def _total_pages(body: Dict[str, Any]) -> int:
        info = body.get("result_info")
        total = info.get("total_pages") if isinstance(info, dict) else None
        return total if isinstance(total, int) and total > 0 else 1

    def list(self) -> List[DNSRecord]:
        """List every record in the zone, following `result_info.total_pages`.

        A malformed A record fails the whole listing with DecodeError.
        Malformed records of other types are skipped.
        """
        operation = f"list records in zone {self.zone.id}"
        records: List[DNSRecord] = []
        page = 1
        while True:
            url = f"{self._url()}?page={page}&per_page={RECORDS_PAGE_SIZE}"
            body = self._envelope(self._call(operation, "GET", url), operation)
            result = body["result"]
            if not isinstance(result, list):
                raise DecodeError(f"{operation}: expected a list, got {type(result).__name__}")

            for item in result:
                try:
                    records.append(_record_from_payload(item, operation))
                except DecodeError as e:
                    record_type = item.get("type") if isinstance(item, dict) else None
                    if not record_type or str(record_type).upper() == "A":
                        raise
                    logger.warning(f"Skipping malformed {record_type} record: {e}")

            if not result or page >= self._total_pages(body):
                break
            page += 1

        logger.debug(f"Listed {len(records)} record(s) over {page} page(s) in zone {self.zone.id}")
        return records

    def get_by_id(self, record_id: str) -> DNSRecord:
        operation = f"get record {record_id} in zone {self.zone.id}"
        response = self._call(operation, "GET", self._url(record_id))
        return _record_from_payload(self._result(response, operation), operation)

    def create(self, name: str, content: str) -> None:
        operation = f"create record {name} in zone {self.zone.id}"
        payload = {"type": "A", "name": name, "content": content}
        self._call(operation, "POST", self._url(), payload)

    def update(self, record_id: str, name: str, content: str) -> DNSRecord:
        operation = f"update record {name} ({record_id}) in zone {self.zone.id}"
        payload = {"type": "A", "name": name, "content": content}
        response = self._call(operation, "PUT", self._url(record_id), payload)
        return _record_from_payload(self._result(response, operation), operation)

    def delete(self, record_id: str) -> None:
        operation = f"delete record {record_id} in zone {self.zone.id}"
        self._call(operation, "DELETE", self._url(record_id))
        logger.info(f"Deleted DNS record {record_id} from zone {self.zone.id}")


# =============================================================================
# Ingress Source Interface and Implementations
# =============================================================================


class IngressSource(ABC):
    """Abstract base class for where desired hostnames come from."""

    @abstractmethod
    def list_hosts(self) -> List[IngressHost]:
        """Return one entry per host-bearing rule of every Ingress, rules in order."""
        pass

    @abstractmethod
    def acknowledge(self, ref: IngressRef, label: str) -> None:
        """Remove `label` from the Ingress, marking its trigger as consumed."""
        pass


class KubernetesIngressSource(IngressSource):
    """Reads networking.k8s.io/v1 Ingresses across all namespaces."""

    def __init__(
        self,
        api: k8s_client.NetworkingV1Api,
        list_timeout_seconds: float = 10.0,
        max_attempts: int = ACKNOWLEDGE_ATTEMPTS,
    ):
        self._api = api
        self._timeout = list_timeout_seconds
        self._max_attempts = max_attempts

    def list_hosts(self) -> List[IngressHost]:
        try:
            ingress_list = self._api.list_ingress_for_all_namespaces(
                _request_timeout=self._timeout
            )
        except ApiException as e:
            raise ClusterAPIError(
                f"Failed to list ingresses: HTTP {e.status} {e.reason}", status=e.status
            ) from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise ClusterAPIError(f"Failed to list ingresses: {e}") from e

        hosts: List[IngressHost] = []
        for ingress in ingress_list.items or []:
            metadata = ingress.metadata
            rules = (ingress.spec.rules if ingress.spec else None) or []
            labels = dict(metadata.labels or {})
            if not any(rule.host for rule in rules):
                logger.debug(
                    f"Ingress {metadata.namespace}/{metadata.name} has no rule with a host, "
                    f"skipping (labels: {sorted(labels)})"
                )
                continue
            for index, rule in enumerate(rules):
                if not rule.host:
                    continue
                hosts.append(
                    IngressHost(
                        namespace=metadata.namespace or "default",
                        ingress_name=metadata.name or "",
                        host=rule.host,
                        labels=labels,
                        rule_index=index,
                    )
                )
        return hosts

    def acknowledge(self, ref: IngressRef, label: str) -> None:
        for attempt in range(1, self._max_attempts + 1):
            try:
                ingress = self._api.read_namespaced_ingress(
                    name=ref.name, namespace=ref.namespace, _request_timeout=self._timeout
                )
            except ApiException as e:
                if e.status == 404:
                    logger.info(f"Ingress {ref} no longer exists, nothing to acknowledge")
                    return
                raise ClusterAPIError(
                    f"Failed to read ingress {ref}: HTTP {e.status} {e.reason}", status=e.status
                ) from e
            except (urllib3.exceptions.HTTPError, OSError) as e:
                raise ClusterAPIError(f"Failed to read ingress {ref}: {e}") from e

            labels = dict(ingress.metadata.labels or {})
            if label not in labels:
                logger.debug(f"Ingress {ref} no longer carries label '{label}'")
                return
            del labels[label]
            ingress.metadata.labels = labels

            # The body still carries the resourceVersion we read, so a concurrent
            # writer makes the API answer 409 instead of losing its edit.
            try:
                self._api.replace_namespaced_ingress(
                    name=ref.name,
                    namespace=ref.namespace,
                    body=ingress,
                    _request_timeout=self._timeout,
                )
                logger.info(f"Removed label '{label}' from ingress {ref}")
                return
            except ApiException as e:
                if e.status == 409 and attempt < self._max_attempts:
                    logger.warning(
                        f"Ingress {ref} changed while removing label '{label}', "
                        f"retrying ({attempt}/{self._max_attempts})"
                    )
                    continue
                raise ClusterAPIError(
                    f"Failed to update ingress {ref}: HTTP {e.status} {e.reason}", status=e.status
                ) from e
            except (urllib3.exceptions.HTTPError, OSError) as e:
                raise ClusterAPIError(f"Failed to update ingress {ref}: {e}") from e


# =============================================================================
# Utility Functions
# =============================================================================


def _compile_exclusion(item: str) -> re.Pattern:
    # "~" marks a raw regex searched anywhere in the name; everything else is
    # an fnmatch glob that must cover the whole hostname.
    source = item[1:] if item.startswith("~") else "^" + fnmatch.translate(item)
    try:
        return re.compile(source, re.IGNORECASE)
    except re.error as e:
        raise ConfigError(f"Invalid exclusion pattern '{item}': {e}") from e


def _parse_exclude_patterns(value: str) -> List[re.Pattern]:
    """Compile EXCLUDE_HOSTS (exact names, globs, "~regex") into patterns."""
    items = [part.strip() for part in (value or "").split(",")]
    patterns = [_compile_exclusion(item) for item in items if item]
    if patterns:
        logger.debug(f"Compiled {len(patterns)} host exclusion pattern(s)")
    return patterns


def _is_host_excluded(hostname: str, patterns: List[re.Pattern]) -> bool:
    """Check if a hostname matches any exclusion pattern."""
    return any(pattern.search(hostname) for pattern in patterns)


def build_kubernetes_client(kubeconfig: str = "") -> k8s_client.ApiClient:
    """Load in-cluster credentials, falling back to a kubeconfig file."""
    try:
        k8s_config.load_incluster_config()
        logger.info("Using in-cluster Kubernetes config")
    except k8s_config.ConfigException:
        try:
            k8s_config.load_kube_config(config_file=kubeconfig or None)
        except (k8s_config.ConfigException, OSError) as e:
            raise ConfigError(f"No in-cluster config and no usable kubeconfig: {e}") from e
        logger.info(f"Using kubeconfig {kubeconfig or '(default location)'}")
    return k8s_client.ApiClient()


def read_secret_credentials(
    core_api: k8s_client.CoreV1Api, namespace: str, name: str
) -> Credentials:
    """Read the Cloudflare API key and zone ID from a Kubernetes secret."""
    try:
        secret = core_api.read_namespaced_secret(name=name, namespace=namespace)
    except ApiException as e:
        raise ConfigError(
            f"Failed to read secret {namespace}/{name}: HTTP {e.status} {e.reason}"
        ) from e
    except (urllib3.exceptions.HTTPError, OSError) as e:
        raise ConfigError(f"Failed to read secret {namespace}/{name}: {e}") from e

    data = secret.data or {}
    values: Dict[str, str] = {}
    for key in (SECRET_API_KEY_FIELD, SECRET_ZONE_ID_FIELD):
        raw = data.get(key)
        if not raw:
            raise ConfigError(f"Secret {namespace}/{name} has no '{key}' key")
        try:
            values[key] = base64.b64decode(raw).decode("utf-8").strip()
        except ValueError as e:
            raise ConfigError(f"Secret {namespace}/{name} key '{key}' is not valid base64") from e
        if not values[key]:
            raise ConfigError(f"Secret {namespace}/{name} key '{key}' is empty")

    return Credentials(api_key=values[SECRET_API_KEY_FIELD], zone_id=values[SECRET_ZONE_ID_FIELD])


def resolve_credentials(
    settings: Settings, core_api: Optional[k8s_client.CoreV1Api] = None
) -> Credentials:
    if settings.credentials_source == "secret":
        if core_api is None:
            raise ConfigError("CREDENTIALS_SOURCE=secret needs a Kubernetes client")
        return read_secret_credentials(
            core_api, settings.credentials_secret_namespace, settings.credentials_secret_name
        )
    return Credentials(api_key=settings.cloudflare_api_key, zone_id=settings.cloudflare_zone_id)


# =============================================================================
# Reconciler
# =============================================================================


class HostLocks:
    """Hands out one lock per hostname so writers for the same name never interleave."""

    def __init__(self):
        self._guard = threading.Lock()
        # hostname -> (lock, number of holders and waiters)
        self._locks: Dict[str, Tuple[threading.Lock, int]] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, hostname: str) -> Iterator[None]:
        """Hold the hostname's lock; the entry is dropped once nobody needs it."""
        with self._guard:
            lock, users = self._locks.get(hostname, (threading.Lock(), 0))
            self._locks[hostname] = (lock, users + 1)

        try:
            with lock:
                yield
        finally:
            with self._guard:
                lock, users = self._locks[hostname]
                if users == 1:
                    del self._locks[hostname]
                else:
                    self._locks[hostname] = (lock, users - 1)


class DNSReconciler:
    """Converges the A record of one hostname to the current public IP.

    Nothing is remembered between calls; every reconcile starts by listing the
    zone. Provider, network and decode errors come back as a FAILED outcome
    instead of being raised, so one bad hostname cannot stop a loop.
    """

    def __init__(
        self,
        *,
        record_store: DNSRecordStore,
        ip_resolver: PublicIPResolver,
        zone: ZoneHandle,
        locks: Optional[HostLocks] = None,
    ):
        self.record_store = record_store
        self.ip_resolver = ip_resolver
        self.zone = zone
        self._locks = locks or HostLocks()

    def reconcile(self, hostname: str) -> ReconciliationOutcome:
        with self._locks.hold(hostname):
            try:
                outcome = self._reconcile(hostname)
            except KubeHomeDNSError as e:
                outcome = ReconciliationOutcome.failed(hostname, str(e))

        self._log_outcome(outcome)
        return outcome

    def _reconcile(self, hostname: str) -> ReconciliationOutcome:
        records = self.record_store.list()
        matches = [r for r in records if r.name == hostname and r.type.upper() == "A"]

        if not matches:
            ip = self.ip_resolver.resolve()
            self.record_store.create(hostname, ip)
            return ReconciliationOutcome.created(hostname, ip)

        if len(matches) > 1:
            ids = ", ".join(r.id for r in matches)
            return ReconciliationOutcome.failed(
                hostname,
                f"{len(matches)} A records share this name ({ids}); "
                "remove the duplicates by hand",
            )

        # List and get-by-id can disagree on the provider side, so re-read the record.
        current = self.record_store.get_by_id(matches[0].id)
        ip = self.ip_resolver.resolve()
        if current.content == ip:
            return ReconciliationOutcome.unchanged(hostname, ip)

        self.record_store.update(current.id, current.name, ip)
        return ReconciliationOutcome.updated(hostname, current.content, ip)

    def _log_outcome(self, outcome: ReconciliationOutcome) -> None:
        zone = self.zone.id
        if outcome.kind == OutcomeKind.CREATED:
            logger.info(f"Created A record {outcome.hostname} -> {outcome.new_content} (zone {zone})")
        elif outcome.kind == OutcomeKind.UPDATED:
            logger.info(
                f"Updated A record {outcome.hostname}: {outcome.old_content} -> "
                f"{outcome.new_content} (zone {zone})"
            )
        elif outcome.kind == OutcomeKind.UNCHANGED:
            logger.info(f"No update needed for {outcome.hostname} ({outcome.new_content})")
        else:
            logger.error(f"Failed to reconcile {outcome.hostname} in zone {zone}: {outcome.reason}")


# =============================================================================
# Polling Loops
# =============================================================================


class PollingLoop(ABC):
    """Runs `run_once` forever, waiting `interval_seconds` between iterations.

    A failed Ingress listing is retried after `retry_seconds` instead of the
    full interval. The wait happens on `stop_event` so the loop ends promptly
    at shutdown.
    """

    name = "poll"

    def __init__(
        self,
        *,
        source: IngressSource,
        reconciler: DNSReconciler,
        interval_seconds: float,
        retry_seconds: float = 10.0,
        exclude_patterns: Optional[List[re.Pattern]] = None,
        stop_event: Optional[threading.Event] = None,
    ):
        self.source = source
        self.reconciler = reconciler
        self.interval_seconds = interval_seconds
        self.retry_seconds = retry_seconds
        self.exclude_patterns = exclude_patterns or []
        self.stop_event = stop_event or threading.Event()

    @abstractmethod
    def run_once(self) -> Optional[List[ReconciliationOutcome]]:
        """Run one iteration. Returns None when the Ingress listing failed."""
        pass

    def run_forever(self) -> None:
        logger.info(f"Starting {self.name} loop (every {self.interval_seconds:g}s)")
        while not self.stop_event.is_set():
            try:
                outcomes = self.run_once()
            except Exception as e:
                logger.error(f"Unexpected error in {self.name} loop: {e}", exc_info=True)
                outcomes = None

            delay = self.interval_seconds if outcomes is not None else self.retry_seconds
            self.stop_event.wait(delay)
        logger.info(f"Stopped {self.name} loop")

    def _list_hosts(self) -> Optional[List[IngressHost]]:
        try:
            return self.source.list_hosts()
        except ClusterAPIError as e:
            logger.error(
                f"{self.name}: error listing ingresses: {e}; retrying in {self.retry_seconds:g}s"
            )
            return None

    def _is_excluded(self, hostname: str) -> bool:
        if _is_host_excluded(hostname, self.exclude_patterns):
            logger.debug(f"Excluding host '{hostname}' (matches exclusion pattern)")
            return True
        return False

    def _reconcile(self, hostname: str) -> ReconciliationOutcome:
        try:
            return self.reconciler.reconcile(hostname)
        except Exception as e:
            logger.error(f"Unexpected error reconciling {hostname}: {e}", exc_info=True)
            return ReconciliationOutcome.failed(hostname, str(e))

    def _log_summary(self, outcomes: List[ReconciliationOutcome]) -> None:
        if not outcomes:
            return
        counts = Counter(o.kind.value for o in outcomes)
        parts = [f"{counts[k.value]} {k.value}" for k in OutcomeKind if counts[k.value]]
        logger.info(f"{self.name}: {len(outcomes)} host(s) reconciled ({', '.join(parts)})")


class FullSyncLoop(PollingLoop):
    """Reconciles every hostname of every Ingress."""

    name = "full-sync"

    def run_once(self) -> Optional[List[ReconciliationOutcome]]:
        hosts = self._list_hosts()
        if hosts is None:
            return None
        if not hosts:
            logger.info("No ingress found")
            return []

        outcomes: List[ReconciliationOutcome] = []
        seen = set()
        for entry in hosts:
            hostname = entry.host
            if hostname in seen:
                continue
            seen.add(hostname)
            if self._is_excluded(hostname):
                continue
            outcomes.append(self._reconcile(hostname))

        self._log_summary(outcomes)
        return outcomes


class LabelTriggerLoop(PollingLoop):
    """Reconciles the primary hostname of Ingresses carrying the sentinel label.

    The label is removed once the hostname reconciled successfully. When the
    reconciliation failed the label stays, so the next poll tries again.
    """

    name = "label-trigger"

    def __init__(self, *, sentinel_label: str = DEFAULT_SENTINEL_LABEL, **kwargs: Any):
        super().__init__(**kwargs)
        self.sentinel_label = sentinel_label

    def _triggered(self, hosts: List[IngressHost]) -> Dict[IngressRef, IngressHost]:
        primaries: Dict[IngressRef, IngressHost] = {}
        for entry in hosts:
            if self.sentinel_label not in entry.labels:
                continue
            current = primaries.get(entry.ref)
            if current is None or entry.rule_index < current.rule_index:
                primaries[entry.ref] = entry
        return primaries

    def run_once(self) -> Optional[List[ReconciliationOutcome]]:
        hosts = self._list_hosts()
        if hosts is None:
            return None

        outcomes: List[ReconciliationOutcome] = []
        for ref, entry in self._triggered(hosts).items():
            logger.info(f"Ingress {ref} requested reconciliation of {entry.host}")
            if self._is_excluded(entry.host):
                logger.info(f"Host {entry.host} is excluded, only clearing the label on {ref}")
            else:
                outcome = self._reconcile(entry.host)
                outcomes.append(outcome)
                if not outcome.ok:
                    logger.warning(
                        f"Keeping label '{self.sentinel_label}' on {ref} so the next poll retries"
                    )
                    continue

            try:
                self.source.acknowledge(ref, self.sentinel_label)
            except ClusterAPIError as e:
                logger.error(
                    f"Error removing label '{self.sentinel_label}' from ingress {ref}: {e} "
                    "(DNS change already applied)"
                )

        self._log_summary(outcomes)
        return outcomes


def start_loops(loops: List[PollingLoop]) -> List[threading.Thread]:
    threads = []
    for loop in loops:
        thread = threading.Thread(target=loop.run_forever, name=loop.name, daemon=True)
        thread.start()
        threads.append(thread)
    return threads


# =============================================================================
# Main
# =============================================================================


def main():
    """Main entry point."""
    try:
        settings = load_settings()
    except ConfigError as e:
        setup_logging("INFO")
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    setup_logging(settings.log_level)
    logger.info("kubehomedns: Ingress -> Cloudflare")

    try:
        exclude_patterns = _parse_exclude_patterns(settings.exclude_hosts)
        api_client = build_kubernetes_client(settings.kubeconfig)
        credentials = resolve_credentials(settings, k8s_client.CoreV1Api(api_client))
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    zone = ZoneHandle(id=credentials.zone_id)
    transport = HTTPTransport(timeout_seconds=settings.http_timeout_seconds)
    reconciler = DNSReconciler(
        record_store=CloudflareRecordStore(
            transport, credentials.api_key, zone, api_url=settings.cloudflare_api_url
        ),
        ip_resolver=IpifyResolver(transport, settings.public_ip_url),
        zone=zone,
    )
    source = KubernetesIngressSource(
        k8s_client.NetworkingV1Api(api_client),
        list_timeout_seconds=settings.list_timeout_seconds,
    )

    logger.info(f"Zone: {zone.id} (credentials from {settings.credentials_source})")
    logger.info(f"Sync mode: {settings.sync_mode}")
    if exclude_patterns:
        logger.info(f"Host exclusions: {len(exclude_patterns)} pattern(s) configured")

    stop_event = threading.Event()
    loop_args = dict(
        source=source,
        reconciler=reconciler,
        retry_seconds=settings.list_retry_seconds,
        exclude_patterns=exclude_patterns,
        stop_event=stop_event,
    )
    full_sync = FullSyncLoop(interval_seconds=settings.full_sync_interval_seconds, **loop_args)

    if settings.sync_mode == "once":
        outcomes = full_sync.run_once()
        if outcomes is None or not all(o.ok for o in outcomes):
            sys.exit(1)
        return

    label_trigger = LabelTriggerLoop(
        interval_seconds=settings.label_poll_interval_seconds,
        sentinel_label=settings.sentinel_label,
        **loop_args,
    )
    logger.info(f"Sentinel label: {settings.sentinel_label}")

    signal.signal(signal.SIGTERM, lambda signum, frame: stop_event.set())
    threads = start_loops([label_trigger, full_sync])
    logger.info("kubehomedns has started!")

    try:
        while not stop_event.is_set():
            stop_event.wait(1.0)
    except KeyboardInterrupt:
        stop_event.set()

    logger.info("Shutting down gracefully...")
    for thread in threads:
        thread.join(timeout=settings.http_timeout_seconds)


if __name__ == "__main__":
    main()
