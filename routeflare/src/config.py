from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum

from routeflare.src.errors import ConfigInvalid

DEFAULT_IPV4_LOOKUP_URL = "https://api.ipify.org"
DEFAULT_IPV6_LOOKUP_URL = "https://api64.ipify.org"


class DeletionStrategy(str, Enum):
    """How route deletions propagate to the DNS provider."""

    FULL = "full"
    UPSERT_ONLY = "upsert-only"


@dataclass(frozen=True)
class Settings:
    """Process configuration, loaded once at start-up by :func:`load_settings`."""

    cloudflare_api_token: str
    strategy: DeletionStrategy = DeletionStrategy.FULL
    record_owner_id: str = "routeflare"
    annotation_prefix: str = "routeflare/"
    watch_namespace: str | None = None
    kubeconfig_path: str | None = None
    sweep_interval_seconds: int = 300
    watch_reconnect_seconds: int = 5
    watch_timeout_seconds: int = 300
    address_lookup_timeout_seconds: int = 10
    ipv4_lookup_url: str = DEFAULT_IPV4_LOOKUP_URL
    ipv6_lookup_url: str = DEFAULT_IPV6_LOOKUP_URL
    provider_timeout_seconds: int = 30
    max_concurrent_reconciles: int = 8
    shutdown_timeout_seconds: int = 10
    health_port: int = 8080

    @property
    def should_delete(self) -> bool:
        return self.strategy is DeletionStrategy.FULL


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigInvalid(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigInvalid(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigInvalid(f"{name} must be <= {maximum}, got: {value}")
    return value


def _env_str(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def parse_strategy(raw: str) -> DeletionStrategy:
    normalized = raw.strip().lower()
    if not normalized:
        return DeletionStrategy.FULL
    try:
        return DeletionStrategy(normalized)
    except ValueError as exc:
        raise ConfigInvalid(
            f"STRATEGY must be either 'full' or 'upsert-only', got: {raw!r}"
        ) from exc


def load_settings() -> Settings:
    """Build :class:`Settings` from environment variables.

    Environment variables (with defaults):
        ``CLOUDFLARE_API_TOKEN``: required.
        ``STRATEGY``: ``full`` or ``upsert-only`` (``full``).
        ``RECORD_OWNER_ID``: owner marker written to records (``routeflare``).
        ``ANNOTATION_PREFIX``: intent annotation prefix (``routeflare/``).
        ``WATCH_NAMESPACE``: restrict routes to one namespace (all namespaces).
        ``KUBECONFIG``: kubeconfig used outside the cluster.
        ``SWEEP_INTERVAL_SECONDS``: periodic sweep period (``300``).
        ``WATCH_RECONNECT_SECONDS``: delay after a watch stream closes (``5``).
        ``WATCH_TIMEOUT_SECONDS``: server-side watch timeout (``300``).
        ``ADDRESS_LOOKUP_TIMEOUT_SECONDS``: public address lookup timeout (``10``).
        ``IPV4_LOOKUP_URL`` / ``IPV6_LOOKUP_URL``: public address services.
        ``PROVIDER_TIMEOUT_SECONDS``: Cloudflare request timeout (``30``).
        ``MAX_CONCURRENT_RECONCILES``: dispatch pool size (``8``).
        ``SHUTDOWN_TIMEOUT_SECONDS``: graceful drain bound (``10``).
        ``HEALTH_PORT``: health/metrics port (``8080``).

    Raises :class:`ConfigInvalid` on any missing or out-of-range value.
    """
    token = _env_str("CLOUDFLARE_API_TOKEN")
    if not token:
        raise ConfigInvalid("CLOUDFLARE_API_TOKEN environment variable is required")

    owner_id = _env_str("RECORD_OWNER_ID") or "routeflare"
    prefix = _env_str("ANNOTATION_PREFIX") or "routeflare/"

    return Settings(
        cloudflare_api_token=token,
        strategy=parse_strategy(os.getenv("STRATEGY", "")),
        record_owner_id=owner_id,
        annotation_prefix=prefix,
        watch_namespace=_env_str("WATCH_NAMESPACE") or None,
        kubeconfig_path=_env_str("KUBECONFIG") or None,
        sweep_interval_seconds=env_int("SWEEP_INTERVAL_SECONDS", 300, minimum=1),
        watch_reconnect_seconds=env_int("WATCH_RECONNECT_SECONDS", 5, minimum=0),
        watch_timeout_seconds=env_int("WATCH_TIMEOUT_SECONDS", 300, minimum=1),
        address_lookup_timeout_seconds=env_int("ADDRESS_LOOKUP_TIMEOUT_SECONDS", 10, minimum=1),
        ipv4_lookup_url=_env_str("IPV4_LOOKUP_URL") or DEFAULT_IPV4_LOOKUP_URL,
        ipv6_lookup_url=_env_str("IPV6_LOOKUP_URL") or DEFAULT_IPV6_LOOKUP_URL,
        provider_timeout_seconds=env_int("PROVIDER_TIMEOUT_SECONDS", 30, minimum=1),
        max_concurrent_reconciles=env_int("MAX_CONCURRENT_RECONCILES", 8, minimum=1),
        shutdown_timeout_seconds=env_int("SHUTDOWN_TIMEOUT_SECONDS", 10, minimum=0),
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535),
    )
