from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass
from enum import Enum

from routeflare.src.errors import InvalidZoneDerivation, NoHostname, UnsupportedRecordType
from routeflare.src.objects import HTTPRoute

LOGGER = logging.getLogger(__name__)

AUTO_TTL = 1
CONTENT_MODE_KEY = "content-mode"
TYPE_KEY = "type"
TTL_KEY = "ttl"
PROXIED_KEY = "proxied"

_TRUE_LITERALS = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_LITERALS = frozenset({"0", "f", "F", "FALSE", "false", "False"})


class ContentMode(str, Enum):
    GATEWAY_ADDRESS = "gateway-address"
    DDNS = "ddns"


class RecordType(str, Enum):
    A = "A"
    AAAA = "AAAA"
    DUAL = "A/AAAA"

    @property
    def families(self) -> tuple[RecordType, ...]:
        """Single-type records this value fans out to."""
        if self is RecordType.DUAL:
            return (RecordType.A, RecordType.AAAA)
        return (self,)


@dataclass(frozen=True)
class RouteIntent:
    """Normalized DNS intent derived from a route's annotations and hostnames."""

    content_mode: ContentMode
    record_type: RecordType
    zone_name: str
    record_name: str
    ttl: int = AUTO_TTL
    proxied: bool = False


def address_family(value: str) -> RecordType | None:
    """Return ``A`` or ``AAAA`` for an IP literal, ``None`` for anything else."""
    try:
        address = ipaddress.ip_address(value.strip())
    except ValueError:
        return None
    return RecordType.A if address.version == 4 else RecordType.AAAA


def extract_settings(annotations: dict[str, str], prefix: str) -> dict[str, str]:
    """Return annotations under *prefix* with the prefix stripped."""
    return {
        key[len(prefix):]: value
        for key, value in annotations.items()
        if key.startswith(prefix)
    }


def parse_ttl(raw: str | None) -> int:
    """Parse a TTL annotation; ``auto``, empty and invalid input all mean :data:`AUTO_TTL`."""
    value = (raw or "").strip()
    if not value or value.lower() == "auto":
        return AUTO_TTL
    try:
        ttl = int(value)
    except ValueError:
        LOGGER.warning("Invalid TTL %r, falling back to auto", value)
        return AUTO_TTL
    return max(ttl, AUTO_TTL)


def parse_proxied(raw: str | None) -> bool:
    value = (raw or "").strip()
    if not value:
        return False
    if value in _TRUE_LITERALS:
        return True
    if value not in _FALSE_LITERALS:
        LOGGER.warning("Invalid proxied value %r (must be 'true' or 'false'), using false", value)
    return False


def parse_record_type(raw: str | None) -> RecordType:
    value = (raw or "").strip().upper()
    if not value:
        return RecordType.A
    try:
        return RecordType(value)
    except ValueError:
        raise UnsupportedRecordType(f"unsupported record type: {raw}") from None


def derive_zone(record_name: str) -> str:
    """Return the zone for *record_name*: its last two labels (``api.example.com`` -> ``example.com``)."""
    labels = record_name.rstrip(".").split(".")
    if len(labels) < 2 or not all(labels):
        raise InvalidZoneDerivation(f"invalid record name format: {record_name}")
    return ".".join(labels[-2:])


def extract_intent(route: HTTPRoute, prefix: str) -> RouteIntent | None:
    """Derive the DNS intent of *route*, or ``None`` when routeflare should ignore it.

    A route is ignored when its ``content-mode`` annotation is absent, empty or
    not one of the known modes. Malformed optional settings degrade to their
    defaults; a missing hostname, an underivable zone or an unknown record type
    raise a :class:`~routeflare.src.errors.RouteSkipped` subclass.
    """
    settings = extract_settings(route.annotations, prefix)
    raw_mode = settings.get(CONTENT_MODE_KEY, "").strip()
    if not raw_mode:
        return None
    try:
        content_mode = ContentMode(raw_mode)
    except ValueError:
        LOGGER.warning("Unknown content-mode %r for HTTPRoute %s", raw_mode, route.key)
        return None

    if not route.hostnames or not route.hostnames[0]:
        raise NoHostname(f"HTTPRoute {route.key} has no hostnames in spec")
    record_name = route.hostnames[0].rstrip(".")

    return RouteIntent(
        content_mode=content_mode,
        record_type=parse_record_type(settings.get(TYPE_KEY)),
        zone_name=derive_zone(record_name),
        record_name=record_name,
        ttl=parse_ttl(settings.get(TTL_KEY)),
        proxied=parse_proxied(settings.get(PROXIED_KEY)),
    )
