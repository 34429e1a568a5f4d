from __future__ import annotations

import logging

import requests

from routeflare.src.config import DEFAULT_IPV4_LOOKUP_URL, DEFAULT_IPV6_LOOKUP_URL
from routeflare.src.errors import NoAddressDetected, UnsupportedRecordType
from routeflare.src.intent import RecordType, address_family
from routeflare.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

_FAMILY_LABELS = {RecordType.A: "IPv4", RecordType.AAAA: "IPv6"}


class PublicAddressDetector:
    """Detects this process's externally visible IPv4/IPv6 addresses.

    Each family is looked up against its own plain-text echo service (by
    default ipify). An answer only counts when it is a valid IP literal of
    the requested family; ``api64.ipify.org`` answers with IPv4 on hosts
    without IPv6 connectivity, which is treated as a failed IPv6 lookup.
    """

    def __init__(
        self,
        ipv4_url: str = DEFAULT_IPV4_LOOKUP_URL,
        ipv6_url: str = DEFAULT_IPV6_LOOKUP_URL,
        timeout_seconds: float = 10,
        session: requests.Session | None = None,
    ) -> None:
        self.urls = {RecordType.A: ipv4_url, RecordType.AAAA: ipv6_url}
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    def public_ipv4(self) -> str:
        return self._lookup(RecordType.A)

    def public_ipv6(self) -> str:
        return self._lookup(RecordType.AAAA)

    def resolve(self, record_type: RecordType) -> list[str]:
        """Return the public addresses for *record_type*, IPv4 before IPv6.

        For ``A/AAAA`` both families are looked up independently and the call
        succeeds when at least one answers.
        """
        if not isinstance(record_type, RecordType):
            raise UnsupportedRecordType(f"unsupported record type: {record_type}")

        addresses: list[str] = []
        errors: list[str] = []
        for family in record_type.families:
            try:
                addresses.append(self._lookup(family))
            except NoAddressDetected as exc:
                if record_type is not RecordType.DUAL:
                    raise
                LOGGER.warning("Public %s lookup failed: %s", _FAMILY_LABELS[family], exc)
                errors.append(str(exc))

        if not addresses:
            raise NoAddressDetected(
                "could not detect any public IP addresses: " + "; ".join(errors)
            )
        return addresses

    def _lookup(self, family: RecordType) -> str:
        label = _FAMILY_LABELS[family]
        url = self.urls[family]
        try:
            address = self._fetch(url, label)
        except NoAddressDetected:
            METRICS.address_lookup_failures_total.labels(family=label).inc()
            raise
        LOGGER.debug("Detected public %s address %s", label, address)
        return address

    def _fetch(self, url: str, label: str) -> str:
        try:
            response = self.session.get(url, timeout=self.timeout_seconds)
        except requests.RequestException as exc:
            raise NoAddressDetected(f"error getting {label} address: {exc}") from exc

        if response.status_code != 200:
            raise NoAddressDetected(
                f"unexpected status code {response.status_code} from {label} lookup"
            )

        candidate = response.text.strip()
        family = address_family(candidate)
        if family is None:
            raise NoAddressDetected(f"invalid IP address received: {candidate!r}")
        if _FAMILY_LABELS[family] != label:
            raise NoAddressDetected(f"expected {label} but got {_FAMILY_LABELS[family]}: {candidate}")
        return candidate
