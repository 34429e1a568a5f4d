from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from typing import Any

import requests

from routeflare.src.errors import OwnershipConflict, ProviderError, ZoneNotFound
from routeflare.src.intent import RecordType
from routeflare.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

API_BASE = "https://api.cloudflare.com/client/v4"


@dataclass(frozen=True)
class DNSRecord:
    """A Cloudflare address record.

    ``owner`` maps to the record's ``comment`` field, which routeflare uses as
    its ownership marker. ``ttl`` of 1 means "automatic".
    """

    type: RecordType
    name: str
    content: str
    ttl: int = 1
    proxied: bool = False
    owner: str = ""
    id: str = ""

    def same_content(self, other: DNSRecord) -> bool:
        """True when an update from *other* to this record would change nothing.

        The owner marker and provider id are not part of the comparison.
        """
        return (
            self.type is other.type
            and self.name == other.name
            and self.content == other.content
            and self.ttl == other.ttl
            and self.proxied == other.proxied
        )

    def payload(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "name": self.name,
            "content": self.content,
            "ttl": self.ttl,
            "proxied": self.proxied,
            "comment": self.owner,
        }

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> DNSRecord:
        return cls(
            type=RecordType(data["type"]),
            name=data["name"],
            content=data["content"],
            ttl=int(data.get("ttl") or 1),
            proxied=bool(data.get("proxied")),
            owner=data.get("comment") or "",
            id=data["id"],
        )


class CloudflareClient:
    """Ownership-aware Cloudflare DNS adapter over the v4 REST API.

    Every mutation first looks the record up by ``(name, type)``. A record
    may only be changed or removed when its owner marker is empty or equal to
    ``owner_id``; otherwise :class:`OwnershipConflict` is raised before any
    request is sent.
    """

    def __init__(
        self,
        api_token: str,
        owner_id: str,
        base_url: str = API_BASE,
        timeout_seconds: float = 30,
        session: requests.Session | None = None,
    ) -> None:
        self.owner_id = owner_id
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {api_token}",
                "Content-Type": "application/json",
            }
        )
        self._zone_ids: dict[str, str] = {}
        self._zone_lock = threading.Lock()

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout_seconds, **kwargs)
        except requests.RequestException as exc:
            raise ProviderError(f"{method} {path} failed: {exc}") from exc

        try:
            body = response.json()
        except ValueError:
            body = None

        if not isinstance(body, dict):
            raise ProviderError(
                f"{method} {path} returned a non-JSON response (status={response.status_code})",
                status=response.status_code,
            )
        if response.status_code >= 400 or not body.get("success", False):
            messages = ", ".join(
                f"{error.get('code')}: {error.get('message')}"
                for error in body.get("errors") or []
                if isinstance(error, dict)
            )
            raise ProviderError(
                f"{method} {path} failed (status={response.status_code}): {messages or 'unknown error'}",
                status=response.status_code,
            )
        return body.get("result")

    def zone_id(self, zone_name: str) -> str:
        """Return the zone id for *zone_name*, cached for the life of the process."""
        with self._zone_lock:
            cached = self._zone_ids.get(zone_name)
        if cached is not None:
            return cached

        result = self._request("GET", "/zones", params={"name": zone_name})
        if not result:
            raise ZoneNotFound(f"zone {zone_name} not found")
        zone_id = str(result[0]["id"])
        with self._zone_lock:
            self._zone_ids[zone_name] = zone_id
        return zone_id

    def find_record(self, zone_id: str, name: str, record_type: RecordType) -> DNSRecord | None:
        result = self._request(
            "GET",
            f"/zones/{zone_id}/dns_records",
            params={"name": name, "type": record_type.value},
        )
        if not result:
            return None
        return DNSRecord.from_api(result[0])

    def _check_owner(self, existing: DNSRecord, operation: str) -> None:
        if existing.owner and existing.owner != self.owner_id:
            METRICS.ownership_conflicts_total.labels(operation=operation).inc()
            raise OwnershipConflict(
                record_type=existing.type.value,
                name=existing.name,
                existing_owner=existing.owner,
                expected_owner=self.owner_id,
            )

    def _create_record(self, zone_id: str, record: DNSRecord) -> DNSRecord:
        created = DNSRecord.from_api(
            self._request("POST", f"/zones/{zone_id}/dns_records", json=record.payload())
        )
        LOGGER.info(
            "Created %s record %s -> %s (ttl=%d proxied=%s owner=%s)",
            created.type.value,
            created.name,
            created.content,
            created.ttl,
            created.proxied,
            created.owner,
        )
        return created

    def _update_record(self, zone_id: str, record_id: str, record: DNSRecord) -> DNSRecord:
        updated = DNSRecord.from_api(
            self._request(
                "PUT", f"/zones/{zone_id}/dns_records/{record_id}", json=record.payload()
            )
        )
        LOGGER.info(
            "Updated %s record %s -> %s (ttl=%d proxied=%s owner=%s)",
            updated.type.value,
            updated.name,
            updated.content,
            updated.ttl,
            updated.proxied,
            updated.owner,
        )
        return updated

    def upsert_record(self, zone_id: str, desired: DNSRecord) -> DNSRecord:
        """Create or update *desired*, tagging it with this client's owner marker.

        Returns the provider's record. A record whose type, name, content, TTL
        and proxied flag already match is returned untouched without any
        mutation request.
        """
        record = replace(desired, owner=self.owner_id, id="")
        existing = self.find_record(zone_id, record.name, record.type)
        if existing is None:
            return self._create_record(zone_id, record)

        self._check_owner(existing, "update")
        if existing.same_content(record):
            LOGGER.debug("%s record %s is up to date", record.type.value, record.name)
            return existing
        return self._update_record(zone_id, existing.id, record)

    def delete_record(self, zone_id: str, name: str, record_type: RecordType) -> bool:
        """Delete the ``(name, record_type)`` record if it exists and is not foreign-owned.

        Returns False when there was nothing to delete.
        """
        existing = self.find_record(zone_id, name, record_type)
        if existing is None:
            return False

        self._check_owner(existing, "delete")
        self._request("DELETE", f"/zones/{zone_id}/dns_records/{existing.id}")
        LOGGER.info("Deleted %s record %s", record_type.value, name)
        return True
