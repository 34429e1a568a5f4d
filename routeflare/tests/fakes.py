from __future__ import annotations

import threading
from dataclasses import replace
from typing import Any

from routeflare.src.cloudflare import DNSRecord
from routeflare.src.errors import (
    ClusterUnavailable,
    NoAddressDetected,
    OwnershipConflict,
    ProviderError,
    ZoneNotFound,
)
from routeflare.src.intent import RecordType
from routeflare.src.objects import Gateway, HTTPRoute, RouteKey

PREFIX = "routeflare/"
OWNER = "routeflare"


def route_object(
    name: str = "web",
    namespace: str = "default",
    annotations: dict[str, str] | None = None,
    hostnames: list[str] | None = None,
    parent: str | None = "gw",
    parent_namespace: str | None = None,
    resource_version: str = "1",
) -> dict[str, Any]:
    parent_refs: list[dict[str, Any]] = []
    if parent is not None:
        ref: dict[str, Any] = {"name": parent}
        if parent_namespace is not None:
            ref["namespace"] = parent_namespace
        parent_refs.append(ref)
    return {
        "apiVersion": "gateway.networking.k8s.io/v1",
        "kind": "HTTPRoute",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "annotations": dict(annotations or {}),
            "resourceVersion": resource_version,
        },
        "spec": {
            "hostnames": ["api.example.com"] if hostnames is None else hostnames,
            "parentRefs": parent_refs,
        },
    }


def make_route(**kwargs: Any) -> HTTPRoute:
    return HTTPRoute.from_object(route_object(**kwargs))


def managed_route(
    mode: str = "gateway-address",
    record_type: str | None = None,
    ttl: str | None = None,
    proxied: str | None = None,
    **kwargs: Any,
) -> HTTPRoute:
    annotations = {f"{PREFIX}content-mode": mode}
    if record_type is not None:
        annotations[f"{PREFIX}type"] = record_type
    if ttl is not None:
        annotations[f"{PREFIX}ttl"] = ttl
    if proxied is not None:
        annotations[f"{PREFIX}proxied"] = proxied
    return make_route(annotations=annotations, **kwargs)


def gateway_object(
    name: str = "gw", namespace: str = "default", addresses: list[str] | None = None
) -> dict[str, Any]:
    return {
        "metadata": {"name": name, "namespace": namespace},
        "status": {
            "addresses": [
                {"type": "IPAddress", "value": value} for value in (addresses or [])
            ]
        },
    }


def make_gateway(**kwargs: Any) -> Gateway:
    return Gateway.from_object(gateway_object(**kwargs))


class FakeCluster:
    """In-memory stand-in for :class:`GatewayAPIClient` read access."""

    def __init__(
        self,
        routes: list[HTTPRoute] | None = None,
        gateways: list[Gateway] | None = None,
    ) -> None:
        self.routes: dict[RouteKey, HTTPRoute] = {route.key: route for route in routes or []}
        self.gateways: dict[RouteKey, Gateway] = {gw.key: gw for gw in gateways or []}
        self.unavailable = False
        self.route_gets: list[RouteKey] = []

    def get_route(self, namespace: str, name: str) -> HTTPRoute | None:
        self.route_gets.append(RouteKey(namespace, name))
        if self.unavailable:
            raise ClusterUnavailable("getting HTTPRoute failed: 503 Service Unavailable")
        return self.routes.get(RouteKey(namespace, name))

    def get_gateway(self, namespace: str, name: str) -> Gateway | None:
        if self.unavailable:
            raise ClusterUnavailable("getting Gateway failed: 503 Service Unavailable")
        return self.gateways.get(RouteKey(namespace, name))


class FakeCloudflare:
    """In-memory DNS provider enforcing the same ownership rules as the real client."""

    def __init__(
        self,
        zones: dict[str, str] | None = None,
        owner_id: str = OWNER,
    ) -> None:
        self.zones = {"example.com": "zone-1"} if zones is None else zones
        self.owner_id = owner_id
        self.records: dict[tuple[str, str, RecordType], DNSRecord] = {}
        self.calls: list[tuple[str, Any]] = []
        self.fail_zone_lookups = False
        self.fail_types: set[RecordType] = set()
        self._lock = threading.Lock()
        self._next_id = 0

    def seed(self, zone_id: str, record: DNSRecord) -> DNSRecord:
        with self._lock:
            self._next_id += 1
            stored = replace(record, id=record.id or f"rec-{self._next_id}")
            self.records[(zone_id, stored.name, stored.type)] = stored
        return stored

    def mutations(self) -> list[tuple[str, Any]]:
        return [call for call in self.calls if call[0] in {"create", "update", "delete"}]

    def zone_id(self, zone_name: str) -> str:
        self.calls.append(("zone_id", zone_name))
        if self.fail_zone_lookups:
            raise ProviderError("GET /zones failed: connection reset")
        if zone_name not in self.zones:
            raise ZoneNotFound(f"zone {zone_name} not found")
        return self.zones[zone_name]

    def _check_owner(self, existing: DNSRecord) -> None:
        if existing.owner and existing.owner != self.owner_id:
            raise OwnershipConflict(
                existing.type.value, existing.name, existing.owner, self.owner_id
            )

    def upsert_record(self, zone_id: str, desired: DNSRecord) -> DNSRecord:
        if desired.type in self.fail_types:
            self.calls.append(("upsert_failed", desired))
            raise ProviderError(f"upsert of {desired.type.value} {desired.name} failed", status=500)
        record = replace(desired, owner=self.owner_id)
        existing = self.records.get((zone_id, record.name, record.type))
        if existing is None:
            self.calls.append(("create", record))
            return self.seed(zone_id, record)
        self._check_owner(existing)
        if existing.same_content(record):
            self.calls.append(("noop", record))
            return existing
        self.calls.append(("update", record))
        updated = replace(record, id=existing.id)
        self.records[(zone_id, record.name, record.type)] = updated
        return updated

    def delete_record(self, zone_id: str, name: str, record_type: RecordType) -> bool:
        if record_type in self.fail_types:
            self.calls.append(("delete_failed", (name, record_type)))
            raise ProviderError(f"delete of {record_type.value} {name} failed", status=500)
        existing = self.records.get((zone_id, name, record_type))
        if existing is None:
            self.calls.append(("delete_absent", (name, record_type)))
            return False
        self._check_owner(existing)
        self.calls.append(("delete", (name, record_type)))
        del self.records[(zone_id, name, record_type)]
        return True

    def record(self, name: str, record_type: RecordType, zone_id: str = "zone-1") -> DNSRecord | None:
        return self.records.get((zone_id, name, record_type))


class FakeDetector:
    """Public address detector returning fixed per-family answers."""

    def __init__(self, ipv4: str | None = "203.0.113.10", ipv6: str | None = None) -> None:
        self.ipv4 = ipv4
        self.ipv6 = ipv6
        self.calls: list[RecordType] = []

    def resolve(self, record_type: RecordType) -> list[str]:
        self.calls.append(record_type)
        addresses = []
        if RecordType.A in record_type.families and self.ipv4:
            addresses.append(self.ipv4)
        if RecordType.AAAA in record_type.families and self.ipv6:
            addresses.append(self.ipv6)
        if not addresses or (record_type is not RecordType.DUAL and len(addresses) != 1):
            raise NoAddressDetected(f"no public address for {record_type.value}")
        return addresses
