from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from routeflare.src.cloudflare import DNSRecord
from routeflare.src.errors import (
    ClusterUnavailable,
    ConnectivityError,
    MissingParentRef,
    NoMatchingAddress,
    OwnershipConflict,
    RouteflareError,
    RouteSkipped,
)
from routeflare.src.gateway import gateway_addresses
from routeflare.src.intent import ContentMode, RecordType, RouteIntent, address_family, extract_intent
from routeflare.src.metrics import METRICS
from routeflare.src.objects import Gateway, HTTPRoute, RouteKey
from routeflare.src.store import TrackedRoute, TrackedRouteStore


class ClusterReader(Protocol):
    def get_route(self, namespace: str, name: str) -> HTTPRoute | None: ...

    def get_gateway(self, namespace: str, name: str) -> Gateway | None: ...


class DNSProvider(Protocol):
    def zone_id(self, zone_name: str) -> str: ...

    def upsert_record(self, zone_id: str, desired: DNSRecord) -> DNSRecord: ...

    def delete_record(self, zone_id: str, name: str, record_type: RecordType) -> bool: ...


class AddressDetector(Protocol):
    def resolve(self, record_type: RecordType) -> list[str]: ...


class Trigger(str, Enum):
    OBSERVED = "observed"
    PERIODIC = "periodic"


class Outcome(str, Enum):
    UNMANAGED = "unmanaged"
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    DELETED = "deleted"
    UNTRACKED = "untracked"


@dataclass
class FanOutResult:
    """Per-family provider attempts made for one route."""

    attempted: list[RecordType] = field(default_factory=list)
    succeeded: list[RecordType] = field(default_factory=list)
    failed: list[RecordType] = field(default_factory=list)


@dataclass(frozen=True)
class ReconcileResult:
    key: RouteKey
    outcome: Outcome
    addresses: tuple[str, ...] = ()
    fan_out: FanOutResult | None = None


@dataclass(frozen=True)
class SweepResult:
    checked: int = 0
    dropped: int = 0
    applied: int = 0
    unchanged: int = 0
    skipped: int = 0


def _record_provider_result(operation: str, record_type: RecordType, result: str) -> None:
    METRICS.provider_operations_total.labels(
        operation=operation, record_type=record_type.value, result=result
    ).inc()


def apply_records(
    provider: DNSProvider,
    zone_id: str,
    intent: RouteIntent,
    addresses: list[str] | tuple[str, ...],
    logger: logging.Logger | None = None,
) -> FanOutResult:
    """Upsert one record per requested address family.

    Addresses are classified in order; the first address of each family the
    intent asks for wins and iteration stops once every requested family has
    been attempted. A failed attempt is logged and does not prevent the other
    family's attempt.
    """
    log = logger or logging.getLogger(__name__)
    wanted = intent.record_type.families
    result = FanOutResult()

    for address in addresses:
        family = address_family(address)
        if family is None:
            log.warning("Skipping invalid IP address %r for %s", address, intent.record_name)
            continue
        if family not in wanted or family in result.attempted:
            continue

        result.attempted.append(family)
        desired = DNSRecord(
            type=family,
            name=intent.record_name,
            content=address,
            ttl=intent.ttl,
            proxied=intent.proxied,
        )
        try:
            provider.upsert_record(zone_id, desired)
        except OwnershipConflict as exc:
            result.failed.append(family)
            _record_provider_result("upsert", family, "conflict")
            log.warning("Not upserting %s record %s: %s", family.value, intent.record_name, exc)
        except ConnectivityError as exc:
            result.failed.append(family)
            _record_provider_result("upsert", family, "error")
            log.error("Error upserting %s record %s: %s", family.value, intent.record_name, exc)
        else:
            result.succeeded.append(family)
            _record_provider_result("upsert", family, "success")
            log.info("Upserted %s record %s -> %s", family.value, intent.record_name, address)

        if len(result.attempted) == len(wanted):
            break

    if not result.attempted:
        log.warning(
            "No %s address among %s for record %s",
            intent.record_type.value,
            list(addresses),
            intent.record_name,
        )
    return result


def remove_records(
    provider: DNSProvider,
    zone_id: str,
    intent: RouteIntent,
    logger: logging.Logger | None = None,
) -> FanOutResult:
    """Delete the record of every family *intent* covers, logging failures per attempt."""
    log = logger or logging.getLogger(__name__)
    result = FanOutResult()
    for family in intent.record_type.families:
        result.attempted.append(family)
        try:
            deleted = provider.delete_record(zone_id, intent.record_name, family)
        except OwnershipConflict as exc:
            result.failed.append(family)
            _record_provider_result("delete", family, "conflict")
            log.warning("Not deleting %s record %s: %s", family.value, intent.record_name, exc)
        except ConnectivityError as exc:
            result.failed.append(family)
            _record_provider_result("delete", family, "error")
            log.error("Error deleting %s record %s: %s", family.value, intent.record_name, exc)
        else:
            result.succeeded.append(family)
            _record_provider_result("delete", family, "success" if deleted else "absent")
    return result


class Reconciler:
    """Decides, per route, whether DNS records are created, updated, skipped or removed.

    Every public operation runs under the store's per-route lock, so two
    reconciliations of the same route never interleave their
    read/provider/write sequence while different routes proceed in parallel.

    Tracking lifecycle:
        A route becomes tracked after its first successful apply and is
        re-tracked (overwritten) on every later apply. It is dropped when its
        intent disappears, when it is deleted, or when a periodic sweep finds
        it no longer exists. Failures to resolve addresses or reach the
        provider's zone leave the tracked entry exactly as it was so a later
        trigger retries.
    """

    def __init__(
        self,
        store: TrackedRouteStore,
        cluster: ClusterReader,
        provider: DNSProvider,
        detector: AddressDetector,
        annotation_prefix: str = "routeflare/",
        delete_records: bool = True,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.cluster = cluster
        self.provider = provider
        self.detector = detector
        self.annotation_prefix = annotation_prefix
        self.delete_records = delete_records
        self.logger = logger or logging.getLogger(__name__)

    def _finish(self, trigger: str, result: ReconcileResult) -> ReconcileResult:
        METRICS.reconciles_total.labels(trigger=trigger, outcome=result.outcome.value).inc()
        return result

    def _gateway_for(self, route: HTTPRoute) -> RouteKey:
        # Only the first parent reference is considered.
        if not route.parent_refs:
            raise MissingParentRef(f"HTTPRoute {route.key} has no parentRefs")
        parent = route.parent_refs[0]
        return RouteKey(parent.namespace, parent.name)

    def _resolve_addresses(
        self, route: HTTPRoute, intent: RouteIntent
    ) -> tuple[list[str], RouteKey | None]:
        if intent.content_mode is ContentMode.DDNS:
            return self.detector.resolve(intent.record_type), None

        gateway_key = self._gateway_for(route)
        gateway = self.cluster.get_gateway(gateway_key.namespace, gateway_key.name)
        if gateway is None:
            raise NoMatchingAddress(f"Gateway {gateway_key} not found")
        return gateway_addresses(gateway, intent.record_type), gateway_key

    def observe(self, route: HTTPRoute, trigger: Trigger = Trigger.OBSERVED) -> ReconcileResult:
        """Bring the provider in line with *route*'s current intent.

        DDNS routes re-checked by the periodic sweep are left alone when the
        detected addresses equal the last applied ones; every other trigger
        applies unconditionally so provider-side edits are repaired.
        """
        with self.store.route_lock(route.key):
            return self._observe_locked(route, trigger)

    def _observe_locked(self, route: HTTPRoute, trigger: Trigger) -> ReconcileResult:
        # Caller holds the route lock for route.key.
        key = route.key
        try:
            intent = extract_intent(route, self.annotation_prefix)
        except RouteSkipped as exc:
            self.logger.warning("Skipping HTTPRoute %s: %s", key, exc)
            return self._finish(trigger.value, ReconcileResult(key, Outcome.SKIPPED))

        if intent is None:
            if self.store.remove(key) is not None:
                self.logger.info("HTTPRoute %s is no longer managed; stopped tracking", key)
            return self._finish(trigger.value, ReconcileResult(key, Outcome.UNMANAGED))

        try:
            addresses, gateway_key = self._resolve_addresses(route, intent)
        except (RouteSkipped, ConnectivityError) as exc:
            self.logger.error(
                "Error resolving %s addresses for HTTPRoute %s: %s",
                intent.content_mode.value,
                key,
                exc,
            )
            return self._finish(trigger.value, ReconcileResult(key, Outcome.SKIPPED))

        if intent.content_mode is ContentMode.DDNS and trigger is Trigger.PERIODIC:
            previous = self.store.get(key)
            if previous is not None and list(previous.last_addresses) == addresses:
                self.logger.debug("Public addresses for %s unchanged: %s", key, addresses)
                return self._finish(
                    trigger.value,
                    ReconcileResult(key, Outcome.UNCHANGED, tuple(addresses)),
                )

        try:
            zone_id = self.provider.zone_id(intent.zone_name)
        except (RouteSkipped, ConnectivityError) as exc:
            self.logger.error(
                "Error getting zone id for %s (HTTPRoute %s): %s", intent.zone_name, key, exc
            )
            return self._finish(trigger.value, ReconcileResult(key, Outcome.SKIPPED))

        fan_out = apply_records(self.provider, zone_id, intent, addresses, logger=self.logger)
        self.store.put(TrackedRoute.from_intent(key, intent, addresses, gateway=gateway_key))
        return self._finish(
            trigger.value,
            ReconcileResult(key, Outcome.APPLIED, tuple(addresses), fan_out),
        )

    def delete(self, route: HTTPRoute) -> ReconcileResult:
        """Remove the records of a deleted route and stop tracking it.

        The intent is re-derived from the annotations the deleted object
        carried. Tracking is dropped whatever the provider answers.
        """
        key = route.key
        with self.store.route_lock(key):
            try:
                if not self.delete_records:
                    self.logger.info(
                        "Deletion disabled by strategy; leaving records of HTTPRoute %s", key
                    )
                    return self._finish("deleted", ReconcileResult(key, Outcome.UNTRACKED))

                try:
                    intent = extract_intent(route, self.annotation_prefix)
                except RouteSkipped as exc:
                    self.logger.error("Cannot derive records of deleted HTTPRoute %s: %s", key, exc)
                    return self._finish("deleted", ReconcileResult(key, Outcome.UNTRACKED))
                if intent is None:
                    return self._finish("deleted", ReconcileResult(key, Outcome.UNTRACKED))

                try:
                    zone_id = self.provider.zone_id(intent.zone_name)
                except (RouteSkipped, ConnectivityError) as exc:
                    self.logger.error(
                        "Error getting zone id for %s (deleted HTTPRoute %s): %s",
                        intent.zone_name,
                        key,
                        exc,
                    )
                    return self._finish("deleted", ReconcileResult(key, Outcome.UNTRACKED))

                fan_out = remove_records(self.provider, zone_id, intent, logger=self.logger)
                return self._finish("deleted", ReconcileResult(key, Outcome.DELETED, fan_out=fan_out))
            finally:
                self.store.remove(key)

    def _sweep_one(self, tracked: TrackedRoute) -> ReconcileResult | None:
        """Re-check one snapshotted entry; ``None`` means it was dropped."""
        key = tracked.key
        with self.store.route_lock(key):
            # The route may have been deleted or unmanaged since the snapshot.
            if key not in self.store:
                self.logger.debug("HTTPRoute %s no longer tracked; skipping sweep", key)
                return ReconcileResult(key, Outcome.UNTRACKED)

            route = self.cluster.get_route(tracked.namespace, tracked.name)
            if route is None:
                self.store.remove(key)
                self.logger.info("HTTPRoute %s no longer exists; stopped tracking", key)
                return None
            return self._observe_locked(route, Trigger.PERIODIC)

    def sweep(self) -> SweepResult:
        """Re-evaluate every tracked route against the current cluster state.

        Each route is fetched again while its route lock is held, so a watch
        event handled in between is never overwritten by an older copy.
        Routes that no longer exist are dropped without touching the
        provider; the rest are observed again with :attr:`Trigger.PERIODIC`.
        """
        started = time.monotonic()
        checked = dropped = applied = unchanged = skipped = 0
        for tracked in self.store.snapshot():
            checked += 1
            try:
                result = self._sweep_one(tracked)
                if result is None:
                    dropped += 1
                    continue
            except ClusterUnavailable as exc:
                skipped += 1
                self.logger.error("Error getting HTTPRoute %s during sweep: %s", tracked.key, exc)
                continue
            except RouteflareError as exc:
                skipped += 1
                self.logger.error("Error reconciling HTTPRoute %s during sweep: %s", tracked.key, exc)
                continue

            if result.outcome is Outcome.APPLIED:
                applied += 1
            elif result.outcome is Outcome.UNCHANGED:
                unchanged += 1
            else:
                skipped += 1

        METRICS.sweep_duration_seconds.observe(time.monotonic() - started)
        summary = SweepResult(
            checked=checked,
            dropped=dropped,
            applied=applied,
            unchanged=unchanged,
            skipped=skipped,
        )
        self.logger.info(
            "Sweep checked %d route(s): %d applied, %d unchanged, %d dropped, %d skipped",
            summary.checked,
            summary.applied,
            summary.unchanged,
            summary.dropped,
            summary.skipped,
        )
        return summary
