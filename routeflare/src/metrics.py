from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by routeflare on ``/metrics``."""

    reconciles_total: Counter = field(
        default_factory=lambda: Counter(
            "routeflare_reconciles_total",
            "Total route reconciliations by trigger and outcome",
            ["trigger", "outcome"],
        )
    )
    provider_operations_total: Counter = field(
        default_factory=lambda: Counter(
            "routeflare_provider_operations_total",
            "Total DNS record operations attempted against the provider",
            ["operation", "record_type", "result"],
        )
    )
    ownership_conflicts_total: Counter = field(
        default_factory=lambda: Counter(
            "routeflare_ownership_conflicts_total",
            "Total record operations refused because another owner holds the record",
            ["operation"],
        )
    )
    address_lookup_failures_total: Counter = field(
        default_factory=lambda: Counter(
            "routeflare_address_lookup_failures_total",
            "Total failed public address lookups",
            ["family"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "routeflare_watch_errors_total",
            "Total HTTPRoute list/watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "routeflare_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    dispatch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "routeflare_dispatch_errors_total",
            "Total unexpected exceptions raised by reconciliation dispatches",
        )
    )
    tracked_routes: Gauge = field(
        default_factory=lambda: Gauge(
            "routeflare_tracked_routes",
            "Current number of routes tracked for periodic reconciliation",
        )
    )
    sweep_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "routeflare_sweep_duration_seconds",
            "Seconds spent in one periodic sweep over tracked routes",
            buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "routeflare_build",
            "Build information for routeflare",
        )
    )


METRICS = ControllerMetrics()
