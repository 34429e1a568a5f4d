from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading

from routeflare.src.cloudflare import CloudflareClient
from routeflare.src.config import Settings, load_settings
from routeflare.src.controller import BackoffPolicy, KeyedDispatcher, RouteflareController
from routeflare.src.ddns import PublicAddressDetector
from routeflare.src.errors import ConfigInvalid
from routeflare.src.health import start_health_server
from routeflare.src.kube import GatewayAPIClient, build_custom_objects_api, load_kube_configuration
from routeflare.src.metrics import METRICS
from routeflare.src.reconciler import Reconciler
from routeflare.src.store import TrackedRouteStore

RUNTIME_VERSION = "0.3.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.handlers.clear()
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def build_controller(settings: Settings) -> RouteflareController:
    """Wire the cluster client, Cloudflare adapter, detector, store and reconciler together."""
    cluster = GatewayAPIClient(build_custom_objects_api(), namespace=settings.watch_namespace)
    provider = CloudflareClient(
        api_token=settings.cloudflare_api_token,
        owner_id=settings.record_owner_id,
        timeout_seconds=settings.provider_timeout_seconds,
    )
    detector = PublicAddressDetector(
        ipv4_url=settings.ipv4_lookup_url,
        ipv6_url=settings.ipv6_lookup_url,
        timeout_seconds=settings.address_lookup_timeout_seconds,
    )
    reconciler = Reconciler(
        store=TrackedRouteStore(),
        cluster=cluster,
        provider=provider,
        detector=detector,
        annotation_prefix=settings.annotation_prefix,
        delete_records=settings.should_delete,
    )
    return RouteflareController(
        cluster=cluster,
        reconciler=reconciler,
        sweep_interval_seconds=settings.sweep_interval_seconds,
        backoff=BackoffPolicy(reconnect_seconds=settings.watch_reconnect_seconds),
        dispatcher=KeyedDispatcher(max_workers=settings.max_concurrent_reconciles),
        watch_timeout_seconds=settings.watch_timeout_seconds,
        shutdown_timeout_seconds=settings.shutdown_timeout_seconds,
    )


def main() -> None:
    """Entrypoint: configure logging, load settings, and run the controller until signalled."""
    configure_logging()
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        settings = load_settings()
    except ConfigInvalid as exc:
        logger.error("Invalid configuration: %s", exc)
        sys.exit(1)

    logger.info(
        "Starting routeflare %s (strategy=%s owner=%s)",
        RUNTIME_VERSION,
        settings.strategy.value,
        settings.record_owner_id,
    )
    load_kube_configuration(settings.kubeconfig_path)
    controller = build_controller(settings)
    health_server = start_health_server(ready=controller.ready, port=settings.health_port)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()
        controller.request_stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        controller.run_forever(shutdown_event=shutdown_event)
    finally:
        health_server.shutdown()
    logger.info("routeflare stopped")


if __name__ == "__main__":
    main()
