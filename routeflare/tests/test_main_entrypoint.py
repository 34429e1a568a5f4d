from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from unittest.mock import MagicMock, patch

import pytest

from routeflare.src.__main__ import JSONFormatter, build_controller, main, redact_sensitive_text
from routeflare.src.config import load_settings
from routeflare.src.controller import RouteflareController


class TestJSONFormatter:
    """Tests for the structured JSON log formatter."""

    def _make_record(
        self,
        msg: str = "test message",
        level: int = logging.INFO,
        exc_info: object = None,
    ) -> logging.LogRecord:
        return logging.LogRecord(
            name="test.logger",
            level=level,
            pathname="test.py",
            lineno=1,
            msg=msg,
            args=(),
            exc_info=exc_info,  # type: ignore[arg-type]
        )

    def test_format_produces_valid_json(self) -> None:
        parsed = json.loads(JSONFormatter().format(self._make_record()))

        assert parsed["msg"] == "test message"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test.logger"
        assert "ts" in parsed
        assert "error" not in parsed

    def test_format_includes_error_on_exception(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            record = self._make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "ValueError: boom" in parsed["error"]

    def test_format_redacts_cloudflare_token(self) -> None:
        record = self._make_record(msg="request failed: Authorization: Bearer abc.def-123")

        output = JSONFormatter().format(record)

        assert "abc.def-123" not in output
        assert "[REDACTED]" in output

    def test_format_redacts_sensitive_values_in_exception_text(self) -> None:
        try:
            raise RuntimeError("api_key=supersecret")
        except RuntimeError:
            record = self._make_record(exc_info=sys.exc_info())

        output = JSONFormatter().format(record)

        assert "supersecret" not in output


@pytest.mark.parametrize(
    ("text", "secret"),
    [
        ("token=abc123", "abc123"),
        ("GET /zones?access_token=xyz789&name=example.com", "xyz789"),
        ("password: hunter2", "hunter2"),
    ],
)
def test_redact_sensitive_text(text: str, secret: str) -> None:
    redacted = redact_sensitive_text(text)

    assert secret not in redacted
    assert "[REDACTED]" in redacted


def test_redact_leaves_plain_text_alone() -> None:
    text = "Upserted A record api.example.com -> 198.51.100.7"

    assert redact_sensitive_text(text) == text


def test_build_controller_wires_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CLOUDFLARE_API_TOKEN", "token-value")
    monkeypatch.setenv("STRATEGY", "upsert-only")
    monkeypatch.setenv("WATCH_NAMESPACE", "apps")
    monkeypatch.setenv("SWEEP_INTERVAL_SECONDS", "120")
    monkeypatch.setenv("WATCH_RECONNECT_SECONDS", "7")
    monkeypatch.setenv("ANNOTATION_PREFIX", "dns.example.org/")

    with patch("routeflare.src.__main__.build_custom_objects_api", return_value=MagicMock()):
        controller = build_controller(load_settings())

    try:
        assert isinstance(controller, RouteflareController)
        assert controller.sweep_interval_seconds == 120
        assert controller.backoff.reconnect_seconds == 7
        assert controller.reconciler.delete_records is False
        assert controller.reconciler.annotation_prefix == "dns.example.org/"
        assert controller.cluster.namespace == "apps"  # type: ignore[attr-defined]
        assert controller.reconciler.provider.owner_id == "routeflare"  # type: ignore[attr-defined]
    finally:
        controller.dispatcher.shutdown()


class TestMainEntrypoint:
    """Integration-style tests for the main() function wiring."""

    def _mock_controller(self) -> MagicMock:
        mock_controller = MagicMock()
        mock_controller.ready = threading.Event()

        def fake_run_forever(shutdown_event: threading.Event | None = None) -> None:
            if shutdown_event is not None:
                shutdown_event.set()

        mock_controller.run_forever.side_effect = fake_run_forever
        return mock_controller

    def test_main_wires_components(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CLOUDFLARE_API_TOKEN", "token-value")
        monkeypatch.setenv("KUBECONFIG", "/tmp/kubeconfig")
        monkeypatch.setenv("HEALTH_PORT", "9090")
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        mock_controller = self._mock_controller()

        with (
            patch("routeflare.src.__main__.load_kube_configuration") as mock_kube,
            patch("routeflare.src.__main__.build_controller", return_value=mock_controller),
            patch("routeflare.src.__main__.start_health_server") as mock_health,
        ):
            mock_health.return_value = MagicMock()
            main()

        mock_kube.assert_called_once_with("/tmp/kubeconfig")
        mock_controller.run_forever.assert_called_once()
        assert mock_health.call_args.kwargs["port"] == 9090
        assert mock_health.call_args.kwargs["ready"] is mock_controller.ready
        mock_health.return_value.shutdown.assert_called_once()

    def test_main_registers_signal_handlers(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CLOUDFLARE_API_TOKEN", "token-value")
        mock_controller = self._mock_controller()
        handlers: dict[int, object] = {}

        def tracking_signal(signum: int, handler: object) -> object:
            handlers[signum] = handler
            return signal.SIG_DFL

        with (
            patch("routeflare.src.__main__.load_kube_configuration"),
            patch("routeflare.src.__main__.build_controller", return_value=mock_controller),
            patch("routeflare.src.__main__.start_health_server", return_value=MagicMock()),
            patch("routeflare.src.__main__.signal.signal", side_effect=tracking_signal),
        ):
            main()

        assert signal.SIGTERM in handlers
        assert signal.SIGINT in handlers

        handler = handlers[signal.SIGTERM]
        assert callable(handler)
        handler(signal.SIGTERM, None)
        mock_controller.request_stop.assert_called_once()

    def test_main_exits_on_invalid_configuration(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("CLOUDFLARE_API_TOKEN", raising=False)

        with (
            patch("routeflare.src.__main__.load_kube_configuration") as mock_kube,
            pytest.raises(SystemExit) as excinfo,
        ):
            main()

        assert excinfo.value.code == 1
        mock_kube.assert_not_called()

    def test_main_shuts_down_health_server_when_controller_fails(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("CLOUDFLARE_API_TOKEN", "token-value")
        mock_controller = self._mock_controller()
        mock_controller.run_forever.side_effect = RuntimeError("boom")

        with (
            patch("routeflare.src.__main__.load_kube_configuration"),
            patch("routeflare.src.__main__.build_controller", return_value=mock_controller),
            patch("routeflare.src.__main__.start_health_server") as mock_health,
            pytest.raises(RuntimeError, match="boom"),
        ):
            mock_health.return_value = MagicMock()
            main()

        mock_health.return_value.shutdown.assert_called_once()
