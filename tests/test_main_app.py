"""
Tests for intakewire/main.py - app factory, middleware, and lifespan.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from intakewire.main import create_app, lifespan


def _make_mock_settings(**overrides):
    """Build a mock Settings object."""
    defaults = {
        "app_env": "test",
        "app_base_url": "http://localhost:8000",
        "log_level": "WARNING",
        "sentry_dsn": "",
        "twilio_account_sid": "",
        "sweeper_enabled": False,
        "sweep_interval_seconds": 30,
    }
    defaults.update(overrides)
    settings = MagicMock()
    for k, v in defaults.items():
        setattr(settings, k, v)
    return settings


def _make_dispatcher():
    dispatcher = MagicMock()
    dispatcher.start = AsyncMock()
    dispatcher.stop = AsyncMock()
    return dispatcher


class TestCreateApp:
    def test_returns_fastapi_instance(self):
        with (
            patch("intakewire.main.get_settings", return_value=_make_mock_settings()),
            patch("intakewire.main.configure_structured_logging"),
        ):
            app = create_app()

        assert isinstance(app, FastAPI)
        assert app.title == "IntakeWire"

    def test_configures_structured_logging(self):
        with (
            patch("intakewire.main.get_settings", return_value=_make_mock_settings(log_level="DEBUG")),
            patch("intakewire.main.configure_structured_logging") as mock_log,
        ):
            create_app()

        mock_log.assert_called_once_with("DEBUG")

    def test_routes_registered(self):
        with (
            patch("intakewire.main.get_settings", return_value=_make_mock_settings()),
            patch("intakewire.main.configure_structured_logging"),
        ):
            app = create_app()

        paths = {route.path for route in app.routes}
        assert "/health" in paths
        assert "/api/v1/webhooks" in paths
        assert "/api/v1/events" in paths
        assert "/api/v1/leads/{lead_id}/followups" in paths
        assert "/api/v1/experiments/{experiment_key}/assign" in paths


class TestCorrelationIdMiddleware:
    def _client(self):
        with (
            patch("intakewire.main.get_settings", return_value=_make_mock_settings()),
            patch("intakewire.main.configure_structured_logging"),
        ):
            app = create_app()
        return TestClient(app, raise_server_exceptions=False)

    def test_generates_correlation_id_when_missing(self):
        response = self._client().get("/health")
        assert len(response.headers["x-correlation-id"]) == 32

    def test_uses_existing_correlation_id(self):
        cid = "abc123def456789012345678abcdef00"
        response = self._client().get("/health", headers={"X-Correlation-ID": cid})
        assert response.headers["x-correlation-id"] == cid


class TestLifespan:
    async def test_starts_and_stops_dispatcher(self):
        dispatcher = _make_dispatcher()
        with (
            patch("intakewire.main.get_settings", return_value=_make_mock_settings()),
            patch("intakewire.main.build_dispatcher", return_value=dispatcher),
            patch("intakewire.main.set_dispatcher") as mock_set,
        ):
            async with lifespan(MagicMock()):
                dispatcher.start.assert_awaited_once()
                mock_set.assert_called_with(dispatcher)

        dispatcher.stop.assert_awaited_once()
        mock_set.assert_called_with(None)

    async def test_sweeper_started_and_cancelled(self):
        dispatcher = _make_dispatcher()
        started = asyncio.Event()
        cancelled = asyncio.Event()

        async def fake_sweeper(interval):
            started.set()
            try:
                await asyncio.sleep(3600)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        with (
            patch("intakewire.main.get_settings", return_value=_make_mock_settings(sweeper_enabled=True)),
            patch("intakewire.main.build_dispatcher", return_value=dispatcher),
            patch("intakewire.main.set_dispatcher"),
            patch("intakewire.workers.recovery_sweeper.run_recovery_sweeper", fake_sweeper),
        ):
            async with lifespan(MagicMock()):
                await asyncio.wait_for(started.wait(), timeout=1)

        assert cancelled.is_set()

    async def test_sentry_initialized_when_configured(self):
        with (
            patch("intakewire.main.get_settings",
                  return_value=_make_mock_settings(sentry_dsn="https://key@sentry.example/1")),
            patch("intakewire.main.build_dispatcher", return_value=_make_dispatcher()),
            patch("intakewire.main.set_dispatcher"),
            patch("sentry_sdk.init") as mock_init,
        ):
            async with lifespan(MagicMock()):
                pass

        assert mock_init.call_args.kwargs["dsn"] == "https://key@sentry.example/1"
