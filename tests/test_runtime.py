"""
Tests for runtime wiring.
"""

from unittest.mock import patch

import pytest

from app.core.circuit_breaker import CircuitBreakerRegistry
from app.core.config import Settings
from app.core.errors import ConfigurationError
from app.core.job_lock import JobLock
from app.core.runtime import build_runtime, build_toolkit, load_factory
from app.services.item_store import SqlItemStore
from app.services.status_webhook import WebhookStatusSink


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, STATUS_WEBHOOK_URL="")


class TestBuildToolkit:
    """Tests for build_toolkit."""

    def test_thresholds_from_settings(self, settings):
        toolkit = build_toolkit(settings)

        assert toolkit.transport_breaker.failure_threshold == 5
        assert toolkit.transport_breaker.reset_timeout == 60.0
        assert toolkit.store_breaker.failure_threshold == 3
        assert toolkit.store_breaker.reset_timeout == 30.0
        assert toolkit.watchdog.critical_mb == 1536
        assert toolkit.throttle.max_per_window == 3
        assert toolkit.rate_limiter.max_concurrent == 10
        assert toolkit.job_lock.default_ttl == 3600.0

    def test_breakers_registered_once(self, settings):
        registry = CircuitBreakerRegistry()

        toolkit = build_toolkit(settings, registry=registry)

        assert registry.get("transport") is toolkit.transport_breaker
        assert set(registry.get_all_states()) == {"transport", "store"}

    def test_each_build_gets_fresh_primitives(self, settings):
        assert build_toolkit(settings).job_lock is not build_toolkit(settings).job_lock


class TestLoadFactory:
    """Tests for load_factory."""

    def test_resolves_callable(self):
        assert load_factory("app.core.job_lock:JobLock") is JobLock

    @pytest.mark.parametrize("path", ["app.core.job_lock", ":JobLock", "app.core.job_lock:", ""])
    def test_malformed_path(self, path):
        with pytest.raises(ConfigurationError, match="expected 'module:callable'"):
            load_factory(path)

    @pytest.mark.parametrize("path", ["app.core.no_such_module:make", "app.core.job_lock:NoSuchThing"])
    def test_unresolvable_path(self, path):
        with pytest.raises(ConfigurationError, match="Cannot load factory"):
            load_factory(path)


class TestBuildRuntime:
    """Tests for build_runtime."""

    def test_wires_passed_collaborators(self, settings, fake_source, fake_processor, test_engine):
        runtime = build_runtime(settings, source=fake_source, processor=fake_processor, engine=test_engine)

        assert runtime.scheduler.source is fake_source
        assert runtime.scheduler.processor is fake_processor
        assert isinstance(runtime.store, SqlItemStore)
        assert runtime.scheduler.store is runtime.store
        assert runtime.scheduler.toolkit is runtime.toolkit
        assert runtime.status_sink is None

    def test_missing_source_factory(self, settings, fake_processor, item_store):
        with pytest.raises(ConfigurationError, match="INGEST_SOURCE_FACTORY"):
            build_runtime(settings, processor=fake_processor, store=item_store)

    def test_missing_processor_factory(self, settings, fake_source, item_store):
        with pytest.raises(ConfigurationError, match="INGEST_PROCESSOR_FACTORY"):
            build_runtime(settings, source=fake_source, store=item_store)

    def test_factories_are_called(self, fake_source, fake_processor, item_store):
        settings = Settings(
            _env_file=None,
            INGEST_SOURCE_FACTORY="mail.imap:build_source",
            INGEST_PROCESSOR_FACTORY="rfq.processor:build_processor",
        )
        factories = {
            "mail.imap:build_source": lambda: fake_source,
            "rfq.processor:build_processor": lambda: fake_processor,
        }

        with patch("app.core.runtime.load_factory", side_effect=factories.__getitem__):
            runtime = build_runtime(settings, store=item_store)

        assert runtime.scheduler.source is fake_source
        assert runtime.scheduler.processor is fake_processor

    @pytest.mark.asyncio
    async def test_webhook_sink_from_settings(self, fake_source, fake_processor, item_store):
        settings = Settings(_env_file=None, STATUS_WEBHOOK_URL="http://dashboard.local/hooks/status")

        runtime = build_runtime(settings, source=fake_source, processor=fake_processor, store=item_store)

        assert isinstance(runtime.status_sink, WebhookStatusSink)
        assert runtime.scheduler.status_sink is runtime.status_sink
        await runtime.status_sink.aclose()
