"""
Provisioning Configuration and Timing Tests
"""

import pytest

from performance_monitor import (
    OperationTimer, get_performance_stats, monitor_performance, reset_performance_stats
)
from provisioning_config import (
    ConfigurationError, DatabaseConfig, HostingPanelConfig, OrchestratorConfig, RegistrarConfig,
    WorkerPoolConfig
)
from services.provisioning_models import ProviderError, ProviderErrorKind, ProviderOk


class TestProvisioningConfig:
    """Environment-driven configuration"""

    def test_test_mode_uses_placeholder_credentials(self):
        registrar = RegistrarConfig.from_env()
        panel = HostingPanelConfig.from_env()

        assert registrar.api_token == 'test_token'
        assert 'test.local' in registrar.base_url
        assert panel.host == 'test-server.local'
        assert panel.verify_tls is True

    def test_live_registrar_requires_token(self, monkeypatch):
        monkeypatch.setenv('TEST_MODE', '0')
        monkeypatch.delenv('HOSTINGER_API_TOKEN', raising=False)

        with pytest.raises(ConfigurationError):
            RegistrarConfig.from_env()

    def test_live_registrar_settings(self, monkeypatch):
        monkeypatch.setenv('TEST_MODE', '0')
        monkeypatch.setenv('HOSTINGER_API_TOKEN', 'tok')
        monkeypatch.delenv('HOSTINGER_API_BASE_URL', raising=False)
        monkeypatch.setenv('DOMAIN_REGISTRATION_PERIOD', '2')

        config = RegistrarConfig.from_env()

        assert config.base_url == 'https://developers.hostinger.com/api'
        assert config.registration_period_years == 2

    def test_live_whm_settings(self, monkeypatch):
        monkeypatch.setenv('TEST_MODE', '0')
        monkeypatch.setenv('WHM_HOST', 'https://panel.example.net/')
        monkeypatch.setenv('WHM_USER', 'root')
        monkeypatch.setenv('WHM_API_TOKEN', 'tok')
        monkeypatch.setenv('WHM_VERIFY_TLS', 'false')

        config = HostingPanelConfig.from_env()

        assert config.base_url == 'https://panel.example.net:2087/json-api'
        assert config.verify_tls is False

    def test_live_whm_requires_credentials(self, monkeypatch):
        monkeypatch.setenv('TEST_MODE', '0')
        monkeypatch.delenv('WHM_API_TOKEN', raising=False)

        with pytest.raises(ConfigurationError):
            HostingPanelConfig.from_env()

    def test_invalid_numbers_fall_back_to_defaults(self, monkeypatch):
        monkeypatch.setenv('PROVISIONING_WORKERS', 'many')
        monkeypatch.setenv('PROVIDER_CALL_TIMEOUT', 'soon')

        assert WorkerPoolConfig.from_env().workers == 4
        assert OrchestratorConfig.from_env().provider_call_timeout == 60.0

    def test_database_requires_url(self, monkeypatch):
        monkeypatch.delenv('DATABASE_URL', raising=False)

        with pytest.raises(ConfigurationError):
            DatabaseConfig.from_env()


@pytest.mark.asyncio
class TestPerformanceMonitor:
    """Per-operation counters"""

    def setup_method(self):
        reset_performance_stats()

    async def test_decorated_calls_are_counted(self):
        @monitor_performance("test.operation")
        async def operation(fail: bool):
            if fail:
                raise RuntimeError("boom")
            return 'ok'

        assert await operation(False) == 'ok'
        with pytest.raises(RuntimeError):
            await operation(True)

        stats = get_performance_stats()['test.operation']
        assert stats['calls'] == 2
        assert stats['failures'] == 1
        assert stats['max_ms'] >= stats['avg_ms']

    async def test_timer_measures_duration(self):
        with OperationTimer("test.block") as timer:
            pass

        assert timer.duration_ms >= 0
        assert get_performance_stats()['test.block']['calls'] == 1

    async def test_returned_provider_error_counts_as_failure(self):
        @monitor_performance("test.provider")
        async def provider_call(ok: bool):
            if ok:
                return ProviderOk('ORD-1')
            return ProviderError(ProviderErrorKind.REJECTED, 'Domain is not available')

        await provider_call(True)
        result = await provider_call(False)

        assert result.kind is ProviderErrorKind.REJECTED
        stats = get_performance_stats()['test.provider']
        assert stats['calls'] == 2
        assert stats['failures'] == 1

    async def test_marked_timer_counts_as_failure(self):
        with OperationTimer("test.marked") as timer:
            timer.mark_failed('provider_unavailable')

        assert get_performance_stats()['test.marked']['failures'] == 1
