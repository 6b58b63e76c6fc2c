"""
Provisioning configuration for the HostBay back office

All credentials and endpoints used by the provisioning adapters are collected here
into explicit configuration objects. Adapters receive these objects in their
constructors and never read the process environment themselves, so tests can
build them directly with fake values.
"""

import os
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_HOSTINGER_API_BASE_URL = 'https://developers.hostinger.com/api'


def is_test_mode() -> bool:
    """True when TEST_MODE=1 (never talk to live providers)"""
    return os.getenv('TEST_MODE') == '1'


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"⚠️ Invalid integer for {name}: {value!r} - using default {default}")
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"⚠️ Invalid number for {name}: {value!r} - using default {default}")
        return default


class ConfigurationError(Exception):
    """Raised when a required provisioning setting is missing"""
    pass


@dataclass(frozen=True)
class RegistrarConfig:
    """Hostinger domain registrar settings"""
    api_token: str
    base_url: str = DEFAULT_HOSTINGER_API_BASE_URL
    registration_period_years: int = 1

    @classmethod
    def from_env(cls) -> 'RegistrarConfig':
        if is_test_mode():
            logger.info("🔒 TEST_MODE active - using mock registrar configuration")
            return cls(api_token='test_token', base_url='https://registrar.test.local/api')

        api_token = os.getenv('HOSTINGER_API_TOKEN')
        if not api_token:
            raise ConfigurationError("HOSTINGER_API_TOKEN environment variable not set")

        return cls(
            api_token=api_token,
            base_url=os.getenv('HOSTINGER_API_BASE_URL', DEFAULT_HOSTINGER_API_BASE_URL).rstrip('/'),
            registration_period_years=_env_int('DOMAIN_REGISTRATION_PERIOD', 1),
        )


@dataclass(frozen=True)
class HostingPanelConfig:
    """WHM/cPanel hosting panel settings"""
    host: str
    username: str
    api_token: str
    port: int = 2087
    verify_tls: bool = True

    @property
    def base_url(self) -> str:
        host = self.host.replace('https://', '').replace('http://', '').rstrip('/')
        return f"https://{host}:{self.port}/json-api"

    @classmethod
    def from_env(cls) -> 'HostingPanelConfig':
        if is_test_mode():
            logger.info("🔒 TEST_MODE active - using mock WHM configuration")
            return cls(host='test-server.local', username='test_user', api_token='test_token')

        host = os.getenv('WHM_HOST')
        username = os.getenv('WHM_USER')
        api_token = os.getenv('WHM_API_TOKEN')
        if not host or not username or not api_token:
            raise ConfigurationError("WHM_HOST, WHM_USER and WHM_API_TOKEN must all be set")

        return cls(
            host=host,
            username=username,
            api_token=api_token,
            port=_env_int('WHM_PORT', 2087),
            verify_tls=_env_bool('WHM_VERIFY_TLS', True),
        )


@dataclass(frozen=True)
class OrchestratorConfig:
    """Run-level settings for the provisioning orchestrator"""
    provider_call_timeout: float = 60.0

    @classmethod
    def from_env(cls) -> 'OrchestratorConfig':
        return cls(provider_call_timeout=_env_float('PROVIDER_CALL_TIMEOUT', 60.0))


@dataclass(frozen=True)
class WorkerPoolConfig:
    """Bounded worker pool settings"""
    workers: int = 4
    queue_size: int = 100
    sweep_interval: float = 300.0

    @classmethod
    def from_env(cls) -> 'WorkerPoolConfig':
        return cls(
            workers=max(1, _env_int('PROVISIONING_WORKERS', 4)),
            queue_size=max(1, _env_int('PROVISIONING_QUEUE_SIZE', 100)),
            sweep_interval=_env_float('PROVISIONING_SWEEP_INTERVAL', 300.0),
        )


@dataclass(frozen=True)
class DatabaseConfig:
    """PostgreSQL connection pool settings"""
    dsn: str
    min_connections: int = 2
    max_connections: int = 20
    connect_timeout: int = 5

    @classmethod
    def from_env(cls) -> 'DatabaseConfig':
        dsn = os.getenv('DATABASE_URL')
        if not dsn:
            raise ConfigurationError("DATABASE_URL environment variable not found")
        return cls(
            dsn=dsn,
            min_connections=_env_int('DB_POOL_MIN', 2),
            max_connections=_env_int('DB_POOL_MAX', 20),
        )
