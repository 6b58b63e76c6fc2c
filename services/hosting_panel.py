"""
WHM hosting panel integration
Creates cPanel hosting accounts through the WHM JSON API
"""

import logging
import secrets
import string
import httpx
from abc import ABC, abstractmethod
from typing import Optional

from performance_monitor import monitor_performance
from provisioning_config import HostingPanelConfig
from services.provisioning_models import (
    AccountHandle, ProviderOk, ProviderRejected, ProviderResult, ProviderUnavailable,
    provider_error_from_exception
)

logger = logging.getLogger(__name__)

# cPanel usernames are limited to 16 characters
MAX_USERNAME_LENGTH = 16
PASSWORD_LENGTH = 20
PASSWORD_SYMBOLS = "!@#$%^&*-_"


def provisioning_username(subject_id: int) -> str:
    """Deterministic cPanel username for a subject: user<id>"""
    username = f"user{subject_id}"
    if len(username) > MAX_USERNAME_LENGTH:
        raise ValueError(f"Subject id {subject_id} is too large for a {MAX_USERNAME_LENGTH}-character cPanel username")
    return username


def generate_one_time_password(length: int = PASSWORD_LENGTH) -> str:
    """Random password with at least one lowercase, uppercase, digit and symbol character"""
    classes = [string.ascii_lowercase, string.ascii_uppercase, string.digits, PASSWORD_SYMBOLS]
    if length < len(classes):
        raise ValueError(f"Password length must be at least {len(classes)}")

    alphabet = ''.join(classes)
    chars = [secrets.choice(char_class) for char_class in classes]
    chars += [secrets.choice(alphabet) for _ in range(length - len(classes))]
    secrets.SystemRandom().shuffle(chars)
    return ''.join(chars)


class HostingAccountProvisioner(ABC):
    """Hosting panel operations the orchestrator depends on"""

    @abstractmethod
    async def create_account(self, username: str, domain_name: str, plan_name: str, password: str,
                             contact_email: str) -> ProviderResult[AccountHandle]:
        """Create a hosting account for domain_name on plan_name"""


class WHMAccountProvisioner(HostingAccountProvisioner):
    """WHM JSON API (api.version=1) account creation"""

    def __init__(self, config: HostingPanelConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.headers = {'Authorization': f'whm {config.username}:{config.api_token}'}
        self._transport = transport
        self.timeout = httpx.Timeout(connect=5.0, read=60.0, write=10.0, pool=5.0)

        logger.info(f"🔧 WHM provisioner initialized:")
        logger.info(f"   • WHM Host: {config.host}:{config.port}")
        logger.info(f"   • API Token: {'✅ SET' if config.api_token else '❌ NOT SET'}")
        if not config.verify_tls:
            logger.warning("⚠️ WHM TLS certificate verification is DISABLED")

    async def _createacct(self, params: dict) -> dict:
        url = f"{self.config.base_url}/createacct"
        try:
            async with httpx.AsyncClient(verify=self.config.verify_tls, timeout=self.timeout,
                                         transport=self._transport) as client:
                response = await client.post(
                    url,
                    params={'api.version': '1'},
                    data=params,
                    headers=self.headers,
                )
        except httpx.TimeoutException as e:
            raise ProviderUnavailable(f"WHM request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderUnavailable(f"WHM transport error: {e}") from e

        if response.status_code >= 500:
            raise ProviderUnavailable(f"WHM returned HTTP {response.status_code}")
        if response.status_code != 200:
            raise ProviderRejected(f"WHM returned HTTP {response.status_code}: {response.text.strip()}")

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderUnavailable("WHM returned a non-JSON body") from e
        if not isinstance(data, dict):
            raise ProviderUnavailable("WHM returned an unexpected body")
        return data

    @monitor_performance("hostingpanel.create_account")
    async def create_account(self, username: str, domain_name: str, plan_name: str, password: str,
                             contact_email: str) -> ProviderResult[AccountHandle]:
        logger.info(f"🏠 WHM: Creating account {username} for {domain_name} on plan {plan_name}")
        try:
            data = await self._createacct({
                'username': username,
                'domain': domain_name,
                'plan': plan_name,
                'password': password,
                'contactemail': contact_email,
            })

            metadata = data.get('metadata') or {}
            if not isinstance(metadata, dict):
                raise ProviderUnavailable(f"WHM returned unusable metadata: {metadata!r}")
            if metadata.get('result') != 1:
                reason = metadata.get('reason') or 'WHM did not report a reason'
                raise ProviderRejected(str(reason))

        except (ProviderUnavailable, ProviderRejected) as e:
            logger.error(f"❌ WHM: Account creation failed for {username}@{domain_name}: {e}")
            return provider_error_from_exception(e)

        account_data = data.get('data') or {}
        server_ip = account_data.get('ip') if isinstance(account_data, dict) else None

        logger.info(f"✅ WHM: Account created: {username}@{domain_name}")
        return ProviderOk(AccountHandle(username=username, domain=domain_name, server_ip=server_ip))
