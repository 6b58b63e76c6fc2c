"""
Domain registrar integration
Registers and transfers domains through the Hostinger domains API
"""

import asyncio
import logging
import httpx
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from performance_monitor import monitor_performance
from provisioning_config import RegistrarConfig
from services.provisioning_models import (
    ProviderError, ProviderErrorKind, ProviderOk, ProviderRejected, ProviderResult,
    ProviderUnavailable, RegistrantDetails, provider_error_from_exception
)

logger = logging.getLogger(__name__)


class DomainRegistrar(ABC):
    """Registrar operations the orchestrator depends on"""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Short provider id used in event types, e.g. 'hostinger'"""

    @abstractmethod
    async def register(self, domain_name: str, registrant: RegistrantDetails) -> ProviderResult[str]:
        """Register a new domain; Ok carries the provider order id"""

    @abstractmethod
    async def transfer(self, domain_name: str, auth_code: str) -> ProviderResult[str]:
        """Start an inbound transfer; Ok carries the provider order id"""


class HostingerRegistrar(DomainRegistrar):
    """Hostinger domains API client"""

    def __init__(self, config: RegistrarConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.base_url = config.base_url.rstrip('/')
        self.headers = {
            'Authorization': f'Bearer {config.api_token}',
            'Content-Type': 'application/json',
            'Accept': 'application/json',
        }
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self.timeout = httpx.Timeout(connect=5.0, read=30.0, write=10.0, pool=5.0)

    @property
    def provider_name(self) -> str:
        return 'hostinger'

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def _post_with_retry(self, path: str, payload: Dict[str, Any]) -> httpx.Response:
        """POST, retrying only when the connection itself failed (request never delivered)"""
        max_retries = 3
        base_delay = 1.0

        for attempt in range(max_retries):
            client = await self._ensure_client()
            try:
                return await client.post(path, json=payload)
            except (httpx.ConnectError, httpx.ConnectTimeout) as e:
                attempt_num = attempt + 1
                if attempt_num >= max_retries:
                    logger.error(f"❌ REGISTRAR: Connection to {path} failed after {max_retries} attempts: {e}")
                    raise ProviderUnavailable(f"Registrar connection failed: {e}") from e
                delay = base_delay * (2 ** attempt)
                logger.warning(f"⚠️ REGISTRAR: Connection failed (attempt {attempt_num}/{max_retries}), retrying in {delay}s...")
                await asyncio.sleep(delay)
            except httpx.TimeoutException as e:
                raise ProviderUnavailable(f"Registrar request timed out: {e}") from e
            except httpx.HTTPError as e:
                raise ProviderUnavailable(f"Registrar transport error: {e}") from e

        raise ProviderUnavailable("Registrar request failed after all retries")

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._post_with_retry(path, payload)

        if response.status_code >= 500 or response.status_code == 429:
            raise ProviderUnavailable(f"Registrar returned HTTP {response.status_code}: {self._error_message(response)}")
        if not 200 <= response.status_code < 300:
            raise ProviderRejected(self._error_message(response))

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderUnavailable(f"Registrar returned a non-JSON body for {path}") from e
        if not isinstance(data, dict):
            raise ProviderUnavailable(f"Registrar returned an unexpected body for {path}")
        return data

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            data = None

        if isinstance(data, dict):
            message = data.get('message') or data.get('error')
            if isinstance(message, dict):
                message = message.get('message')
            if message:
                return str(message)

        return response.text.strip() or f"HTTP {response.status_code}"

    @monitor_performance("registrar.register")
    async def register(self, domain_name: str, registrant: RegistrantDetails) -> ProviderResult[str]:
        logger.info(f"🌐 REGISTRAR: Registering {domain_name} with Hostinger")
        try:
            profile = await self._post('/domains/v1/whois', registrant.to_whois_profile())
            profile_id = profile.get('id')
            if profile_id is None:
                raise ProviderUnavailable("WHOIS profile response did not include an id")

            order = await self._post('/domains/v1/portfolio', {
                'domain': domain_name,
                'whois_profile_id': profile_id,
                'period': self.config.registration_period_years,
            })
            order_id = order.get('order_id')
            if order_id is None:
                raise ProviderUnavailable("Domain purchase response did not include an order_id")

        except (ProviderUnavailable, ProviderRejected) as e:
            logger.error(f"❌ REGISTRAR: Registration of {domain_name} failed: {e}")
            return provider_error_from_exception(e)

        logger.info(f"✅ REGISTRAR: {domain_name} registration initiated (order {order_id})")
        return ProviderOk(str(order_id))

    @monitor_performance("registrar.transfer")
    async def transfer(self, domain_name: str, auth_code: str) -> ProviderResult[str]:
        if not auth_code or not auth_code.strip():
            logger.error(f"❌ REGISTRAR: Transfer of {domain_name} requested without an auth code")
            return ProviderError(ProviderErrorKind.REJECTED, f"Transfer of {domain_name} requires an auth code")

        logger.info(f"🔄 REGISTRAR: Transferring {domain_name} to Hostinger")
        try:
            order = await self._post('/domains/v1/transfers', {
                'domain': domain_name,
                'auth_code': auth_code.strip(),
            })
            order_id = order.get('order_id')
            if order_id is None:
                raise ProviderUnavailable("Transfer response did not include an order_id")

        except (ProviderUnavailable, ProviderRejected) as e:
            logger.error(f"❌ REGISTRAR: Transfer of {domain_name} failed: {e}")
            return provider_error_from_exception(e)

        logger.info(f"✅ REGISTRAR: {domain_name} transfer initiated (order {order_id})")
        return ProviderOk(str(order_id))
