import logging
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from tunefree.core.http_client import HttpClientManager
from tunefree.schemas.models import MethodDescriptor, TuneHubResponse
from tunefree.services.storage_service import SettingsStore

logger = logging.getLogger(__name__)


class TuneHubClient:
    """
    Client for the TuneHub configuration service.

    - ``GET  /v1/methods/{platform}/{function}`` serves method descriptors
    - ``POST /v1/parse`` resolves ids to url / lyrics / cover in one call

    Every failure (network, HTML error page, 401, non-2xx, bad JSON) is
    logged and returned as None.
    """

    def __init__(self, settings: Optional[SettingsStore] = None, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings or SettingsStore()
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client or HttpClientManager.get_client()

    def _headers(self) -> dict:
        headers = {'Content-Type': 'application/json'}
        api_key = self.settings.api_key
        if api_key:
            headers['X-API-Key'] = api_key
        return headers

    async def request(self, endpoint: str, method: str = 'GET', payload: Any = None) -> Optional[TuneHubResponse]:
        api_base = self.settings.api_base
        url = f"{api_base}{endpoint}"
        try:
            response = await self.client.request(method, url, json=payload, headers=self._headers())
        except httpx.HTTPError as e:
            logger.error(f"TuneHub API Error [{endpoint}]: {type(e).__name__}: {e}")
            return None

        content_type = response.headers.get('content-type', '')
        if 'text/html' in content_type:
            logger.error(f"TuneHub API Error [{endpoint}]: Received HTML instead of JSON. Check API base ({api_base}).")
            return None
        if response.status_code == 401:
            logger.warning("TuneHub: Unauthorized.")
            return None
        if response.is_error:
            logger.error(f"TuneHub API Error [{endpoint}]: HTTP {response.status_code}")
            return None

        try:
            return TuneHubResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.error(f"TuneHub API Error [{endpoint}]: malformed body: {e}")
            return None

    async def get_method(self, platform: str, function: str) -> Optional[MethodDescriptor]:
        """Fetch the descriptor for (platform, function). Never cached."""
        res = await self.request(f"/v1/methods/{platform}/{function}")
        if not res or res.code != 0 or not res.data:
            if res is not None:
                logger.warning(f"No method descriptor for {platform}/{function}: code={res.code} msg={res.msg}")
            return None
        try:
            return MethodDescriptor.model_validate(res.data)
        except ValidationError as e:
            logger.error(f"Invalid method descriptor for {platform}/{function}: {e}")
            return None

    async def parse(self, platform: str, ids: str, quality: str) -> Optional[Any]:
        """Raw provider-shaped parse result, or None."""
        res = await self.request('/v1/parse', method='POST', payload={
            'platform': platform,
            'ids': ids,
            'quality': quality,
        })
        if not res or not res.data:
            return None
        if res.code != 0:
            logger.warning(f"TuneHub parse returned code {res.code} for {platform}:{ids}")
        return res.data
