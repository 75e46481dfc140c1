import logging
import time
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from tunefree.core.config import DEFAULT_PROXIES, PROXY_TIMEOUT
from tunefree.core.http_client import HttpClientManager
from tunefree.core.payload import decode_response, is_garbage
from tunefree.services.storage_service import SettingsStore

logger = logging.getLogger(__name__)

BODY_METHODS = ('POST', 'PUT', 'PATCH', 'DELETE')


class ProxyChain:
    """
    Ordered list of CORS relays of the form ``<prefix><url-encoded target>``.

    Proxies are tried strictly one after another; the first response that
    decodes and is not a garbage sentinel wins. Exhausting the list is a
    soft failure (None), never an exception.
    """

    def __init__(self, proxies: Optional[List[str]] = None, client: Optional[httpx.AsyncClient] = None,
                 timeout: float = PROXY_TIMEOUT, settings: Optional[SettingsStore] = None):
        self._proxies = list(proxies) if proxies else None
        self.settings = settings
        self.timeout = timeout
        self._client = client

    @property
    def proxies(self) -> List[str]:
        """Explicit list, else the settings' list (read per call), else defaults."""
        if self._proxies:
            return self._proxies
        if self.settings is not None:
            return self.settings.proxies
        return list(DEFAULT_PROXIES)

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client or HttpClientManager.get_client()

    @staticmethod
    def build_url(proxy: str, target: str) -> str:
        url = f"{proxy}{quote(target, safe='')}"
        # allorigins caches by URL
        if 'allorigins' in proxy:
            url += f"&_t={int(time.time() * 1000)}"
        return url

    async def fetch_json(
        self,
        target: str,
        method: str = 'GET',
        headers: Optional[Dict[str, str]] = None,
        json_body: Any = None,
        form: Optional[Dict[str, Any]] = None,
    ) -> Optional[Any]:
        method = (method or 'GET').upper()
        for proxy in self.proxies:
            data = await self._attempt(proxy, target, method, headers or {}, json_body, form)
            if data is not None:
                return data
        logger.error(f"All proxies failed for {method} {target}")
        return None

    async def _attempt(self, proxy: str, target: str, method: str, headers: Dict[str, str],
                       json_body: Any, form: Optional[Dict[str, Any]]) -> Optional[Any]:
        url = self.build_url(proxy, target)
        kwargs: Dict[str, Any] = {'headers': dict(headers), 'timeout': self.timeout}
        if method in BODY_METHODS:
            if form is not None:
                kwargs['data'] = form
            elif json_body is not None:
                kwargs['json'] = json_body

        logger.info(f"Trying proxy: {proxy} -> {target}")
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.warning(f"Fetch failed via proxy {proxy}: {type(e).__name__}: {e}")
            return None

        if response.is_error:
            logger.warning(f"Proxy {proxy} answered HTTP {response.status_code}. Skipping.")
            return None

        # Read as text: JSONP and relay envelopes are not valid JSON
        data = decode_response(response.text)
        if data is None:
            logger.warning(f"Proxy {proxy} returned unparsable data.")
            return None
        if is_garbage(data):
            logger.warning(f"Proxy {proxy} returned garbage data. Skipping.")
            return None
        return data

    async def fetch_text(self, target: str, headers: Optional[Dict[str, str]] = None) -> Optional[str]:
        """GET returning the first non-empty plain-text body (no JSON decoding)."""
        for proxy in self.proxies:
            url = self.build_url(proxy, target)
            try:
                response = await self.client.get(url, headers=dict(headers or {}), timeout=self.timeout)
            except httpx.HTTPError as e:
                logger.warning(f"Fetch failed via proxy {proxy}: {type(e).__name__}: {e}")
                continue
            if response.is_error:
                logger.warning(f"Proxy {proxy} answered HTTP {response.status_code}. Skipping.")
                continue
            text = response.text.strip()
            if text:
                return text
        logger.error(f"All proxies failed for GET {target}")
        return None
