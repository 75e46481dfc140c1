# tunefree/core/http_client.py
"""
Process-wide httpx.AsyncClient.
The TuneHub client, the proxy chain and every fallback provider reuse it
unless a caller (usually a test) injects its own client.
"""

import logging

import httpx

from tunefree.core.config import DEFAULT_USER_AGENT, HTTP_TIMEOUT

logger = logging.getLogger(__name__)

# Relays and provider hosts; a handful of hosts with a few parallel fetches each
KEEPALIVE_CONNECTIONS = 20
MAX_CONNECTIONS = 40


def build_client(timeout: float = HTTP_TIMEOUT) -> httpx.AsyncClient:
    """
    HTTP/2 client that ignores system proxy settings.
    CORS relays are chosen explicitly by the proxy chain.
    """
    return httpx.AsyncClient(
        http2=True,  # requires httpx[http2]
        trust_env=False,
        follow_redirects=True,
        timeout=timeout,
        limits=httpx.Limits(
            max_keepalive_connections=KEEPALIVE_CONNECTIONS,
            max_connections=MAX_CONNECTIONS,
        ),
        headers={
            'User-Agent': DEFAULT_USER_AGENT,
            'Accept': 'application/json, text/plain, */*',
        },
    )


class HttpClientManager:
    """Lazily created shared client, recreated if something closed it."""
    _client: httpx.AsyncClient | None = None

    @classmethod
    def get_client(cls) -> httpx.AsyncClient:
        if cls._client is None or cls._client.is_closed:
            logger.debug("Creating shared HTTP client")
            cls._client = build_client()
        return cls._client

    @classmethod
    async def close(cls) -> None:
        """Call on app shutdown."""
        if cls._client is not None and not cls._client.is_closed:
            await cls._client.aclose()
        cls._client = None
