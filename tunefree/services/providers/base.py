from abc import ABC, abstractmethod
from typing import List, Optional

from tunefree.schemas.models import Song, TopList
from tunefree.services.proxy import ProxyChain

SEARCH_PAGE_SIZE = 30
TOPLIST_DETAIL_SIZE = 100


class FallbackProvider(ABC):
    """
    Hand-written resolver against a provider's public web endpoints.

    Used only when the descriptor path produced nothing. Maps responses
    straight into Song / TopList; every request goes through the shared
    proxy chain. Failures are logged and returned as empty results.
    """

    def __init__(self, chain: ProxyChain):
        self.chain = chain

    @property
    @abstractmethod
    def platform(self) -> str:
        pass

    @abstractmethod
    async def search(self, keyword: str, page: int = 1) -> List[Song]:
        pass

    @abstractmethod
    async def toplists(self) -> List[TopList]:
        pass

    @abstractmethod
    async def toplist_detail(self, toplist_id: str) -> List[Song]:
        pass

    @abstractmethod
    async def lyric(self, song_id: str) -> Optional[str]:
        """Raw LRC text (translation appended when available), or None."""
        pass

    async def backfill_cover(self, songs: List[Song]) -> List[Song]:
        """Fill ``pic`` for songs lacking one. Only Kuwo needs this."""
        return songs
