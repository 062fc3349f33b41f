from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List

from marketfeed.models.market import Quote


class QuoteProvider(ABC):
    """
    Provider contract (interface).

    Any provider must implement:
    - fetch(): one latest quote for a symbol, raising FetchError on failure
    - fetch_history(): daily bars for the long-horizon history reload
    """

    @abstractmethod
    async def fetch(self, symbol: str) -> Quote:
        raise NotImplementedError

    @abstractmethod
    async def fetch_history(self, symbol: str, days: int) -> List[Quote]:
        raise NotImplementedError

    async def close(self) -> None:
        return None
