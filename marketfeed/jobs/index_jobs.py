from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional, Sequence

from marketfeed.errors import FetchError, PersistenceError, RateLimitCancelled
from marketfeed.market.rate_governor import RateGovernor
from marketfeed.providers.base import QuoteProvider
from marketfeed.storage.snapshots import SnapshotStore

log = logging.getLogger("index_jobs")

DEFAULT_LOOKBACK_DAYS = 730


class HistoryReloader:
    """
    Rebuilds the long-horizon history table for the index symbols.

    The table is cleared first, then each symbol's daily bars are fetched
    (one governor slot each) and written in their own transaction. A symbol
    that fails is logged and left empty until the next reload.
    """

    def __init__(
        self,
        symbols: Sequence[str],
        provider: QuoteProvider,
        governor: RateGovernor,
        snapshots: SnapshotStore,
        lookback_days: int = DEFAULT_LOOKBACK_DAYS,
        fetch_timeout: float = 60.0,
        cancel: Optional[asyncio.Event] = None,
    ) -> None:
        if lookback_days <= 0:
            raise ValueError("lookback_days must be positive")
        self.symbols = [s.upper() for s in symbols]
        self.provider = provider
        self.governor = governor
        self.snapshots = snapshots
        self.lookback_days = lookback_days
        self.fetch_timeout = fetch_timeout
        self.cancel = cancel

    async def reload(self) -> Dict[str, int]:
        """Returns symbol -> rows stored for every symbol that loaded."""
        if self.cancel is not None:
            self.cancel.clear()
        removed = self.snapshots.reset_history()
        log.info("History reset rows_removed=%d symbols=%s", removed, self.symbols)

        stored: Dict[str, int] = {}
        for symbol in self.symbols:
            try:
                await self.governor.acquire(cancel=self.cancel)
                points = await asyncio.wait_for(
                    self.provider.fetch_history(symbol, self.lookback_days),
                    timeout=self.fetch_timeout,
                )
                stored[symbol] = self.snapshots.replace_history(symbol, points)
            except RateLimitCancelled:
                self.cancel.clear()
                log.warning("History reload cancelled symbol=%s", symbol)
            except asyncio.TimeoutError:
                log.warning("History fetch timed out symbol=%s", symbol)
            except FetchError as e:
                log.warning("History fetch failed symbol=%s reason=%s", symbol, e.reason)
            except PersistenceError as e:
                log.error("History write failed symbol=%s error=%s", symbol, e)
            else:
                log.info("History loaded symbol=%s points=%d", symbol, stored[symbol])

        log.info("History reload done loaded=%d/%d", len(stored), len(self.symbols))
        return stored
