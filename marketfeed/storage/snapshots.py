from __future__ import annotations

import sqlite3
from datetime import datetime
from typing import Iterable, List, Mapping, Optional, Sequence

from marketfeed.models.market import Quote, Tier
from marketfeed.storage.database import Database, from_db_ts, to_db_ts

_COLUMNS = "symbol, tier, price, open, high, low, close, volume, previous_close, timestamp"


def _row_to_quote(row: sqlite3.Row) -> Quote:
    return Quote(
        symbol=row["symbol"],
        price=row["price"],
        open=row["open"],
        high=row["high"],
        low=row["low"],
        close=row["close"],
        volume=row["volume"],
        previous_close=row["previous_close"],
        timestamp=from_db_ts(row["timestamp"]),
        tier=Tier(row["tier"]),
    )


def _quote_params(q: Quote) -> tuple:
    return (
        q.symbol,
        q.tier.value,
        q.price,
        q.open,
        q.high,
        q.low,
        q.close,
        q.volume,
        q.previous_close,
        to_db_ts(q.timestamp),
    )


class SnapshotStore:
    """
    Durable latest-quote table plus the long-horizon history table.

    market_snapshots:  one row per symbol, the latest committed quote
    historical_points: (symbol, timestamp) rows kept beyond the 24h window
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    # ── latest quotes ─────────────────────────────────────────

    def replace_tier(self, tier: Tier, quotes: Iterable[Quote]) -> int:
        """
        Upsert the given quotes for one tier in a single transaction.

        Symbols of the tier that are not in `quotes` keep their previous row.
        Returns the number of rows written.
        """
        return self.replace_tiers({tier: list(quotes)})

    def replace_tiers(
        self,
        groups: Mapping[Tier, Sequence[Quote]],
        history: Sequence[Quote] = (),
    ) -> int:
        """
        replace_tier() for several tiers at once, plus optional history rows,
        all inside one transaction.
        """
        rows = []
        for tier, quotes in groups.items():
            foreign = [q.symbol for q in quotes if q.tier is not tier]
            if foreign:
                raise ValueError(f"quotes not in tier {tier.value}: {foreign}")
            rows.extend(_quote_params(q) for q in quotes)

        with self.db.connect() as conn:
            conn.executemany(
                f"INSERT OR REPLACE INTO market_snapshots({_COLUMNS}) VALUES(?,?,?,?,?,?,?,?,?,?)",
                rows,
            )
            if history:
                conn.executemany(
                    f"INSERT OR REPLACE INTO historical_points({_COLUMNS}) VALUES(?,?,?,?,?,?,?,?,?,?)",
                    [_quote_params(q) for q in history],
                )
        return len(rows)

    def latest(self, symbol: str) -> Optional[Quote]:
        with self.db.connect() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM market_snapshots WHERE symbol=?",
                (symbol.upper(),),
            ).fetchone()
        return _row_to_quote(row) if row else None

    def latest_for_tier(self, tier: Tier) -> List[Quote]:
        with self.db.connect() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM market_snapshots WHERE tier=? ORDER BY symbol",
                (tier.value,),
            ).fetchall()
        return [_row_to_quote(r) for r in rows]

    # ── long-horizon history ──────────────────────────────────

    def append_history(self, quotes: Iterable[Quote]) -> int:
        quotes = list(quotes)
        with self.db.connect() as conn:
            conn.executemany(
                f"INSERT OR REPLACE INTO historical_points({_COLUMNS}) VALUES(?,?,?,?,?,?,?,?,?,?)",
                [_quote_params(q) for q in quotes],
            )
        return len(quotes)

    def replace_history(self, symbol: str, quotes: Iterable[Quote]) -> int:
        """Swap a symbol's whole history for `quotes` in one transaction."""
        quotes = list(quotes)
        with self.db.connect() as conn:
            conn.execute("DELETE FROM historical_points WHERE symbol=?", (symbol.upper(),))
            conn.executemany(
                f"INSERT OR REPLACE INTO historical_points({_COLUMNS}) VALUES(?,?,?,?,?,?,?,?,?,?)",
                [_quote_params(q) for q in quotes],
            )
        return len(quotes)

    def reset_history(self) -> int:
        with self.db.connect() as conn:
            cur = conn.execute("DELETE FROM historical_points")
            return cur.rowcount

    def history(self, symbol: str, start: datetime, end: datetime) -> List[Quote]:
        """History rows with start <= timestamp <= end, oldest first."""
        with self.db.connect() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM historical_points "
                "WHERE symbol=? AND timestamp>=? AND timestamp<=? ORDER BY timestamp",
                (symbol.upper(), to_db_ts(start), to_db_ts(end)),
            ).fetchall()
        return [_row_to_quote(r) for r in rows]
