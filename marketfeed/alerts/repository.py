from __future__ import annotations

import sqlite3
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from marketfeed.models.alert import AlertRule, AlertState, ConditionKind
from marketfeed.storage.database import Database, from_db_ts, to_db_ts

_COLUMNS = "id, owner, symbol, kind, threshold, message, state, created_at, triggered_at"


def _row_to_rule(row: sqlite3.Row) -> AlertRule:
    return AlertRule(
        id=row["id"],
        owner=row["owner"],
        symbol=row["symbol"],
        kind=ConditionKind(row["kind"]),
        threshold=row["threshold"],
        message=row["message"],
        state=AlertState(row["state"]),
        created_at=from_db_ts(row["created_at"]),
        triggered_at=from_db_ts(row["triggered_at"]) if row["triggered_at"] else None,
    )


class AlertRepository:
    """SQLite persistence for alert rules."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def insert(
        self,
        owner: str,
        symbol: str,
        kind: ConditionKind,
        threshold: float,
        message: Optional[str],
        created_at: datetime,
    ) -> AlertRule:
        with self.db.connect() as conn:
            cur = conn.execute(
                "INSERT INTO alert_rules(owner, symbol, kind, threshold, message, state, created_at) "
                "VALUES(?,?,?,?,?,?,?)",
                (owner, symbol, kind.value, threshold, message, AlertState.ACTIVE.value, to_db_ts(created_at)),
            )
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM alert_rules WHERE id=?", (cur.lastrowid,)
            ).fetchone()
        return _row_to_rule(row)

    def get(self, rule_id: int) -> Optional[AlertRule]:
        with self.db.connect() as conn:
            row = conn.execute(f"SELECT {_COLUMNS} FROM alert_rules WHERE id=?", (rule_id,)).fetchone()
        return _row_to_rule(row) if row else None

    def list_by_owner(self, owner: str) -> List[AlertRule]:
        with self.db.connect() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM alert_rules WHERE owner=? ORDER BY created_at, id",
                (owner,),
            ).fetchall()
        return [_row_to_rule(r) for r in rows]

    def list_active(self, symbols: Iterable[str]) -> List[AlertRule]:
        """Active rules watching any of `symbols`, in id order."""
        symbols = sorted({s.upper() for s in symbols})
        if not symbols:
            return []
        marks = ",".join("?" for _ in symbols)
        with self.db.connect() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM alert_rules WHERE state=? AND symbol IN ({marks}) ORDER BY id",
                (AlertState.ACTIVE.value, *symbols),
            ).fetchall()
        return [_row_to_rule(r) for r in rows]

    def compare_and_set_state(
        self,
        rule_id: int,
        expected: AlertState,
        new: AlertState,
        triggered_at: Optional[datetime],
    ) -> bool:
        """
        Move a rule from `expected` to `new` only if it is still in `expected`.
        Returns False when someone else changed it first.
        """
        with self.db.connect() as conn:
            cur = conn.execute(
                "UPDATE alert_rules SET state=?, triggered_at=? WHERE id=? AND state=?",
                (
                    new.value,
                    to_db_ts(triggered_at) if triggered_at else None,
                    rule_id,
                    expected.value,
                ),
            )
            return cur.rowcount == 1

    def update(
        self,
        rule_id: int,
        kind: ConditionKind,
        threshold: float,
        message: Optional[str],
        reset_state: bool,
    ) -> None:
        with self.db.connect() as conn:
            if reset_state:
                conn.execute(
                    "UPDATE alert_rules SET kind=?, threshold=?, message=?, state=?, triggered_at=NULL WHERE id=?",
                    (kind.value, threshold, message, AlertState.ACTIVE.value, rule_id),
                )
            else:
                conn.execute(
                    "UPDATE alert_rules SET kind=?, threshold=?, message=? WHERE id=?",
                    (kind.value, threshold, message, rule_id),
                )

    def delete(self, rule_id: int) -> None:
        with self.db.connect() as conn:
            conn.execute("DELETE FROM alert_rules WHERE id=?", (rule_id,))

    def delete_triggered_before(self, cutoff: datetime) -> int:
        with self.db.connect() as conn:
            cur = conn.execute(
                "DELETE FROM alert_rules WHERE state=? AND triggered_at IS NOT NULL AND triggered_at<?",
                (AlertState.TRIGGERED.value, to_db_ts(cutoff)),
            )
            return cur.rowcount

    def delete_triggered_by_owner(self, owner: str) -> int:
        with self.db.connect() as conn:
            cur = conn.execute(
                "DELETE FROM alert_rules WHERE owner=? AND state=?",
                (owner, AlertState.TRIGGERED.value),
            )
            return cur.rowcount

    def count_by_state(self, owner: str) -> Dict[AlertState, int]:
        counts = {state: 0 for state in AlertState}
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT state, COUNT(*) AS n FROM alert_rules WHERE owner=? GROUP BY state",
                (owner,),
            ).fetchall()
        for row in rows:
            counts[AlertState(row["state"])] = row["n"]
        return counts
