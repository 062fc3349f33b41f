from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class ConditionKind(str, Enum):
    GREATER_OR_EQUAL = "gte"
    LESS_OR_EQUAL = "lte"
    EQUAL = "eq"


class AlertState(str, Enum):
    ACTIVE = "active"
    TRIGGERED = "triggered"


# Wording used when rendering a fired rule: (title, verb)
_KIND_WORDING = {
    ConditionKind.GREATER_OR_EQUAL: ("Price up", "reached"),
    ConditionKind.LESS_OR_EQUAL: ("Price down", "dropped to"),
    ConditionKind.EQUAL: ("Exact price", "hit exactly"),
}


@dataclass(frozen=True)
class AlertRule:
    """
    A user-defined price alert.

    Rules are read from the repository as immutable snapshots; state changes
    go through the repository (see AlertEngine) so the transition
    active -> triggered is a single compare-and-set.
    """
    id: int
    owner: str
    symbol: str
    kind: ConditionKind
    threshold: float
    message: Optional[str]
    state: AlertState
    created_at: datetime
    triggered_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.state is AlertState.ACTIVE

    def describe(self) -> str:
        title, verb = _KIND_WORDING[self.kind]
        base = f"{title} alert for {self.symbol}: {verb} ${self.threshold:.2f}"
        if self.message and self.message.strip():
            return f"{base} - {self.message.strip()}"
        return base
