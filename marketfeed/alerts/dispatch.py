from __future__ import annotations

import logging
from typing import List, Protocol, Tuple

from marketfeed.models.alert import AlertRule

log = logging.getLogger("alert_dispatch")


class AlertDispatcher(Protocol):
    """Hands a fired rule to the notification side. Delivery is not our concern."""

    def dispatch(self, rule: AlertRule, price: float) -> None: ...


class LoggingDispatcher:
    def dispatch(self, rule: AlertRule, price: float) -> None:
        log.warning(
            "ALERT id=%d owner=%s symbol=%s price=%s text=%s",
            rule.id,
            rule.owner,
            rule.symbol,
            price,
            rule.describe(),
        )


class RecordingDispatcher:
    """Keeps every dispatched event in memory (tests, dry runs)."""

    def __init__(self) -> None:
        self.events: List[Tuple[AlertRule, float]] = []

    def dispatch(self, rule: AlertRule, price: float) -> None:
        self.events.append((rule, price))
