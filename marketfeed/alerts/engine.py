from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import List, Mapping, Optional

from marketfeed.alerts.repository import AlertRepository
from marketfeed.errors import AlertNotFound, AlertOwnershipError
from marketfeed.market.clock import Clock, SystemClock
from marketfeed.models.alert import AlertRule, AlertState, ConditionKind

log = logging.getLogger("alert_engine")

# Prices and thresholds are compared at provider precision for EQUAL.
PRICE_DECIMALS = 4


def holds(kind: ConditionKind, threshold: float, price: float) -> bool:
    """True when `price` satisfies the rule condition against `threshold`."""
    if kind is ConditionKind.GREATER_OR_EQUAL:
        return price >= threshold
    if kind is ConditionKind.LESS_OR_EQUAL:
        return price <= threshold
    if kind is ConditionKind.EQUAL:
        return round(price, PRICE_DECIMALS) == round(threshold, PRICE_DECIMALS)
    raise ValueError(f"unknown condition kind: {kind}")


@dataclass(frozen=True)
class AlertStats:
    total: int
    active: int
    triggered: int


def _validate(symbol: str, kind: ConditionKind, threshold: float) -> None:
    if not symbol or not symbol.strip():
        raise ValueError("symbol must not be empty")
    if threshold is None or threshold <= 0:
        raise ValueError("threshold must be positive")
    if not isinstance(kind, ConditionKind):
        raise ValueError("kind must be a ConditionKind")


class AlertEngine:
    """
    Evaluates active rules against fresh prices and owns rule lifecycle.

    evaluate():
      - loads ACTIVE rules for the symbols in the price map
      - fires each rule whose condition holds via a compare-and-set
        ACTIVE -> TRIGGERED; a lost CAS means an overlapping evaluation
        already fired it, so it is not reported twice
    Only the owner (reactivate / update) moves a rule back to ACTIVE.
    """

    def __init__(self, repository: AlertRepository, clock: Optional[Clock] = None) -> None:
        self.repository = repository
        self._clock = clock or SystemClock()

    def evaluate(self, price_map: Mapping[str, float]) -> List[AlertRule]:
        prices = {s.upper(): p for s, p in price_map.items() if p is not None}
        if not prices:
            log.warning("No prices to evaluate alerts against")
            return []

        candidates = self.repository.list_active(prices.keys())
        fired: List[AlertRule] = []

        for rule in candidates:
            price = prices.get(rule.symbol)
            if price is None or not holds(rule.kind, rule.threshold, price):
                continue

            now = self._clock.now()
            won = self.repository.compare_and_set_state(
                rule.id, AlertState.ACTIVE, AlertState.TRIGGERED, triggered_at=now
            )
            if not won:
                log.info("Alert already fired elsewhere id=%d symbol=%s", rule.id, rule.symbol)
                continue

            fired.append(replace(rule, state=AlertState.TRIGGERED, triggered_at=now))

        log.info(
            "Alert evaluation done prices=%d candidates=%d fired=%d",
            len(prices),
            len(candidates),
            len(fired),
        )
        return fired

    # ── owner actions ─────────────────────────────────────────

    def _owned(self, rule_id: int, owner: str) -> AlertRule:
        rule = self.repository.get(rule_id)
        if rule is None:
            raise AlertNotFound(rule_id)
        if rule.owner != owner:
            raise AlertOwnershipError(rule_id, owner)
        return rule

    def create_rule(
        self,
        owner: str,
        symbol: str,
        kind: ConditionKind,
        threshold: float,
        message: Optional[str] = None,
    ) -> AlertRule:
        _validate(symbol, kind, threshold)
        rule = self.repository.insert(
            owner=owner,
            symbol=symbol.strip().upper(),
            kind=kind,
            threshold=float(threshold),
            message=message,
            created_at=self._clock.now(),
        )
        log.info(
            "Alert created id=%d owner=%s symbol=%s kind=%s threshold=%s",
            rule.id, owner, rule.symbol, kind.value, rule.threshold,
        )
        return rule

    def get_rule(self, rule_id: int, owner: str) -> AlertRule:
        return self._owned(rule_id, owner)

    def list_rules(self, owner: str) -> List[AlertRule]:
        return self.repository.list_by_owner(owner)

    def update_rule(
        self,
        rule_id: int,
        owner: str,
        kind: ConditionKind,
        threshold: float,
        message: Optional[str] = None,
    ) -> AlertRule:
        """Edit a rule. Editing a triggered rule puts it back to ACTIVE."""
        rule = self._owned(rule_id, owner)
        _validate(rule.symbol, kind, threshold)
        reset = rule.state is AlertState.TRIGGERED
        self.repository.update(rule_id, kind, float(threshold), message, reset_state=reset)
        if reset:
            log.info("Alert id=%d was triggered, reactivated by edit", rule_id)
        return self._owned(rule_id, owner)

    def reactivate(self, rule_id: int, owner: str) -> AlertRule:
        rule = self._owned(rule_id, owner)
        if rule.state is not AlertState.TRIGGERED:
            raise ValueError(f"alert rule {rule_id} is not triggered")
        self.repository.compare_and_set_state(
            rule_id, AlertState.TRIGGERED, AlertState.ACTIVE, triggered_at=None
        )
        log.info("Alert reactivated id=%d owner=%s", rule_id, owner)
        return self._owned(rule_id, owner)

    def delete_rule(self, rule_id: int, owner: str) -> None:
        self._owned(rule_id, owner)
        self.repository.delete(rule_id)
        log.info("Alert deleted id=%d owner=%s", rule_id, owner)

    def stats(self, owner: str) -> AlertStats:
        counts = self.repository.count_by_state(owner)
        active = counts[AlertState.ACTIVE]
        triggered = counts[AlertState.TRIGGERED]
        return AlertStats(total=active + triggered, active=active, triggered=triggered)

    def clear_triggered(self, owner: str) -> int:
        """Deletes every triggered rule of one owner; active rules are kept."""
        removed = self.repository.delete_triggered_by_owner(owner)
        log.info("Cleared triggered alerts owner=%s count=%d", owner, removed)
        return removed

    def purge_triggered(self, older_than_days: int) -> int:
        if older_than_days < 1:
            raise ValueError("older_than_days must be >= 1")
        cutoff = self._clock.now() - timedelta(days=older_than_days)
        removed = self.repository.delete_triggered_before(cutoff)
        log.info("Purged triggered alerts count=%d cutoff=%s", removed, cutoff.isoformat())
        return removed
