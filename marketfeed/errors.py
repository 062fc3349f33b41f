from __future__ import annotations


class MarketFeedError(Exception):
    """Base class for errors raised by the refresh pipeline."""


class FetchError(MarketFeedError):
    """
    One symbol could not be fetched from the quote provider
    (network error, timeout, malformed or incomplete payload).
    """

    def __init__(self, symbol: str, reason: str) -> None:
        super().__init__(f"{symbol}: {reason}")
        self.symbol = symbol
        self.reason = reason


class RateLimitCancelled(MarketFeedError):
    """A RateGovernor wait was cancelled before a slot was granted."""


class CacheUnavailable(MarketFeedError):
    """The quote cache backend could not be reached."""


class PersistenceError(MarketFeedError):
    """A durable write failed; the cycle commit is rolled back."""


class AlertDispatchError(MarketFeedError):
    """A triggered alert could not be handed to the notification collaborator."""


class AlertNotFound(MarketFeedError):
    def __init__(self, rule_id: int) -> None:
        super().__init__(f"alert rule {rule_id} not found")
        self.rule_id = rule_id


class AlertOwnershipError(MarketFeedError):
    def __init__(self, rule_id: int, owner: str) -> None:
        super().__init__(f"owner {owner} has no access to alert rule {rule_id}")
        self.rule_id = rule_id
        self.owner = owner
