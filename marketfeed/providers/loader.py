from typing import Optional

from marketfeed.config import Settings
from marketfeed.market.clock import Clock
from marketfeed.market.symbols import SymbolRegistry
from marketfeed.providers.base import QuoteProvider
from marketfeed.providers.simulated import SimulatedProvider
from marketfeed.providers.twelvedata import TwelveDataProvider


def get_provider(settings: Settings, registry: SymbolRegistry, clock: Optional[Clock] = None) -> QuoteProvider:
    """
    Provider loader / factory.

    Reads PROVIDER from settings and returns an instance of the selected provider.
    This is the single place that knows about concrete providers.
    """
    provider_name = settings.provider.strip().upper()

    if provider_name == "TWELVEDATA":
        return TwelveDataProvider(
            api_key=settings.twelvedata_api_key,
            registry=registry,
            base_url=settings.twelvedata_base_url,
            timeout_s=settings.fetch_timeout_seconds,
            clock=clock,
        )
    if provider_name == "SIMULATED":
        return SimulatedProvider(registry, clock=clock)

    raise ValueError(f"Unknown PROVIDER='{settings.provider}'. Expected: TWELVEDATA or SIMULATED")
