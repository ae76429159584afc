"""Regional tax-rate lookup used by the inclusive-tax estimator."""

from __future__ import annotations

from decimal import Decimal
from typing import Mapping, Optional, Protocol

from . import stripe_shared as shared


class TaxRateProvider(Protocol):
    def rate_for(self, region: Optional[str]) -> Optional[Decimal]:
        """Return the inclusive rate for a region code, or None if unknown."""
        ...


class StaticRegionalTaxRates:
    """Fixed region -> rate table (US state codes by default)."""

    def __init__(self, rates: Optional[Mapping[str, float]] = None):
        table = rates if rates is not None else shared.settings.REGIONAL_TAX_RATES
        self._rates = {
            str(region).strip().upper(): Decimal(str(rate)) for region, rate in table.items()
        }

    def rate_for(self, region: Optional[str]) -> Optional[Decimal]:
        if not region:
            return None
        return self._rates.get(region.strip().upper())
