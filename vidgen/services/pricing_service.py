"""
Pricing Service - credit cost of a generation request.

Cost is charged per started 10 seconds of output:

    cost = ceil(duration / 10 * credits_per_10s[model])

Unknown models are priced like the default model.
"""

import math
from typing import Dict, Optional

from vidgen.config import DEFAULT_CREDITS_PER_10S


class PricingService:
    def __init__(self, credits_per_10s: Optional[Dict[str, int]] = None, default_model: str = "sora-2"):
        self._rates = dict(credits_per_10s or DEFAULT_CREDITS_PER_10S)
        if default_model not in self._rates:
            raise ValueError(f"No price configured for default model {default_model}")
        self.default_model = default_model

    def credits_per_10s(self, model: Optional[str] = None) -> int:
        return self._rates.get(model or self.default_model, self._rates[self.default_model])

    def calculate_cost(self, duration_seconds: float, model: Optional[str] = None) -> int:
        """
        Raises:
            ValueError: If duration_seconds is not positive
        """
        if duration_seconds is None or duration_seconds <= 0:
            raise ValueError(f"duration_seconds must be positive, got {duration_seconds!r}")
        return int(math.ceil(duration_seconds * self.credits_per_10s(model) / 10))

    def price_list(self) -> Dict[str, int]:
        return dict(self._rates)
