"""Model pricing lookup.

Resolves the EUR cost of a model call from the configured per-1K-token
prices. The ledger never prices anything itself; callers resolve cost here
and pass the amount in.
"""

from decimal import ROUND_HALF_UP, Decimal

from caseassist.config import ModelPrice
from caseassist.errors import PricingNotFoundError

_SIX_PLACES = Decimal("0.000001")
_THOUSAND = Decimal(1000)


class PricingTable:
    """Model name -> EUR price per 1K input/output tokens."""

    def __init__(self, prices: dict[str, ModelPrice]) -> None:
        self._prices = dict(prices)

    def __contains__(self, model: str) -> bool:
        return model in self._prices

    def models(self) -> list[str]:
        """Priced model names, sorted."""
        return sorted(self._prices)

    def cost_for(self, model: str, input_tokens: int, output_tokens: int) -> Decimal:
        """Compute the EUR cost of a call, quantized to 6 places.

        Args:
            model: Model identifier.
            input_tokens: Prompt tokens.
            output_tokens: Completion tokens.

        Returns:
            Cost in EUR (ROUND_HALF_UP to 6 fractional digits).

        Raises:
            PricingNotFoundError: If the model has no price.
        """
        price = self._prices.get(model)
        if price is None:
            raise PricingNotFoundError(model)
        cost = (
            Decimal(input_tokens) * price.input_per_1k_eur
            + Decimal(output_tokens) * price.output_per_1k_eur
        ) / _THOUSAND
        return cost.quantize(_SIX_PLACES, rounding=ROUND_HALF_UP)
