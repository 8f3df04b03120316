"""Token price table for deriving cost when a backend reports none.

Prices are US dollars per million tokens. Models are matched by name
prefix; anything unknown is priced at the default rate.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class TokenPrice:
    """Per-million-token prices for one model family."""

    input: float
    output: float
    cache_write: float = 0.0
    cache_read: float = 0.0

    def cost(
        self,
        input_tokens: float = 0,
        output_tokens: float = 0,
        cache_write_tokens: float = 0,
        cache_read_tokens: float = 0,
    ) -> float:
        """Compute the dollar cost of a token mix."""
        return (
            input_tokens * self.input
            + output_tokens * self.output
            + cache_write_tokens * self.cache_write
            + cache_read_tokens * self.cache_read
        ) / 1_000_000


DEFAULT_PRICE = TokenPrice(input=3.0, output=15.0, cache_write=3.75, cache_read=0.30)

# Longest matching prefix wins.
MODEL_PRICES: dict[str, TokenPrice] = {
    "claude-opus-4": TokenPrice(input=15.0, output=75.0, cache_write=18.75, cache_read=1.50),
    "claude-3-opus": TokenPrice(input=15.0, output=75.0, cache_write=18.75, cache_read=1.50),
    "claude-sonnet-4": DEFAULT_PRICE,
    "claude-3-7-sonnet": DEFAULT_PRICE,
    "claude-3-5-sonnet": DEFAULT_PRICE,
    "claude-3-5-haiku": TokenPrice(input=0.80, output=4.0, cache_write=1.0, cache_read=0.08),
    "claude-haiku-4": TokenPrice(input=1.0, output=5.0, cache_write=1.25, cache_read=0.10),
}

# Token type label value -> TokenPrice.cost() keyword.
TOKEN_TYPE_KEYWORDS: dict[str, str] = {
    "input": "input_tokens",
    "output": "output_tokens",
    "cacheCreation": "cache_write_tokens",
    "cacheRead": "cache_read_tokens",
}


class PriceTable:
    """Looks up prices by model name."""

    def __init__(
        self,
        default: TokenPrice = DEFAULT_PRICE,
        models: dict[str, TokenPrice] | None = None,
    ):
        self.default = default
        self.models = dict(MODEL_PRICES if models is None else models)

    def price_for(self, model: str | None) -> TokenPrice:
        """Get the price for a model, falling back to the default."""
        if not model:
            return self.default
        matches = [prefix for prefix in self.models if model.startswith(prefix)]
        if not matches:
            return self.default
        return self.models[max(matches, key=len)]

    def cost_of(self, model: str | None, token_type: str, tokens: float) -> float:
        """Compute the cost of tokens of one type for one model.

        Unknown token types cost nothing.
        """
        keyword = TOKEN_TYPE_KEYWORDS.get(token_type)
        if keyword is None or tokens <= 0:
            return 0.0
        return self.price_for(model).cost(**{keyword: tokens})
