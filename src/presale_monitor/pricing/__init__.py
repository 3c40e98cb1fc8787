"""Price oracle - SOL/USD pricing from external HTTP sources."""

from presale_monitor.pricing.oracle import (
    PriceOracle,
    PriceSource,
    PriceUnavailableError,
)

__all__ = [
    "PriceOracle",
    "PriceSource",
    "PriceUnavailableError",
]
