"""SOL/USD price oracle with a primary and a fallback HTTP source."""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx
from prometheus_client import Counter

logger = logging.getLogger(__name__)

SOL_MINT = "So11111111111111111111111111111111111111112"
DEFAULT_TIMEOUT = 10.0

PRICE_FETCHES = Counter(
    "presale_price_fetch_total",
    "Price fetch attempts by source and outcome",
    ["source", "outcome"],
)


class PriceUnavailableError(Exception):
    """Raised when no price source returned a usable price."""

    def __init__(self, reasons: dict[str, str]) -> None:
        detail = "; ".join(f"{name}: {reason}" for name, reason in reasons.items())
        super().__init__(f"SOL price unavailable ({detail})")
        self.reasons = reasons


def extract_jupiter_price(body: Any) -> Any:
    """Read ``data[<SOL mint>].price`` from a Jupiter price response."""
    return body["data"][SOL_MINT]["price"]


def extract_coingecko_price(body: Any) -> Any:
    """Read ``solana.usd`` from a CoinGecko simple-price response."""
    return body["solana"]["usd"]


@dataclass(frozen=True)
class PriceSource:
    """One HTTP price endpoint and how to read the price out of it."""

    name: str
    url: str
    extract: Callable[[Any], Any]


class PriceOracle:
    """Fetch the SOL/USD price, trying sources in priority order.

    Any failure of a source (network error, non-2xx status, malformed body or
    a non-positive price) moves on to the next source. There are no retries
    within one call; if every source fails PriceUnavailableError is raised
    instead of returning a placeholder value.
    """

    def __init__(
        self,
        primary_url: str,
        fallback_url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the oracle.

        Args:
            primary_url: Jupiter price API URL.
            fallback_url: CoinGecko simple-price URL.
            timeout: HTTP request timeout in seconds.
            http_client: Optional pre-built httpx client (not closed by us).
        """
        self._sources = (
            PriceSource("jupiter", primary_url, extract_jupiter_price),
            PriceSource("coingecko", fallback_url, extract_coingecko_price),
        )
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    def sources(self) -> tuple[PriceSource, ...]:
        """Configured sources in priority order."""
        return self._sources

    async def _fetch(self, source: PriceSource) -> Decimal:
        response = await self._http.get(source.url)
        response.raise_for_status()
        raw = source.extract(response.json())
        price = Decimal(str(raw))
        if not price.is_finite() or price <= 0:
            raise ValueError(f"non-positive price {raw!r}")
        return price

    async def get_price(self) -> Decimal:
        """Get the current SOL price in USD.

        Returns:
            Price as a positive Decimal.

        Raises:
            PriceUnavailableError: If every source failed.
        """
        reasons: dict[str, str] = {}
        for source in self._sources:
            try:
                price = await self._fetch(source)
            except (httpx.HTTPError, ValueError, KeyError, TypeError, InvalidOperation) as e:
                PRICE_FETCHES.labels(source=source.name, outcome="failure").inc()
                reasons[source.name] = str(e) or type(e).__name__
                logger.warning("Price source %s failed: %s", source.name, reasons[source.name])
                continue

            PRICE_FETCHES.labels(source=source.name, outcome="success").inc()
            logger.debug("SOL price from %s: %s", source.name, price)
            return price

        raise PriceUnavailableError(reasons)

    async def close(self) -> None:
        """Close the HTTP client if we created it."""
        if self._owns_http:
            await self._http.aclose()
