"""Tests for the SOL/USD price oracle."""

from decimal import Decimal
from typing import Any

import httpx
import pytest

from presale_monitor.pricing.oracle import (
    SOL_MINT,
    PriceOracle,
    PriceUnavailableError,
    extract_coingecko_price,
    extract_jupiter_price,
)

JUPITER_URL = "https://jupiter.example.com/price"
COINGECKO_URL = "https://coingecko.example.com/price"


def _jupiter(price: Any) -> dict[str, Any]:
    return {"data": {SOL_MINT: {"id": SOL_MINT, "type": "derivedPrice", "price": price}}}


def _coingecko(price: Any) -> dict[str, Any]:
    return {"solana": {"usd": price}}


def _oracle(
    jupiter: httpx.Response | Exception,
    coingecko: httpx.Response | Exception,
) -> tuple[PriceOracle, list[str]]:
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        requested.append(url)
        reply = jupiter if url == JUPITER_URL else coingecko
        if isinstance(reply, Exception):
            raise reply
        return reply

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return PriceOracle(JUPITER_URL, COINGECKO_URL, http_client=http), requested


class TestExtractors:
    """Tests for response body readers."""

    def test_jupiter(self) -> None:
        assert extract_jupiter_price(_jupiter("150.25")) == "150.25"

    def test_coingecko(self) -> None:
        assert extract_coingecko_price(_coingecko(149.9)) == 149.9

    def test_missing_key(self) -> None:
        with pytest.raises(KeyError):
            extract_jupiter_price({"data": {}})


class TestGetPrice:
    """Tests for source ordering and failure handling."""

    @pytest.mark.asyncio
    async def test_primary_source_used_first(self) -> None:
        oracle, requested = _oracle(
            httpx.Response(200, json=_jupiter("150.25")),
            httpx.Response(200, json=_coingecko(1)),
        )

        assert await oracle.get_price() == Decimal("150.25")
        assert requested == [JUPITER_URL]

    @pytest.mark.asyncio
    async def test_fallback_on_http_error(self) -> None:
        oracle, requested = _oracle(
            httpx.Response(503),
            httpx.Response(200, json=_coingecko(148.5)),
        )

        assert await oracle.get_price() == Decimal("148.5")
        assert requested == [JUPITER_URL, COINGECKO_URL]

    @pytest.mark.asyncio
    async def test_fallback_on_network_error(self) -> None:
        oracle, _ = _oracle(
            httpx.ConnectError("unreachable"),
            httpx.Response(200, json=_coingecko(148.5)),
        )

        assert await oracle.get_price() == Decimal("148.5")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            {"data": {}},
            _jupiter(None),
            _jupiter("not-a-number"),
            _jupiter("0"),
            _jupiter("-3"),
            _jupiter("NaN"),
        ],
    )
    async def test_fallback_on_unusable_primary_body(self, body: dict[str, Any]) -> None:
        oracle, _ = _oracle(
            httpx.Response(200, json=body),
            httpx.Response(200, json=_coingecko(150)),
        )

        assert await oracle.get_price() == Decimal("150")

    @pytest.mark.asyncio
    async def test_fallback_on_invalid_json(self) -> None:
        oracle, _ = _oracle(
            httpx.Response(200, content=b"<html>oops</html>"),
            httpx.Response(200, json=_coingecko(150)),
        )

        assert await oracle.get_price() == Decimal("150")

    @pytest.mark.asyncio
    async def test_all_sources_fail(self) -> None:
        oracle, _ = _oracle(
            httpx.Response(500),
            httpx.Response(200, json={"solana": {}}),
        )

        with pytest.raises(PriceUnavailableError) as exc_info:
            await oracle.get_price()

        assert set(exc_info.value.reasons) == {"jupiter", "coingecko"}
        assert "SOL price unavailable" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_no_retries_within_a_call(self) -> None:
        oracle, requested = _oracle(httpx.Response(500), httpx.Response(500))

        with pytest.raises(PriceUnavailableError):
            await oracle.get_price()

        assert requested == [JUPITER_URL, COINGECKO_URL]


class TestLifecycle:
    """Tests for oracle construction and shutdown."""

    def test_sources_in_priority_order(self) -> None:
        oracle = PriceOracle(JUPITER_URL, COINGECKO_URL)

        assert [s.name for s in oracle.sources] == ["jupiter", "coingecko"]
        assert [s.url for s in oracle.sources] == [JUPITER_URL, COINGECKO_URL]

    @pytest.mark.asyncio
    async def test_close_leaves_injected_client_open(self) -> None:
        http = httpx.AsyncClient()
        oracle = PriceOracle(JUPITER_URL, COINGECKO_URL, http_client=http)

        await oracle.close()

        assert http.is_closed is False
        await http.aclose()

    @pytest.mark.asyncio
    async def test_close_owned_client(self) -> None:
        oracle = PriceOracle(JUPITER_URL, COINGECKO_URL)

        await oracle.close()

        assert oracle._http.is_closed is True
