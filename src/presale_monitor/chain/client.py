"""Solana JSON-RPC client with rate limiting, retries and failover.

This module provides the read-only ledger adapter used by the monitor:
- Token bucket rate limiting to respect provider limits
- Retry logic with exponential backoff for transient failures
- Rate-limit responses surfaced as a distinct error
- Failover to a secondary RPC URL
- Push subscriptions delegated to the websocket SubscriptionManager
"""

import asyncio
import itertools
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import httpx
from prometheus_client import Counter, Histogram

from presale_monitor.chain.models import (
    ParsedTransaction,
    SignatureInfo,
    SubscriptionHandle,
    lamports_to_sol,
)
from presale_monitor.chain.subscriptions import NotificationHandler, SubscriptionManager

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_MAX_REQUESTS_PER_SECOND = 10
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 0.5
DEFAULT_MAX_RETRY_DELAY_SECONDS = 30.0
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_COMMITMENT = "confirmed"
MAX_SIGNATURES_PER_PAGE = 1000

# JSON-RPC error codes
RATE_LIMIT_RPC_CODES = (-32429,)
TRANSIENT_RPC_CODES = (-32004, -32005, -32014)

RPC_REQUESTS = Counter(
    "presale_rpc_requests_total",
    "Solana RPC requests by method and outcome",
    ["method", "outcome"],
)

RPC_LATENCY = Histogram(
    "presale_rpc_latency_seconds",
    "Solana RPC request latency in seconds",
    ["method"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class TransientNetworkError(ChainClientError):
    """Raised when the RPC stays unreachable after all retries."""


class RateLimitError(ChainClientError):
    """Raised when the RPC provider rejects a request for rate limiting."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class RPCError(ChainClientError):
    """Raised when the RPC returns a non-retryable error."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> "RateLimiter":
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class SolanaClient:
    """Read-only Solana client with rate limiting and failover.

    "Not found" is a normal result (None), never an error. Transient failures
    (timeouts, 5xx, node-behind errors) are retried with bounded exponential
    backoff and then retried against the fallback RPC. HTTP 429 and JSON-RPC
    rate-limit errors raise RateLimitError immediately so callers can throttle.

    Example:
        ```python
        client = SolanaClient(
            "https://api.mainnet-beta.solana.com",
            ws_url="wss://api.mainnet-beta.solana.com",
        )

        sol = await client.get_native_balance("2n5a...")
        sigs = await client.list_signatures("2n5a...", limit=50)
        tx = await client.get_parsed_transaction(sigs[0].signature)
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        fallback_rpc_url: str | None = None,
        ws_url: str | None = None,
        commitment: str = DEFAULT_COMMITMENT,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        max_retry_delay_seconds: float = DEFAULT_MAX_RETRY_DELAY_SECONDS,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
        subscriptions: SubscriptionManager | None = None,
    ) -> None:
        """Initialize the Solana client.

        Args:
            rpc_url: Primary JSON-RPC endpoint URL.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            ws_url: Websocket endpoint for push subscriptions.
            commitment: Commitment level for reads and subscriptions.
            max_requests_per_second: Rate limit for RPC calls.
            max_retries: Attempts per endpoint on transient failure.
            retry_delay_seconds: Initial delay between retries.
            max_retry_delay_seconds: Upper bound for the backoff delay.
            request_timeout: HTTP request timeout in seconds.
            http_client: Optional pre-built httpx client (not closed by us).
            subscriptions: Optional pre-built subscription manager.
        """
        self._rpc_url = rpc_url
        self._fallback_rpc_url = fallback_rpc_url
        self._ws_url = ws_url
        self._commitment = commitment
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._max_retry_delay = max_retry_delay_seconds

        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=request_timeout)
        self._subscriptions = subscriptions

        self._rate_limiter = RateLimiter.create(max_requests_per_second)
        self._request_ids = itertools.count(1)

        # Track primary RPC health
        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = 60.0

    @property
    def commitment(self) -> str:
        """Commitment level used for reads."""
        return self._commitment

    def _should_try_primary(self) -> bool:
        if self._primary_healthy:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    def _endpoints(self) -> list[tuple[str, bool]]:
        endpoints: list[tuple[str, bool]] = []
        if self._should_try_primary() or not self._fallback_rpc_url:
            endpoints.append((self._rpc_url, True))
        if self._fallback_rpc_url:
            endpoints.append((self._fallback_rpc_url, False))
        return endpoints

    async def _post(self, url: str, method: str, params: list[Any]) -> Any:
        """Issue one JSON-RPC request and classify the outcome."""
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._request_ids),
            "method": method,
            "params": params,
        }
        try:
            response = await self._http.post(url, json=payload)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"{method} timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"{method} transport error: {e}") from e

        if response.status_code == 429:
            raise RateLimitError(
                f"{method} rate limited (HTTP 429)",
                retry_after=_retry_after(response),
            )
        if response.status_code >= 500:
            raise TransientNetworkError(f"{method} failed with HTTP {response.status_code}")
        if response.status_code >= 400:
            raise RPCError(f"{method} failed with HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise TransientNetworkError(f"{method} returned malformed JSON") from e

        error = body.get("error") if isinstance(body, dict) else None
        if error:
            code = error.get("code")
            message = str(error.get("message", error))
            if code in RATE_LIMIT_RPC_CODES or "too many requests" in message.lower():
                raise RateLimitError(f"{method} rate limited: {message}")
            if code in TRANSIENT_RPC_CODES:
                raise TransientNetworkError(f"{method} failed: {message}")
            raise RPCError(f"{method} failed: {message}", code=code)

        return body.get("result") if isinstance(body, dict) else None

    async def _request(self, method: str, params: list[Any]) -> Any:
        """Execute an RPC call with retry and failover logic.

        Raises:
            RateLimitError: If the provider rate limits the request.
            RPCError: If the node returns a non-retryable error.
            TransientNetworkError: If all retries and failover fail.
        """
        await self._rate_limiter.acquire()

        last_error: Exception | None = None
        for url, is_primary in self._endpoints():
            delay = self._retry_delay
            for attempt in range(self._max_retries):
                start = time.monotonic()
                try:
                    result = await self._post(url, method, params)
                except TransientNetworkError as e:
                    RPC_REQUESTS.labels(method=method, outcome="transient").inc()
                    last_error = e
                    logger.warning(
                        "%s RPC %s failed (attempt %d/%d): %s",
                        "Primary" if is_primary else "Fallback",
                        method,
                        attempt + 1,
                        self._max_retries,
                        e,
                    )
                    if attempt < self._max_retries - 1:
                        await asyncio.sleep(delay)
                        delay = min(delay * 2, self._max_retry_delay)
                    continue
                except RateLimitError:
                    RPC_REQUESTS.labels(method=method, outcome="rate_limited").inc()
                    raise
                except RPCError:
                    RPC_REQUESTS.labels(method=method, outcome="error").inc()
                    raise

                RPC_REQUESTS.labels(method=method, outcome="success").inc()
                RPC_LATENCY.labels(method=method).observe(time.monotonic() - start)
                if is_primary:
                    self._primary_healthy = True
                else:
                    logger.info("Fallback RPC succeeded for %s", method)
                return result

            if is_primary:
                self._primary_healthy = False
                self._last_primary_check = time.monotonic()

        raise TransientNetworkError(f"RPC call {method} failed after all retries: {last_error}")

    async def get_native_balance(self, address: str) -> Decimal:
        """Get the SOL balance of an address.

        Args:
            address: Base58 account address.

        Returns:
            Balance in SOL.
        """
        result = await self._request(
            "getBalance",
            [address, {"commitment": self._commitment}],
        )
        lamports = result["value"] if isinstance(result, dict) else result
        return lamports_to_sol(int(lamports))

    async def _get_mint_balance(self, address: str, mint: str) -> Decimal:
        result = await self._request(
            "getTokenAccountsByOwner",
            [
                address,
                {"mint": mint},
                {"encoding": "jsonParsed", "commitment": self._commitment},
            ],
        )
        total = Decimal(0)
        for account in result.get("value", []):
            info = account["account"]["data"]["parsed"]["info"]
            token_amount = info["tokenAmount"]
            ui_amount = token_amount.get("uiAmountString")
            if ui_amount is not None:
                total += Decimal(ui_amount)
            else:
                total += Decimal(token_amount["amount"]).scaleb(-int(token_amount["decimals"]))
        return total

    async def get_stable_balances(self, address: str, mints: Iterable[str]) -> Decimal:
        """Sum the token balance of every allowlisted mint held by an address.

        Args:
            address: Owner address.
            mints: Stablecoin mint allowlist.

        Returns:
            Combined UI amount across all token accounts of all mints.
        """
        balances = await asyncio.gather(*(self._get_mint_balance(address, m) for m in mints))
        return sum(balances, Decimal(0))

    async def list_signatures(
        self,
        address: str,
        limit: int,
        *,
        before: str | None = None,
    ) -> list[SignatureInfo]:
        """List recent transaction signatures for an address, newest first.

        Pages through results MAX_SIGNATURES_PER_PAGE at a time using the
        ``before`` cursor until ``limit`` signatures are collected.

        Args:
            address: Account address.
            limit: Maximum number of signatures to return.
            before: Optional signature to start searching backwards from.

        Returns:
            Signature handles ordered newest first.
        """
        signatures: list[SignatureInfo] = []
        cursor = before

        while len(signatures) < limit:
            page_limit = min(MAX_SIGNATURES_PER_PAGE, limit - len(signatures))
            config: dict[str, Any] = {"limit": page_limit, "commitment": self._commitment}
            if cursor:
                config["before"] = cursor

            page = await self._request("getSignaturesForAddress", [address, config])
            if not page:
                break

            signatures.extend(SignatureInfo.from_rpc(entry) for entry in page)
            if len(page) < page_limit:
                break
            cursor = signatures[-1].signature

        return signatures

    async def get_parsed_transaction(self, signature: str) -> ParsedTransaction | None:
        """Fetch a transaction with jsonParsed encoding.

        Args:
            signature: Transaction signature.

        Returns:
            The parsed transaction, or None if the node does not know it.

        Raises:
            RPCError: If the node returns a payload that cannot be parsed.
        """
        result = await self._request(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "maxSupportedTransactionVersion": 0,
                    "commitment": self._commitment,
                },
            ],
        )
        if result is None:
            return None
        try:
            return ParsedTransaction.from_rpc(signature, result)
        except (KeyError, TypeError, ValueError) as e:
            raise RPCError(f"Malformed transaction payload for {signature}: {e}") from e

    async def get_slot(self) -> int:
        """Get the current slot."""
        result = await self._request("getSlot", [{"commitment": self._commitment}])
        return int(result)

    async def health_check(self) -> bool:
        """Check if the client can reach the RPC.

        Returns:
            True if healthy, False otherwise.
        """
        try:
            await self.get_slot()
            return True
        except ChainClientError:
            return False

    def _subscription_manager(self) -> SubscriptionManager:
        if self._subscriptions is None:
            if not self._ws_url:
                raise ChainClientError("No websocket URL configured for subscriptions")
            self._subscriptions = SubscriptionManager(self._ws_url, commitment=self._commitment)
        return self._subscriptions

    async def subscribe_account_changes(
        self,
        address: str,
        handler: NotificationHandler,
    ) -> SubscriptionHandle:
        """Subscribe to account data/lamport changes of an address."""
        return await self._subscription_manager().subscribe_account(address, handler)

    async def subscribe_logs(
        self,
        address: str,
        handler: NotificationHandler,
    ) -> SubscriptionHandle:
        """Subscribe to logs of transactions mentioning an address."""
        return await self._subscription_manager().subscribe_logs(address, handler)

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        """Cancel a push subscription. Unknown handles are ignored."""
        if self._subscriptions is not None:
            await self._subscriptions.unsubscribe(handle)

    async def close(self) -> None:
        """Close subscriptions and the HTTP client."""
        if self._subscriptions is not None:
            await self._subscriptions.close()
        if self._owns_http:
            await self._http.aclose()
