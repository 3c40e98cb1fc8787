"""Data models for Solana JSON-RPC payloads."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

LAMPORTS_PER_SOL = Decimal("1000000000")


def lamports_to_sol(lamports: int) -> Decimal:
    """Convert lamports to SOL."""
    return Decimal(lamports) / LAMPORTS_PER_SOL


def _block_time(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


@dataclass(frozen=True)
class SignatureInfo:
    """A transaction signature listed for an address."""

    signature: str
    slot: int
    error: Any | None = None
    block_time: datetime | None = None

    @classmethod
    def from_rpc(cls, data: dict[str, Any]) -> "SignatureInfo":
        """Create from a getSignaturesForAddress entry."""
        return cls(
            signature=str(data["signature"]),
            slot=int(data.get("slot", 0)),
            error=data.get("err"),
            block_time=_block_time(data.get("blockTime")),
        )


@dataclass(frozen=True)
class ParsedInstruction:
    """A jsonParsed instruction (top-level or inner)."""

    program_id: str
    program: str | None = None
    type: str | None = None
    info: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_rpc(cls, data: dict[str, Any]) -> "ParsedInstruction":
        """Create from an instruction in a jsonParsed transaction."""
        parsed = data.get("parsed")
        if isinstance(parsed, dict):
            info = parsed.get("info")
            return cls(
                program_id=str(data.get("programId", "")),
                program=data.get("program"),
                type=parsed.get("type"),
                info=dict(info) if isinstance(info, dict) else {},
            )
        # Unparsed instruction (raw data only)
        return cls(program_id=str(data.get("programId", "")), program=data.get("program"))

    @property
    def is_token_transfer(self) -> bool:
        """Return True for SPL token transfer instructions."""
        return self.program in ("spl-token", "spl-token-2022") and self.type in (
            "transfer",
            "transferChecked",
        )


@dataclass(frozen=True)
class TokenBalance:
    """Token balance entry from transaction meta."""

    account_index: int
    mint: str
    owner: str | None
    amount: int
    decimals: int

    @classmethod
    def from_rpc(cls, data: dict[str, Any]) -> "TokenBalance":
        """Create from a pre/postTokenBalances entry."""
        ui = data.get("uiTokenAmount") or {}
        return cls(
            account_index=int(data["accountIndex"]),
            mint=str(data["mint"]),
            owner=data.get("owner"),
            amount=int(ui.get("amount", "0")),
            decimals=int(ui.get("decimals", 0)),
        )


@dataclass(frozen=True)
class ParsedTransaction:
    """A finalized transaction fetched with jsonParsed encoding.

    Attributes:
        signature: First signature of the transaction.
        slot: Slot the transaction landed in.
        block_time: Block timestamp (UTC) or None if the node did not report one.
        account_keys: Account public keys in message order.
        pre_balances: Lamport balances before execution, indexed like account_keys.
        post_balances: Lamport balances after execution.
        error: The transaction error object, or None on success.
        instructions: Top-level parsed instructions.
        inner_instructions: Inner (CPI) parsed instructions, flattened.
        pre_token_balances: Token balances before execution.
        post_token_balances: Token balances after execution.
    """

    signature: str
    slot: int
    block_time: datetime | None
    account_keys: tuple[str, ...]
    pre_balances: tuple[int, ...]
    post_balances: tuple[int, ...]
    error: Any | None = None
    instructions: tuple[ParsedInstruction, ...] = ()
    inner_instructions: tuple[ParsedInstruction, ...] = ()
    pre_token_balances: tuple[TokenBalance, ...] = ()
    post_token_balances: tuple[TokenBalance, ...] = ()

    @classmethod
    def from_rpc(cls, signature: str, data: dict[str, Any]) -> "ParsedTransaction":
        """Create from a getTransaction (jsonParsed) result.

        Raises:
            KeyError, TypeError, ValueError: If the payload is malformed.
        """
        meta = data["meta"]
        message = data["transaction"]["message"]

        keys: list[str] = []
        for key in message["accountKeys"]:
            keys.append(str(key["pubkey"]) if isinstance(key, dict) else str(key))

        inner: list[ParsedInstruction] = []
        for group in meta.get("innerInstructions") or []:
            inner.extend(ParsedInstruction.from_rpc(ix) for ix in group.get("instructions", []))

        return cls(
            signature=signature,
            slot=int(data.get("slot", 0)),
            block_time=_block_time(data.get("blockTime")),
            account_keys=tuple(keys),
            pre_balances=tuple(int(b) for b in meta["preBalances"]),
            post_balances=tuple(int(b) for b in meta["postBalances"]),
            error=meta.get("err"),
            instructions=tuple(
                ParsedInstruction.from_rpc(ix) for ix in message.get("instructions", [])
            ),
            inner_instructions=tuple(inner),
            pre_token_balances=tuple(
                TokenBalance.from_rpc(b) for b in meta.get("preTokenBalances") or []
            ),
            post_token_balances=tuple(
                TokenBalance.from_rpc(b) for b in meta.get("postTokenBalances") or []
            ),
        )

    @property
    def fee_payer(self) -> str | None:
        """Return the fee payer (first account key)."""
        return self.account_keys[0] if self.account_keys else None


class SubscriptionKind(Enum):
    """Push subscription channels."""

    ACCOUNT = "account"
    LOGS = "logs"


@dataclass(frozen=True)
class SubscriptionHandle:
    """Opaque handle for an active push subscription."""

    handle_id: int
    kind: SubscriptionKind
    address: str
