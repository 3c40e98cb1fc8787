"""Solana ledger access - JSON-RPC reads and websocket subscriptions."""

from presale_monitor.chain.client import (
    ChainClientError,
    RateLimitError,
    RPCError,
    SolanaClient,
    TransientNetworkError,
)
from presale_monitor.chain.models import (
    ParsedInstruction,
    ParsedTransaction,
    SignatureInfo,
    SubscriptionHandle,
    SubscriptionKind,
    TokenBalance,
    lamports_to_sol,
)
from presale_monitor.chain.subscriptions import (
    ConnectionState,
    SubscriptionError,
    SubscriptionManager,
)

__all__ = [
    # Client
    "ChainClientError",
    "RateLimitError",
    "RPCError",
    "SolanaClient",
    "TransientNetworkError",
    # Subscriptions
    "ConnectionState",
    "SubscriptionError",
    "SubscriptionManager",
    # Models
    "ParsedInstruction",
    "ParsedTransaction",
    "SignatureInfo",
    "SubscriptionHandle",
    "SubscriptionKind",
    "TokenBalance",
    "lamports_to_sol",
]
