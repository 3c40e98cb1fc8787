"""Data models for the presale monitor."""

from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum


class TransactionKind(Enum):
    """Direction of a transaction relative to the monitored address."""

    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    UNRELATED = "unrelated"


class TokenKind(Enum):
    """Asset moved by a transaction."""

    NATIVE = "native"
    STABLE = "stable"
    OTHER = "other"


class TransactionStatus(Enum):
    """Execution outcome of a transaction."""

    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class WalletSnapshot:
    """Point-in-time balances of the monitored address.

    Attributes:
        address: Monitored address.
        native_balance: SOL balance.
        stable_balance: Sum of all allowlisted stablecoin balances.
        price_at_snapshot: SOL/USD price used for valuation.
        captured_at: When the snapshot was taken.
    """

    address: str
    native_balance: Decimal
    stable_balance: Decimal
    price_at_snapshot: Decimal
    captured_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def total_value_usd(self) -> Decimal:
        """Return native_balance x price + stable_balance."""
        return self.native_balance * self.price_at_snapshot + self.stable_balance

    def to_dict(self) -> dict[str, object]:
        """Serialize to a JSON-compatible dictionary."""
        return {
            "address": self.address,
            "native_balance": str(self.native_balance),
            "stable_balance": str(self.stable_balance),
            "total_value_usd": str(self.total_value_usd),
            "price_at_snapshot": str(self.price_at_snapshot),
            "captured_at": self.captured_at.isoformat(),
        }


@dataclass(frozen=True)
class Transaction:
    """A transaction classified against the monitored address.

    Attributes:
        signature: Transaction signature (unique identity).
        kind: Deposit, withdrawal or unrelated-but-present.
        token: Native SOL, an allowlisted stablecoin, or other.
        amount: Amount in the token's UI unit.
        usd_value: USD value at classification time.
        counterparty_from: Sending address, if known.
        counterparty_to: Receiving address, if known.
        occurred_at: Block time (UTC).
        status: Success or failed.
        price_usd: SOL price used for valuation (None for stablecoins).
        slot: Slot the transaction landed in.
    """

    signature: str
    kind: TransactionKind
    token: TokenKind
    amount: Decimal
    usd_value: Decimal
    counterparty_from: str | None
    counterparty_to: str | None
    occurred_at: datetime
    status: TransactionStatus
    price_usd: Decimal | None = None
    slot: int = 0

    @property
    def is_successful_deposit(self) -> bool:
        """Return True for a deposit that executed successfully."""
        return self.kind is TransactionKind.DEPOSIT and self.status is TransactionStatus.SUCCESS

    def to_dict(self) -> dict[str, object]:
        """Serialize to a JSON-compatible dictionary."""
        return {
            "signature": self.signature,
            "kind": self.kind.value,
            "token": self.token.value,
            "amount": str(self.amount),
            "usd_value": str(self.usd_value),
            "counterparty_from": self.counterparty_from,
            "counterparty_to": self.counterparty_to,
            "occurred_at": self.occurred_at.isoformat(),
            "status": self.status.value,
            "price_usd": str(self.price_usd) if self.price_usd is not None else None,
            "slot": self.slot,
        }


@dataclass(frozen=True)
class TotalRaised:
    """Deposit totals per asset."""

    native: Decimal = Decimal(0)
    stable: Decimal = Decimal(0)
    total_usd: Decimal = Decimal(0)

    def to_dict(self) -> dict[str, object]:
        return {
            "native": str(self.native),
            "stable": str(self.stable),
            "total_usd": str(self.total_usd),
        }


@dataclass(frozen=True)
class TransactionCounts:
    """Counts of successful transactions."""

    total: int = 0
    deposits: int = 0
    withdrawals: int = 0
    last_24h: int = 0
    last_7d: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "total": self.total,
            "deposits": self.deposits,
            "withdrawals": self.withdrawals,
            "last_24h": self.last_24h,
            "last_7d": self.last_7d,
        }


# Exclusive upper bounds of the distribution buckets; the last bucket is open
DISTRIBUTION_BOUNDS = (Decimal(100), Decimal(500), Decimal(1000), Decimal(5000), Decimal(10000))


@dataclass(frozen=True)
class ContributionDistribution:
    """Number of contributors per total-contribution bucket (USD)."""

    under_100: int = 0
    from_100_to_500: int = 0
    from_500_to_1k: int = 0
    from_1k_to_5k: int = 0
    from_5k_to_10k: int = 0
    over_10k: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "under_100": self.under_100,
            "100_to_500": self.from_100_to_500,
            "500_to_1k": self.from_500_to_1k,
            "1k_to_5k": self.from_1k_to_5k,
            "5k_to_10k": self.from_5k_to_10k,
            "over_10k": self.over_10k,
        }


@dataclass(frozen=True)
class Metrics:
    """Aggregated presale metrics.

    Metrics are replaced wholesale on every recomputation; ``computed_at`` is
    the freshness stamp used by the metrics cache.
    """

    snapshot: WalletSnapshot
    total_raised: TotalRaised
    daily_volume_usd: Decimal
    weekly_volume_usd: Decimal
    monthly_volume_usd: Decimal
    transaction_counts: TransactionCounts
    unique_contributors: int
    average_contribution_usd: Decimal
    largest_contribution_usd: Decimal
    smallest_contribution_usd: Decimal
    median_contribution_usd: Decimal
    contribution_distribution: ContributionDistribution
    recent_transactions: tuple[Transaction, ...]
    computed_at: datetime

    def to_dict(self) -> dict[str, object]:
        """Serialize to a JSON-compatible dictionary."""
        return {
            "snapshot": self.snapshot.to_dict(),
            "total_raised": self.total_raised.to_dict(),
            "daily_volume_usd": str(self.daily_volume_usd),
            "weekly_volume_usd": str(self.weekly_volume_usd),
            "monthly_volume_usd": str(self.monthly_volume_usd),
            "transaction_counts": self.transaction_counts.to_dict(),
            "unique_contributors": self.unique_contributors,
            "average_contribution_usd": str(self.average_contribution_usd),
            "largest_contribution_usd": str(self.largest_contribution_usd),
            "smallest_contribution_usd": str(self.smallest_contribution_usd),
            "median_contribution_usd": str(self.median_contribution_usd),
            "contribution_distribution": self.contribution_distribution.to_dict(),
            "recent_transactions": [tx.to_dict() for tx in self.recent_transactions],
            "computed_at": self.computed_at.isoformat(),
        }


@dataclass(frozen=True)
class ContributorAggregate:
    """Per-contributor deposit totals."""

    address: str
    total_usd: Decimal
    contribution_count: int
    first_contribution: datetime
    last_contribution: datetime

    @property
    def average_usd(self) -> Decimal:
        """Return the mean contribution size in USD."""
        if self.contribution_count == 0:
            return Decimal(0)
        return self.total_usd / self.contribution_count

    def to_dict(self) -> dict[str, object]:
        return {
            "address": self.address,
            "total_usd": str(self.total_usd),
            "contribution_count": self.contribution_count,
            "average_usd": str(self.average_usd),
            "first_contribution": self.first_contribution.isoformat(),
            "last_contribution": self.last_contribution.isoformat(),
        }


@dataclass(frozen=True)
class ContributorHistory:
    """One contributor's successful deposits and their totals."""

    info: ContributorAggregate | None
    transactions: tuple[Transaction, ...]

    def to_dict(self) -> dict[str, object]:
        return {
            "info": self.info.to_dict() if self.info else None,
            "transactions": [tx.to_dict() for tx in self.transactions],
        }


@dataclass(frozen=True)
class DailyVolume:
    """Deposit volume on one UTC calendar date."""

    date: date
    volume_usd: Decimal
    transaction_count: int

    def to_dict(self) -> dict[str, object]:
        return {
            "date": self.date.isoformat(),
            "volume_usd": str(self.volume_usd),
            "transaction_count": self.transaction_count,
        }


@dataclass(frozen=True)
class CumulativePoint:
    """Running deposit total at the end of a UTC calendar date."""

    date: date
    total_usd: Decimal

    def to_dict(self) -> dict[str, object]:
        return {"date": self.date.isoformat(), "total_usd": str(self.total_usd)}


@dataclass(frozen=True)
class HourlyActivity:
    """Average deposits per day falling in one UTC hour of day."""

    hour: int
    average_transactions: Decimal
    average_volume_usd: Decimal

    def to_dict(self) -> dict[str, object]:
        return {
            "hour": self.hour,
            "average_transactions": str(self.average_transactions),
            "average_volume_usd": str(self.average_volume_usd),
        }


@dataclass(frozen=True)
class HistoricalAnalysis:
    """Deposit history over a trailing window of days."""

    days: int
    daily_volumes: tuple[DailyVolume, ...]
    cumulative_raised: tuple[CumulativePoint, ...]
    top_contributors: tuple[ContributorAggregate, ...]
    hourly_activity: tuple[HourlyActivity, ...]
    analyzed_at: datetime

    def to_dict(self) -> dict[str, object]:
        """Serialize to a JSON-compatible dictionary."""
        return {
            "days": self.days,
            "daily_volumes": [d.to_dict() for d in self.daily_volumes],
            "cumulative_raised": [c.to_dict() for c in self.cumulative_raised],
            "top_contributors": [c.to_dict() for c in self.top_contributors],
            "hourly_activity": [h.to_dict() for h in self.hourly_activity],
            "analyzed_at": self.analyzed_at.isoformat(),
        }


class UpdateType(Enum):
    """Kinds of real-time updates."""

    BALANCE_UPDATE = "balance_update"
    METRICS_UPDATE = "metrics_update"
    NEW_TRANSACTION = "new_transaction"


@dataclass(frozen=True)
class MonitorUpdate:
    """A real-time update pushed to consumers."""

    type: UpdateType
    data: WalletSnapshot | Metrics | Transaction
    emitted_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, object]:
        return {
            "type": self.type.value,
            "data": self.data.to_dict(),
            "emitted_at": self.emitted_at.isoformat(),
        }
