"""Aggregate classified transactions into presale metrics."""

import statistics
from collections.abc import Iterable
from datetime import datetime, timedelta
from decimal import Decimal

from presale_monitor.monitor.models import (
    DISTRIBUTION_BOUNDS,
    ContributionDistribution,
    Metrics,
    TokenKind,
    TotalRaised,
    Transaction,
    TransactionCounts,
    TransactionKind,
    TransactionStatus,
    WalletSnapshot,
)

DEFAULT_RECENT_TRANSACTIONS = 20

DAY = timedelta(days=1)
WEEK = timedelta(days=7)
MONTH = timedelta(days=30)


def _volume_since(transactions: list[Transaction], since: datetime) -> Decimal:
    return sum((tx.usd_value for tx in transactions if tx.occurred_at >= since), Decimal(0))


def contributor_totals(deposits: Iterable[Transaction]) -> dict[str, Decimal]:
    """Sum deposit USD values per sending address."""
    totals: dict[str, Decimal] = {}
    for tx in deposits:
        if tx.counterparty_from is None:
            continue
        totals[tx.counterparty_from] = totals.get(tx.counterparty_from, Decimal(0)) + tx.usd_value
    return totals


def distribution(totals: Iterable[Decimal]) -> ContributionDistribution:
    """Bucket per-contributor totals by size."""
    counts = [0] * (len(DISTRIBUTION_BOUNDS) + 1)
    for total in totals:
        bucket = next(
            (i for i, bound in enumerate(DISTRIBUTION_BOUNDS) if total < bound),
            len(DISTRIBUTION_BOUNDS),
        )
        counts[bucket] += 1
    return ContributionDistribution(*counts)


def aggregate(
    snapshot: WalletSnapshot,
    transactions: Iterable[Transaction],
    now: datetime,
    *,
    recent_limit: int = DEFAULT_RECENT_TRANSACTIONS,
) -> Metrics:
    """Compute metrics from a snapshot and a set of classified transactions.

    Only successful transactions count, and the volume windows cover
    deposits only. Average, median and distribution are taken over each
    contributor's total rather than over single deposits. Deposits raised
    in SOL are valued at the price recorded on the transaction when
    classified, falling back to the snapshot price; this is an
    approximation of historical value.

    Args:
        snapshot: Current wallet snapshot.
        transactions: Classified transactions, in any order.
        now: Reference time for the trailing volume windows.
        recent_limit: Number of recent transactions to include.

    Returns:
        Freshly computed Metrics stamped with ``now``.
    """
    successful = [tx for tx in transactions if tx.status is TransactionStatus.SUCCESS]
    deposits = [tx for tx in successful if tx.kind is TransactionKind.DEPOSIT]
    withdrawals = [tx for tx in successful if tx.kind is TransactionKind.WITHDRAWAL]

    raised_native = sum((tx.amount for tx in deposits if tx.token is TokenKind.NATIVE), Decimal(0))
    raised_stable = sum((tx.amount for tx in deposits if tx.token is TokenKind.STABLE), Decimal(0))
    raised_usd = sum(
        (
            tx.amount * (tx.price_usd if tx.price_usd is not None else snapshot.price_at_snapshot)
            for tx in deposits
            if tx.token is TokenKind.NATIVE
        ),
        raised_stable,
    )

    contributions = [tx.usd_value for tx in deposits]
    totals = contributor_totals(deposits)
    per_contributor = list(totals.values())

    recent = sorted(successful, key=lambda tx: tx.occurred_at, reverse=True)[:recent_limit]

    return Metrics(
        snapshot=snapshot,
        total_raised=TotalRaised(native=raised_native, stable=raised_stable, total_usd=raised_usd),
        daily_volume_usd=_volume_since(deposits, now - DAY),
        weekly_volume_usd=_volume_since(deposits, now - WEEK),
        monthly_volume_usd=_volume_since(deposits, now - MONTH),
        transaction_counts=TransactionCounts(
            total=len(successful),
            deposits=len(deposits),
            withdrawals=len(withdrawals),
            last_24h=sum(1 for tx in deposits if tx.occurred_at >= now - DAY),
            last_7d=sum(1 for tx in deposits if tx.occurred_at >= now - WEEK),
        ),
        unique_contributors=len(totals),
        average_contribution_usd=(
            sum(per_contributor, Decimal(0)) / len(per_contributor)
            if per_contributor
            else Decimal(0)
        ),
        largest_contribution_usd=max(contributions, default=Decimal(0)),
        smallest_contribution_usd=min(contributions, default=Decimal(0)),
        median_contribution_usd=(
            Decimal(statistics.median(per_contributor)) if per_contributor else Decimal(0)
        ),
        contribution_distribution=distribution(per_contributor),
        recent_transactions=tuple(recent),
        computed_at=now,
    )
