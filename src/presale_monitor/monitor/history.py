"""Historical deposit analysis over a trailing window of days."""

from collections.abc import Iterable
from datetime import date, datetime, timedelta
from decimal import Decimal

from presale_monitor.monitor.models import (
    ContributorAggregate,
    CumulativePoint,
    DailyVolume,
    HistoricalAnalysis,
    HourlyActivity,
    Transaction,
)

DEFAULT_TOP_CONTRIBUTORS = 20
TRANSACTIONS_PER_DAY = 100
MAX_HISTORY_TRANSACTIONS = 5000
SECONDS_PER_DAY = Decimal(86400)


def history_fetch_limit(days: int) -> int:
    """Number of transactions to fetch for a window of ``days``."""
    return min(days * TRANSACTIONS_PER_DAY, MAX_HISTORY_TRANSACTIONS)


def rank_contributors(
    deposits: Iterable[Transaction],
    limit: int | None = DEFAULT_TOP_CONTRIBUTORS,
) -> list[ContributorAggregate]:
    """Aggregate deposits per sender and rank by total USD, largest first."""
    grouped: dict[str, list[Transaction]] = {}
    for tx in deposits:
        if tx.counterparty_from is None:
            continue
        grouped.setdefault(tx.counterparty_from, []).append(tx)

    ranked = sorted(
        (
            ContributorAggregate(
                address=address,
                total_usd=sum((tx.usd_value for tx in txs), Decimal(0)),
                contribution_count=len(txs),
                first_contribution=min(tx.occurred_at for tx in txs),
                last_contribution=max(tx.occurred_at for tx in txs),
            )
            for address, txs in grouped.items()
        ),
        key=lambda c: (c.total_usd, c.contribution_count),
        reverse=True,
    )
    return ranked if limit is None else ranked[:limit]


def _active_days(deposits: list[Transaction], days: int, now: datetime) -> Decimal:
    """Days covered by the deposits: the window, or less if they started later. At least 1."""
    if not deposits:
        return Decimal(1)
    earliest = min(tx.occurred_at for tx in deposits)
    span = Decimal(str((now - earliest).total_seconds())) / SECONDS_PER_DAY
    return max(min(Decimal(days), span), Decimal(1))


def analyze(
    transactions: Iterable[Transaction],
    days: int,
    now: datetime,
    *,
    top_n: int = DEFAULT_TOP_CONTRIBUTORS,
) -> HistoricalAnalysis:
    """Build the historical analysis of successful deposits.

    Args:
        transactions: Classified transactions, in any order.
        days: Size of the trailing window.
        now: End of the window (timezone-aware UTC).
        top_n: Number of top contributors to keep.

    Returns:
        Daily volumes ascending by UTC date, the running cumulative total over
        the same dates, the top contributors and per-hour activity averaged
        over the days the deposits actually span within the window.
    """
    since = now - timedelta(days=days)
    deposits = [
        tx for tx in transactions if tx.is_successful_deposit and since <= tx.occurred_at <= now
    ]

    by_date: dict[date, list[Transaction]] = {}
    for tx in deposits:
        by_date.setdefault(tx.occurred_at.date(), []).append(tx)

    daily: list[DailyVolume] = []
    cumulative: list[CumulativePoint] = []
    running = Decimal(0)
    for day in sorted(by_date):
        volume = sum((tx.usd_value for tx in by_date[day]), Decimal(0))
        running += volume
        daily.append(DailyVolume(date=day, volume_usd=volume, transaction_count=len(by_date[day])))
        cumulative.append(CumulativePoint(date=day, total_usd=running))

    hourly_counts = [0] * 24
    hourly_volume = [Decimal(0)] * 24
    for tx in deposits:
        hourly_counts[tx.occurred_at.hour] += 1
        hourly_volume[tx.occurred_at.hour] += tx.usd_value
    divisor = _active_days(deposits, days, now)
    hourly = tuple(
        HourlyActivity(
            hour=hour,
            average_transactions=Decimal(hourly_counts[hour]) / divisor,
            average_volume_usd=hourly_volume[hour] / divisor,
        )
        for hour in range(24)
    )

    return HistoricalAnalysis(
        days=days,
        daily_volumes=tuple(daily),
        cumulative_raised=tuple(cumulative),
        top_contributors=tuple(rank_contributors(deposits, top_n)),
        hourly_activity=hourly,
        analyzed_at=now,
    )
