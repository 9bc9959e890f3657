from collections import Counter, defaultdict
from datetime import datetime, timedelta, timezone
from typing import Optional

from .models import (
    CategoryHours,
    ContributorHours,
    EntryStatus,
    ParticipationAnalytics,
    ParticipationEntry,
    StatusCount,
)
from .service import ParticipationLedger, ValidationError, ZERO

TOP_CONTRIBUTORS = 10
RECENT_LOGS = 10
MAX_PERIOD_DAYS = 3650


def participation_analytics(
    ledger: ParticipationLedger,
    period_days: int = 30,
    now: Optional[datetime] = None,
) -> ParticipationAnalytics:
    """Organisation-wide participation figures for the last ``period_days`` days.

    Hour totals, category breakdown and top contributors count approved
    entries only; status counts and recent logs cover every entry.
    """
    if period_days <= 0 or period_days > MAX_PERIOD_DAYS:
        raise ValidationError({"period": f"must be between 1 and {MAX_PERIOD_DAYS} days"})

    now = now or datetime.now(timezone.utc)
    since = now - timedelta(days=period_days)
    entries = [ParticipationEntry(**row) for row in ledger.storage.entries_since(since)]
    approved = [e for e in entries if e.status == EntryStatus.APPROVED]

    category_hours: dict = defaultdict(lambda: ZERO)
    category_count: Counter = Counter()
    member_hours: dict = defaultdict(lambda: ZERO)
    for entry in approved:
        category_hours[entry.category] += entry.hours
        category_count[entry.category] += 1
        member_hours[entry.member_id] += entry.hours

    status_count = Counter(e.status for e in entries)
    top = sorted(member_hours.items(), key=lambda item: item[1], reverse=True)[:TOP_CONTRIBUTORS]

    return ParticipationAnalytics(
        period=period_days,
        total_hours=sum((e.hours for e in approved), ZERO),
        total_logs=len(approved),
        hours_by_category=[
            CategoryHours(category=category, hours=hours, count=category_count[category])
            for category, hours in category_hours.items()
        ],
        count_by_status=[
            StatusCount(status=status, count=count) for status, count in status_count.items()
        ],
        top_contributors=[ContributorHours(member_id=member_id, total_hours=hours) for member_id, hours in top],
        recent_logs=entries[:RECENT_LOGS],
    )
