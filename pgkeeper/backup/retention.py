"""
Retention planning for backups.

Tiered rotation: every backup of the last N days is kept, plus a bounded
number of weekly (Sunday), monthly (1st of month) and yearly (1st of
January) snapshots. Planning is a pure function of the artifact list, the
policy and "now"; the executor applies the plan to each storage separately.
"""

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import FrozenSet, Iterable, List, Optional

from .artifacts import BackupArtifact, newest_first


WEEKLY_ANCHOR_WEEKDAY = 6  # datetime.weekday(): Sunday


@dataclass(frozen=True)
class RetentionPolicy:
    """
    How many tiered snapshots survive a cleanup pass.

    Attributes:
        daily_days: Keep every backup newer than this many days
        weekly_weeks: Keep up to this many Sunday backups within as many weeks
        monthly_months: Keep up to this many 1st-of-month backups within as many months
        yearly_years: Keep up to this many January 1st backups within as many years
    """

    daily_days: int = 7
    weekly_weeks: int = 4
    monthly_months: int = 3
    yearly_years: int = 1

    def __post_init__(self):
        for name in ('daily_days', 'weekly_weeks', 'monthly_months', 'yearly_years'):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")


@dataclass(frozen=True)
class RetentionPlan:
    keep: FrozenSet[str]
    delete: List[BackupArtifact]


def subtract_months(moment: datetime, months: int) -> datetime:
    """
    Move a datetime back by calendar months.

    The day is clamped to the length of the target month, so
    March 31st minus one month is February 28th (or 29th).
    """
    month_index = moment.year * 12 + (moment.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _tier(candidates: Iterable[BackupArtifact], cutoff: datetime, limit: int, anchor) -> List[BackupArtifact]:
    if limit <= 0:
        return []

    selected = [
        artifact for artifact in candidates
        if anchor(_as_utc(artifact.created_at)) and _as_utc(artifact.created_at) > cutoff
    ]
    return selected[:limit]


def plan_retention(
    artifacts: List[BackupArtifact],
    policy: RetentionPolicy,
    now: Optional[datetime] = None
) -> RetentionPlan:
    """
    Partition artifacts into keep and delete sets.

    Args:
        artifacts: Artifacts currently present on one storage
        policy: Retention policy to apply
        now: Reference time (default: current UTC time)

    Returns:
        RetentionPlan with the filenames to keep and the artifacts to delete
        (newest first)
    """
    now = _as_utc(now or datetime.now(timezone.utc))
    ordered = newest_first(artifacts)
    keep = set()

    daily_cutoff = now - timedelta(days=policy.daily_days)
    for artifact in ordered:
        if _as_utc(artifact.created_at) > daily_cutoff:
            keep.add(artifact.filename)

    weekly = _tier(
        ordered,
        now - timedelta(weeks=policy.weekly_weeks),
        policy.weekly_weeks,
        lambda d: d.weekday() == WEEKLY_ANCHOR_WEEKDAY
    )
    monthly = _tier(
        ordered,
        subtract_months(now, policy.monthly_months),
        policy.monthly_months,
        lambda d: d.day == 1
    )
    yearly = _tier(
        ordered,
        subtract_months(now, 12 * policy.yearly_years),
        policy.yearly_years,
        lambda d: d.month == 1 and d.day == 1
    )

    for artifact in weekly + monthly + yearly:
        keep.add(artifact.filename)

    delete = [artifact for artifact in ordered if artifact.filename not in keep]
    return RetentionPlan(keep=frozenset(keep), delete=delete)
