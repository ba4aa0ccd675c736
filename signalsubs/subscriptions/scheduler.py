"""Renewal scheduler: time-triggered reconciliation sweeps.

Each sweep is a plain coroutine taking ``now`` and returning a SweepReport.
An external timer (cron hitting the maintenance routes, or the CLI) decides
when they run. Sweeps never produce a payment proof; due renewals are only
handed to the notifier.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import Protocol

from ..logging_config import get_logger
from .models import UserSubscription
from .service import SubscriptionLedger

logger = get_logger("scheduler")

EXPIRY_SWEEP = "expiry"
REMINDER_SWEEP = "reminders"
SUSPENDED_SWEEP = "suspended"


class Notifier(Protocol):
    """Decides how a subscriber is told something; delivery is not our concern."""

    async def renewal_due(self, subscription: UserSubscription) -> None:
        ...

    async def payment_retry(self, subscription: UserSubscription) -> None:
        ...


class LoggingNotifier:
    """Default notifier: records what would be sent."""

    async def renewal_due(self, subscription: UserSubscription) -> None:
        logger.info(
            f"Renewal reminder | subscription={subscription.id} | "
            f"user={subscription.user_id} | renews_at={subscription.renews_at.isoformat()}"
        )

    async def payment_retry(self, subscription: UserSubscription) -> None:
        logger.info(
            f"Payment retry prompt | subscription={subscription.id} | "
            f"user={subscription.user_id} | failures={subscription.payment_failure_count}"
        )


@dataclass
class SweepReport:
    """Outcome of one sweep run."""

    job: str
    ran_at: datetime
    examined: int = 0
    processed: int = 0
    skipped: int = 0
    failed: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict:
        return {
            "job": self.job,
            "ran_at": self.ran_at.isoformat(),
            "examined": self.examined,
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": list(self.failed),
        }


def _day_window(now: datetime) -> tuple[datetime, datetime]:
    """[start of now's UTC day, start of the next day)."""
    day = now.astimezone(timezone.utc).date()
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


class RenewalScheduler:
    def __init__(
        self,
        ledger: SubscriptionLedger,
        notifier: Notifier | None = None,
    ):
        self.ledger = ledger
        self.notifier = notifier or LoggingNotifier()

    async def run_expiry_sweep(self, now: datetime | None = None) -> SweepReport:
        """Expire every ACTIVE/SUSPENDED subscription whose period has ended.

        Re-running over already-EXPIRED rows is a no-op (counted as skipped).
        """
        now = now or datetime.now(timezone.utc)
        report = SweepReport(job=EXPIRY_SWEEP, ran_at=now)
        candidates = await self.ledger.list_expired_candidates(now)
        report.examined = len(candidates)

        for subscription in candidates:
            try:
                expired = await self.ledger.expire_subscription(subscription.id, now)
            except Exception:
                logger.exception(f"Expiry failed | subscription={subscription.id}")
                report.failed.append(subscription.id)
                continue
            if expired is None:
                report.skipped += 1
            else:
                report.processed += 1

        self._log_report(report)
        return report

    async def run_reminder_sweep(self, now: datetime | None = None) -> SweepReport:
        """Notify subscribers whose renews_at falls on today's (UTC) date."""
        now = now or datetime.now(timezone.utc)
        report = SweepReport(job=REMINDER_SWEEP, ran_at=now)
        start, end = _day_window(now)
        due = await self.ledger.list_renewals_between(start, end)
        report.examined = len(due)

        for subscription in due:
            try:
                await self.notifier.renewal_due(subscription)
            except Exception:
                logger.exception(f"Renewal reminder failed | subscription={subscription.id}")
                report.failed.append(subscription.id)
                continue
            report.processed += 1

        self._log_report(report)
        return report

    async def run_suspended_sweep(self, now: datetime | None = None) -> SweepReport:
        """Expire suspended subscriptions past period_end; prompt the rest to retry."""
        now = now or datetime.now(timezone.utc)
        report = SweepReport(job=SUSPENDED_SWEEP, ran_at=now)
        suspended = await self.ledger.list_suspended()
        report.examined = len(suspended)

        for subscription in suspended:
            try:
                if subscription.period_end <= now:
                    expired = await self.ledger.expire_subscription(subscription.id, now)
                    if expired is None:
                        report.skipped += 1
                        continue
                else:
                    await self.notifier.payment_retry(subscription)
            except Exception:
                logger.exception(f"Suspended sweep failed | subscription={subscription.id}")
                report.failed.append(subscription.id)
                continue
            report.processed += 1

        self._log_report(report)
        return report

    async def run_all(self, now: datetime | None = None) -> list[SweepReport]:
        now = now or datetime.now(timezone.utc)
        return [
            await self.run_expiry_sweep(now),
            await self.run_reminder_sweep(now),
            await self.run_suspended_sweep(now),
        ]

    @staticmethod
    def _log_report(report: SweepReport) -> None:
        log = logger.warning if report.failed else logger.info
        log(
            f"Sweep {report.job} complete | examined={report.examined} | "
            f"processed={report.processed} | skipped={report.skipped} | "
            f"failed={len(report.failed)}"
        )

