"""
Quota ledger.

Per-owner page counters for the current ISO week, the current calendar month
and the lifetime total. Every mutation is a read-modify-write on the single
account row inside one transaction that holds the row's write lock
(SELECT ... FOR UPDATE on PostgreSQL, BEGIN IMMEDIATE on SQLite).
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Callable

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from docqueue.db.base import utcnow
from docqueue.db.manager import DatabaseManager
from docqueue.db.models import QuotaAccount
from docqueue.errors import QuotaExceeded, ValidationError
from docqueue.history import HistoryStore
from docqueue.states import Plan, Tier

logger = logging.getLogger(__name__)


def week_start(day: date) -> date:
    """Monday of the ISO week containing ``day``."""
    return day - timedelta(days=day.weekday())


def month_start(day: date) -> date:
    return day.replace(day=1)


@dataclass
class UsageSnapshot:
    """Counter values immediately after a ledger mutation."""

    weekly_usage: int
    monthly_usage: int
    lifetime_total: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class QuotaLimit:
    """The limit that applies to a plan and the counter it is measured against."""

    period: str  # "week" or "month"
    limit: int


class QuotaLedger:
    """
    Atomic per-owner usage counters with lazy period rollover.

    Every public method opens its own transaction unless the caller passes a
    session, in which case the account row lock is held until that
    caller's transaction commits.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        standard_weekly_limit: int = 10,
        elevated_monthly_limit: int = 100,
        history: HistoryStore | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """
        Initialize the ledger.

        Args:
            db_manager: Database manager owning the shared store
            standard_weekly_limit: Pages per ISO week for the standard tier
            elevated_monthly_limit: Pages per calendar month for the elevated tier
            history: History store used by reconcile (created if omitted)
            clock: Source of the current UTC time
        """
        self._db = db_manager
        self._standard_weekly_limit = standard_weekly_limit
        self._elevated_monthly_limit = elevated_monthly_limit
        self._history = history or HistoryStore(db_manager)
        self._clock = clock

    def limit_for(self, plan: Plan) -> QuotaLimit:
        if plan.tier is Tier.ELEVATED:
            return QuotaLimit(period="month", limit=self._elevated_monthly_limit)
        return QuotaLimit(period="week", limit=self._standard_weekly_limit)

    @staticmethod
    def _apply_rollover(account: QuotaAccount, today: date) -> bool:
        """Reset each counter whose anchor is behind the current period."""
        changed = False
        current_week = week_start(today)
        if account.week_start_date < current_week:
            account.usage_this_week = 0
            account.week_start_date = current_week
            changed = True

        current_month = month_start(today)
        if account.month_start_date < current_month:
            account.usage_this_month = 0
            account.month_start_date = current_month
            changed = True
        return changed

    def _select_account(self, session: Session, owner_id: str) -> QuotaAccount | None:
        stmt = select(QuotaAccount).where(QuotaAccount.owner_id == owner_id)
        if self._db.supports_row_locks:
            stmt = stmt.with_for_update()
        return session.scalars(stmt).first()

    def _lock_account(self, session: Session, owner_id: str, plan: Plan | None = None) -> QuotaAccount:
        """Load (creating if needed) and lock the owner's row, then roll it over."""
        today = self._clock().date()
        account = self._select_account(session, owner_id)
        if account is None:
            account = QuotaAccount(
                owner_id=owner_id,
                plan=plan or Plan.FREE,
                usage_this_week=0,
                week_start_date=week_start(today),
                usage_this_month=0,
                month_start_date=month_start(today),
                total_pages_processed=0,
            )
            try:
                with session.begin_nested():
                    session.add(account)
            except IntegrityError:
                # Created by a concurrent request between our select and insert
                account = self._select_account(session, owner_id)
                if account is None:
                    raise
            else:
                logger.info(f"Created quota account for {owner_id} ({account.plan.value})")

        if self._apply_rollover(account, today):
            logger.info(f"Rolled over quota counters for {owner_id}")
        return account

    def get_account(
        self,
        owner_id: str,
        plan: Plan | None = None,
        session: Session | None = None,
    ) -> QuotaAccount:
        """Return the owner's account after lazy creation and rollover."""
        with self._db.session_scope(session) as s:
            account = self._lock_account(s, owner_id, plan)
            s.flush()
            return account

    def set_plan(self, owner_id: str, plan: Plan, session: Session | None = None) -> QuotaAccount:
        with self._db.session_scope(session) as s:
            account = self._lock_account(s, owner_id, plan)
            if account.plan is not plan:
                logger.info(f"Plan for {owner_id} changed {account.plan.value} -> {plan.value}")
                account.plan = plan
            s.flush()
            return account

    def record_usage(
        self,
        owner_id: str,
        page_count: int,
        session: Session | None = None,
    ) -> UsageSnapshot:
        """
        Add ``page_count`` to every counter of the owner's account.

        Raises:
            ValidationError: If page_count is negative
            PersistenceError: If the store fails
        """
        if page_count < 0:
            raise ValidationError(f"page_count must be non-negative, got {page_count}")

        with self._db.session_scope(session) as s:
            account = self._lock_account(s, owner_id)
            account.usage_this_week += page_count
            account.usage_this_month += page_count
            account.total_pages_processed += page_count
            account.last_processed_at = self._clock()
            s.flush()
            snapshot = UsageSnapshot(
                weekly_usage=account.usage_this_week,
                monthly_usage=account.usage_this_month,
                lifetime_total=account.total_pages_processed,
            )

        logger.debug(f"Recorded {page_count} pages for {owner_id}: {snapshot}")
        return snapshot

    def check(
        self,
        owner_id: str,
        plan: Plan,
        page_count: int,
        session: Session | None = None,
    ) -> None:
        """
        Refuse work that would push the owner past their tier limit.

        Raises:
            QuotaExceeded: If current usage + page_count exceeds the limit
        """
        quota = self.limit_for(plan)
        with self._db.session_scope(session) as s:
            account = self._lock_account(s, owner_id, plan)
            if account.plan is not plan:
                logger.info(f"Plan for {owner_id} changed {account.plan.value} -> {plan.value}")
                account.plan = plan
            current = account.usage_this_month if quota.period == "month" else account.usage_this_week

        if current + page_count > quota.limit:
            logger.info(
                f"Quota exceeded for {owner_id}: {current} + {page_count} > {quota.limit} per {quota.period}"
            )
            raise QuotaExceeded(current=current, limit=quota.limit, requested=page_count, period=quota.period)

    def reconcile(self, owner_id: str, session: Session | None = None) -> UsageSnapshot:
        """
        Recompute counters from completed history and overwrite on mismatch.

        Weekly and monthly counters are replaced by the history sums for the
        current periods. The lifetime total only moves up, since history
        older than the retention window is no longer available to sum.
        """
        with self._db.session_scope(session) as s:
            account = self._lock_account(s, owner_id)
            week_from = datetime.combine(account.week_start_date, time.min)
            month_from = datetime.combine(account.month_start_date, time.min)

            weekly = self._history.completed_pages(owner_id, since=week_from, session=s)
            monthly = self._history.completed_pages(owner_id, since=month_from, session=s)
            lifetime = self._history.completed_pages(owner_id, session=s)

            if (account.usage_this_week, account.usage_this_month) != (weekly, monthly):
                logger.warning(
                    f"Usage drift for {owner_id}: stored week={account.usage_this_week} "
                    f"month={account.usage_this_month}, history week={weekly} month={monthly}"
                )
                account.usage_this_week = weekly
                account.usage_this_month = monthly
            if lifetime > account.total_pages_processed:
                logger.warning(
                    f"Lifetime drift for {owner_id}: stored {account.total_pages_processed}, history {lifetime}"
                )
                account.total_pages_processed = lifetime
            s.flush()

            return UsageSnapshot(
                weekly_usage=account.usage_this_week,
                monthly_usage=account.usage_this_month,
                lifetime_total=account.total_pages_processed,
            )

    def get_stats(self, owner_id: str) -> dict[str, Any]:
        """Reconciled usage plus the limit that applies to the owner's plan."""
        with self._db.get_session() as session:
            snapshot = self.reconcile(owner_id, session=session)
            account = self._lock_account(session, owner_id)
            quota = self.limit_for(account.plan)
            current = snapshot.monthly_usage if quota.period == "month" else snapshot.weekly_usage
            return {
                "owner_id": owner_id,
                "plan": account.plan.value,
                "tier": account.plan.tier.value,
                "weekly_usage": snapshot.weekly_usage,
                "monthly_usage": snapshot.monthly_usage,
                "lifetime_total": snapshot.lifetime_total,
                "limit": quota.limit,
                "limit_period": quota.period,
                "remaining": max(0, quota.limit - current),
                "week_start_date": account.week_start_date.isoformat(),
                "month_start_date": account.month_start_date.isoformat(),
                "last_processed_at": (
                    account.last_processed_at.isoformat() if account.last_processed_at else None
                ),
            }

    def rollover_idle_accounts(self) -> int:
        """Apply the rollover rule to every account with a stale anchor."""
        today = self._clock().date()
        with self._db.get_session() as session:
            stmt = select(QuotaAccount).where(
                or_(
                    QuotaAccount.week_start_date < week_start(today),
                    QuotaAccount.month_start_date < month_start(today),
                )
            )
            if self._db.supports_row_locks:
                stmt = stmt.with_for_update(skip_locked=True)
            rolled = sum(1 for account in session.scalars(stmt) if self._apply_rollover(account, today))

        if rolled:
            logger.info(f"Rolled over {rolled} idle quota accounts")
        return rolled
