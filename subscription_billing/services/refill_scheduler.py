"""
Refill Scheduler - Monthly token top-ups for yearly subscribers.

A yearly subscription is paid once a year but funded month by month. Once a
day the scheduler scans yearly balances whose billing day has been reached
this month and grants one month of credits to each that has not been granted
for the current UTC (month, year).

Guarantees:
- at most one grant per record per calendar month (compare-and-set UPDATE on
  the refill marker, so concurrent or repeated sweeps cannot double grant)
- no grant in the subscription's start month (funded by the paid invoice)
- lapsed entitlement disables auto-refill
- one record's failure never aborts the sweep
"""

import asyncio
import time
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum

from structlog import get_logger

from subscription_billing.config import Settings
from subscription_billing.db.session import get_session
from subscription_billing.models.api import ENTITLED_STATUSES
from subscription_billing.models.domain import AccountSnapshot, BalanceRecord, RefillSweepResult
from subscription_billing.observability.metrics import metrics
from subscription_billing.observability.tracing import trace_operation
from subscription_billing.services.account_store import AccountRepository, AccountStore
from subscription_billing.services.balance_store import BalanceRepository, BalanceStore

logger = get_logger(__name__)


class RefillDecision(str, Enum):
    """What a sweep does with one candidate record."""

    GRANT = "grant"
    ALREADY_REFILLED = "already_refilled"
    NO_ACCOUNT = "no_account"
    ENTITLEMENT_LAPSED = "entitlement_lapsed"
    START_MONTH = "start_month"
    MISCONFIGURED = "misconfigured"


@dataclass(frozen=True)
class RefillStores:
    """Stores used for one unit of refill work."""

    accounts: AccountRepository
    balances: BalanceRepository


StoreFactory = Callable[[], AbstractAsyncContextManager[RefillStores]]


@asynccontextmanager
async def sql_refill_stores() -> AsyncIterator[RefillStores]:
    """Stores backed by a fresh database session."""
    async with get_session() as session:
        yield RefillStores(accounts=AccountStore(session), balances=BalanceStore(session))


def _utc_now() -> datetime:
    return datetime.now(UTC)


def evaluate_refill(
    balance: BalanceRecord, account: AccountSnapshot | None, now: datetime
) -> RefillDecision:
    """
    Decide the fate of one candidate record at `now` (UTC).

    Checks run in order: already refilled this month, account missing,
    entitlement lapsed, still in the start month, non-positive refill amount.
    """
    if balance.last_refill_month == now.month and balance.last_refill_year == now.year:
        return RefillDecision.ALREADY_REFILLED

    if account is None:
        return RefillDecision.NO_ACCOUNT

    if account.subscription_status not in ENTITLED_STATUSES:
        return RefillDecision.ENTITLEMENT_LAPSED
    period_end = account.subscription_period_end
    if period_end is not None and period_end < now:
        return RefillDecision.ENTITLEMENT_LAPSED

    start = balance.subscription_start_date
    if start is not None:
        start_utc = start.astimezone(UTC)
        if (now.year, now.month) <= (start_utc.year, start_utc.month):
            return RefillDecision.START_MONTH

    if balance.refill_amount <= 0:
        return RefillDecision.MISCONFIGURED

    return RefillDecision.GRANT


def next_run_at(now: datetime, run_hour_utc: int) -> datetime:
    """Next daily run time strictly after `now`."""
    candidate = now.replace(hour=run_hour_utc, minute=0, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


class RefillScheduler:
    """
    Owns the daily refill sweep and its lifecycle.

    Usage:
        scheduler = RefillScheduler(settings)
        scheduler.start()           # daily at REFILL_RUN_HOUR_UTC
        await scheduler.run_once()  # one sweep now
        await scheduler.stop()
    """

    def __init__(
        self,
        settings: Settings,
        stores: StoreFactory = sql_refill_stores,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.settings = settings
        self.stores = stores
        self.clock = clock
        self._lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        """Whether a sweep is in progress."""
        return self._lock.locked()

    def start(self) -> None:
        """Start the daily sweep loop on the running event loop."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run_daily(), name="refill-scheduler")
        logger.info("refill_scheduler_started", run_hour_utc=self.settings.refill_run_hour_utc)

    async def stop(self) -> None:
        """Cancel the daily loop and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("refill_scheduler_stopped")

    async def _run_daily(self) -> None:
        while True:
            now = self.clock()
            run_at = next_run_at(now, self.settings.refill_run_hour_utc)
            await asyncio.sleep((run_at - now).total_seconds())
            try:
                await self.run_once()
            except Exception:
                logger.exception("refill_sweep_failed")
                metrics.record_error("RefillSweepError", "refill_sweep")

    async def trigger_manual_refill(self) -> RefillSweepResult:
        """Run a sweep on operator request."""
        logger.info("refill_manual_trigger")
        return await self.run_once()

    async def run_once(self, now: datetime | None = None) -> RefillSweepResult:
        """
        Run one sweep.

        Returns immediately with already_running=True if a sweep is in progress.
        """
        if self._lock.locked():
            logger.warning("refill_sweep_already_running")
            result = RefillSweepResult(already_running=True)
            metrics.record_refill_sweep(result, 0.0)
            return result

        async with self._lock:
            started = time.monotonic()
            sweep_time = (now or self.clock()).astimezone(UTC)
            with trace_operation("refill_sweep", sweep_time=sweep_time.isoformat()):
                result = await self._sweep(sweep_time)
            duration = time.monotonic() - started
            metrics.record_refill_sweep(result, duration)
            logger.info(
                "refill_sweep_completed",
                candidates=result.candidates,
                granted=result.granted,
                skipped=result.skipped,
                disabled=result.disabled,
                errored=result.errored,
                duration_seconds=round(duration, 3),
            )
            return result

    async def _sweep(self, now: datetime) -> RefillSweepResult:
        async with self.stores() as stores:
            candidates = await stores.balances.list_refill_candidates(now.day)

        logger.info("refill_sweep_started", candidates=len(candidates), day=now.day)

        granted = skipped = disabled = errored = 0
        for balance in candidates:
            try:
                decision = await asyncio.wait_for(
                    self._process_record(balance, now),
                    timeout=self.settings.refill_record_timeout_seconds,
                )
            except TimeoutError:
                errored += 1
                logger.error("refill_record_timeout", user_id=str(balance.user_id))
                metrics.record_error("TimeoutError", "refill_record")
                continue
            except Exception as exc:
                errored += 1
                logger.exception("refill_record_failed", user_id=str(balance.user_id))
                metrics.record_error(type(exc).__name__, "refill_record")
                continue

            if decision is RefillDecision.GRANT:
                granted += 1
            elif decision is RefillDecision.ENTITLEMENT_LAPSED:
                disabled += 1
            else:
                skipped += 1

        return RefillSweepResult(
            candidates=len(candidates),
            granted=granted,
            skipped=skipped,
            disabled=disabled,
            errored=errored,
        )

    async def _process_record(self, balance: BalanceRecord, now: datetime) -> RefillDecision:
        """
        Apply the decision for one record.

        Returns GRANT only if this sweep's compare-and-set actually granted;
        a lost race reports ALREADY_REFILLED.
        """
        user_id = str(balance.user_id)
        async with self.stores() as stores:
            account = await stores.accounts.get(balance.user_id)
            decision = evaluate_refill(balance, account, now)

            if decision is RefillDecision.NO_ACCOUNT:
                logger.warning("refill_account_missing", user_id=user_id)
            elif decision is RefillDecision.ENTITLEMENT_LAPSED:
                await stores.balances.disable_auto_refill(balance.user_id)
                logger.info(
                    "refill_disabled_entitlement_lapsed",
                    user_id=user_id,
                    status=account.subscription_status if account else None,
                )
            elif decision is RefillDecision.MISCONFIGURED:
                logger.warning(
                    "refill_amount_misconfigured",
                    user_id=user_id,
                    refill_amount=balance.refill_amount,
                )
            elif decision is RefillDecision.GRANT:
                if not await stores.balances.grant_monthly_refill(
                    balance.user_id, balance.refill_amount, now
                ):
                    logger.info("refill_lost_race", user_id=user_id)
                    return RefillDecision.ALREADY_REFILLED
                logger.info(
                    "refill_granted",
                    user_id=user_id,
                    amount=balance.refill_amount,
                    month=now.month,
                    year=now.year,
                )
            else:
                logger.debug("refill_skipped", user_id=user_id, reason=decision.value)

            return decision
