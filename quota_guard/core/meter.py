"""
Serialised accounting for one user.

UsageMeter owns the user's ledger and is the only writer to it. Every
mutation runs under one asyncio lock: rollover, delta application and
the persistence write form a single critical section, queued behind any
mutation already in flight. Updates are made on a copy that is swapped
in whole, so readers never see a half-applied change.

Time only moves forward inside a meter: a commit stamped earlier than
one already processed is accounted at the latest time seen, so a late
commit can never trigger a second rollover of a period already reset.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from quota_guard.storage.repository import PersistenceError, ProfileStore

from .admission import AdmissionDecision, AdmissionDenied, can_admit, check_model
from .alerts import AlertEngine, AlertEvaluation
from .catalog import QUOTA_CATALOG, QuotaCatalog, QuotaSet, Tier, MOST_RESTRICTIVE_TIER
from .clock import Clock, SystemClock, ensure_utc
from .events import EventChannel, UsageUpdated
from .ledger import RolloverResult, UsageDelta, UsageLedger

logger = logging.getLogger(__name__)


class UsageMeter:
    """Ledger, quota and persistence for one user.

    Display reads through the ``ledger`` property are lock-free and may be
    slightly stale. Everything that changes the ledger goes through the
    lock.
    """

    def __init__(
        self,
        user_id: str,
        store: ProfileStore,
        ledger: UsageLedger,
        tier: Tier = MOST_RESTRICTIVE_TIER,
        catalog: QuotaCatalog = QUOTA_CATALOG,
        clock: Optional[Clock] = None,
        alerts: Optional[AlertEngine] = None,
        events: Optional[EventChannel] = None,
        max_retries: int = 3,
        retry_delay: float = 0.1,
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self.user_id = user_id
        self.store = store
        self.catalog = catalog
        self.clock = clock or SystemClock()
        self.events = events or EventChannel()
        self.alerts = alerts if alerts is not None else AlertEngine(user_id, events=self.events)
        self.max_retries = max_retries
        self.retry_delay = retry_delay

        self._ledger = ledger
        self._tier = tier
        self._quota = catalog.get_quota(tier)
        self._lock = asyncio.Lock()
        self._dirty = False
        self._high_water: Optional[datetime] = None

    @classmethod
    async def open(
        cls,
        user_id: str,
        store: ProfileStore,
        catalog: QuotaCatalog = QUOTA_CATALOG,
        clock: Optional[Clock] = None,
        **kwargs,
    ) -> "UsageMeter":
        """Load a user's tier and ledger from the store.

        A user without a stored ledger gets a zeroed one starting now.
        A missing or unknown tier resolves to the most restrictive tier.
        """
        clock = clock or SystemClock()
        tier_name = await store.get_tier(user_id)
        tier = Tier.parse(tier_name)
        if tier is None:
            if tier_name is not None:
                logger.warning(
                    "User %s has unknown tier %r, using %s",
                    user_id, tier_name, MOST_RESTRICTIVE_TIER.value,
                )
            tier = MOST_RESTRICTIVE_TIER

        ledger = await store.load_ledger(user_id)
        if ledger is None:
            ledger = UsageLedger.create(clock.now())
            logger.info("Created new usage ledger for user %s", user_id)

        return cls(user_id, store, ledger, tier=tier, catalog=catalog, clock=clock, **kwargs)

    @property
    def ledger(self) -> UsageLedger:
        return self._ledger

    @property
    def tier(self) -> Tier:
        return self._tier

    @property
    def quota(self) -> QuotaSet:
        return self._quota

    @property
    def dirty(self) -> bool:
        """True when in-memory usage has not reached the store yet."""
        return self._dirty

    async def commit(self, delta: UsageDelta, now: Optional[datetime] = None) -> UsageLedger:
        """Fold a delta into the ledger and persist it.

        Args:
            delta: Usage to add
            now: Time of the commit, defaults to the clock

        Returns:
            The updated ledger

        Raises:
            PersistenceError: If the write failed after retries. The
                delta is still counted in memory and flush() can retry.
        """
        error: Optional[PersistenceError] = None
        async with self._lock:
            now = self._advance(now)
            updated = self._ledger.copy()
            updated.check_and_rollover(now)
            updated.apply_delta(delta)
            self._ledger = updated
            self._dirty = True

            logger.info(
                "Committed usage for user %s: %d tokens, %.6f cost, %d requests (%s)",
                self.user_id, delta.tokens, delta.cost, delta.requests, delta.model_id,
            )
            try:
                await self._persist()
            except PersistenceError as e:
                error = e

        # Usage counted in memory still drives alerts
        self._after_commit(updated, now)
        if error is not None:
            raise error
        return updated

    async def refresh(self, now: Optional[datetime] = None) -> RolloverResult:
        """Apply any due rollover and persist it if something changed."""
        async with self._lock:
            return await self._rollover(now)

    async def admit(
        self,
        model_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AdmissionDecision:
        """Decide whether a new request may proceed.

        Rollover is applied first so counters from an ended period never
        block a request. Quota limits are checked before model access.
        """
        async with self._lock:
            now = self._advance(now)
            try:
                await self._rollover(now)
            except PersistenceError:
                # The rolled-over ledger is already in memory
                logger.warning("Could not persist rollover for user %s", self.user_id)
            ledger = self._ledger

        decision = can_admit(ledger, self._quota, now)
        if decision.allowed and model_id is not None:
            model_decision = check_model(self._tier, self._quota, model_id)
            if not model_decision.allowed:
                return model_decision
        return decision

    async def require_admission(
        self,
        model_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AdmissionDecision:
        """Check admission and raise if the request is refused.

        Raises:
            AdmissionDenied: If the request may not proceed
        """
        decision = await self.admit(model_id=model_id, now=now)
        if not decision.allowed:
            raise AdmissionDenied(decision)
        return decision

    async def change_tier(self, tier: Tier) -> QuotaSet:
        """Switch the user to another tier's quota set."""
        async with self._lock:
            old_tier = self._tier
            await self.store.set_tier(self.user_id, tier)
            self._tier = tier
            self._quota = self.catalog.get_quota(tier)
        logger.info("User %s moved from %s to %s", self.user_id, old_tier.value, tier.value)
        return self._quota

    async def flush(self) -> bool:
        """Retry persisting unsaved usage. Returns True if anything was written."""
        async with self._lock:
            if not self._dirty:
                return False
            await self._persist()
            return True

    async def _rollover(self, now: Optional[datetime]) -> RolloverResult:
        now = self._advance(now)
        updated = self._ledger.copy()
        result = updated.check_and_rollover(now)
        if result.any:
            self._ledger = updated
            self._dirty = True
            logger.info("Usage periods reset for user %s: %s", self.user_id, result)
            await self._persist()
        return result

    def _advance(self, now: Optional[datetime]) -> datetime:
        """Resolve the effective time of a mutation, never earlier than the last one."""
        now = ensure_utc(now) if now is not None else self.clock.now()
        if self._high_water is not None and now < self._high_water:
            return self._high_water
        self._high_water = now
        return now

    async def _persist(self) -> None:
        """Write the ledger, retrying a bounded number of times."""
        ledger = self._ledger
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                await self.store.save_ledger(self.user_id, ledger)
                self._dirty = False
                return
            except Exception as e:
                last_error = e
                logger.warning(
                    "Saving ledger for user %s failed (attempt %d/%d): %s",
                    self.user_id, attempt, self.max_retries, e,
                )
                if attempt < self.max_retries:
                    await asyncio.sleep(self.retry_delay)

        logger.error("Giving up saving ledger for user %s; usage kept in memory", self.user_id)
        raise PersistenceError(
            f"Could not persist ledger for user {self.user_id} after {self.max_retries} attempts"
        ) from last_error

    def _after_commit(self, ledger: UsageLedger, now: datetime) -> AlertEvaluation:
        evaluation = self.alerts.evaluate(ledger, self._quota, now)
        self.events.publish(UsageUpdated(user_id=self.user_id, ledger=ledger))
        return evaluation
