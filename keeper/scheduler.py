"""
Crank scheduler.

Each tick moves through ``IDLE -> DISCOVERING -> CRANKING -> IDLE``.
Discovery runs only when its own interval has elapsed. Cranking walks the
registry in small concurrent batches; every market is isolated so one
failure never aborts the batch or the cycle.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from solders.instruction import Instruction
from solders.keypair import Keypair

from keeper.abi import build_keeper_crank_instruction, build_push_oracle_price_instruction
from keeper.discovery import MarketSource
from keeper.errors import DuplicateSubmissionError, MarketConfigError, classify_error
from keeper.events import EventBus, EventType
from keeper.logging_config import MarketContext, new_cycle_id
from keeper.models import CrankOutcome, CycleResult, MarketConfig, MarketEntry, OracleMode, PriceCacheEntry, PriceSource
from keeper.oracle import PriceSourceResolver
from keeper.registry import MarketRegistry, ReconcileReport
from keeper.solana import TransactionSubmitter

logger = logging.getLogger(__name__)

# Never turned into a per-market failure
_UNISOLATED = (asyncio.CancelledError, KeyboardInterrupt, SystemExit)


class SchedulerState(Enum):
    IDLE = "idle"
    DISCOVERING = "discovering"
    CRANKING = "cranking"
    STOPPED = "stopped"


_TRANSITIONS = {
    SchedulerState.IDLE: {SchedulerState.DISCOVERING, SchedulerState.CRANKING, SchedulerState.STOPPED},
    SchedulerState.DISCOVERING: {SchedulerState.CRANKING, SchedulerState.IDLE, SchedulerState.STOPPED},
    SchedulerState.CRANKING: {SchedulerState.IDLE, SchedulerState.STOPPED},
    SchedulerState.STOPPED: {SchedulerState.IDLE},
}


class CrankScheduler:
    """Periodically discovers markets and cranks the ones that are due."""

    def __init__(
        self,
        registry: MarketRegistry,
        submitter: TransactionSubmitter,
        resolver: PriceSourceResolver,
        market_source: MarketSource,
        signer: Keypair,
        bus: EventBus,
        program_ids: Sequence[str],
        *,
        crank_interval: float = 30.0,
        inactive_crank_interval: float = 300.0,
        discovery_interval: float = 300.0,
        batch_size: int = 3,
        batch_delay: float = 1.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if not program_ids:
            raise ValueError("At least one program id is required")
        self.registry = registry
        self.submitter = submitter
        self.resolver = resolver
        self.market_source = market_source
        self.signer = signer
        self.bus = bus
        self.program_ids = list(program_ids)
        self.crank_interval = crank_interval
        self.inactive_crank_interval = inactive_crank_interval
        self.discovery_interval = discovery_interval
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self._clock = clock
        self._sleep = sleep

        self._state = SchedulerState.IDLE
        self._running = False
        self._generation = 0
        self._task: Optional[asyncio.Task] = None
        self._cycle_lock = asyncio.Lock()
        self._in_flight: set = set()
        self._non_authority_logged: set = set()
        self._last_discovery: Optional[float] = None
        self._last_cycle_result: Optional[CycleResult] = None
        self._cycle_count = 0

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._running

    def _transition(self, new_state: SchedulerState) -> bool:
        if new_state is self._state:
            return True
        if new_state not in _TRANSITIONS[self._state]:
            logger.debug(f"Ignoring scheduler transition {self._state.value} -> {new_state.value}")
            return False
        self._state = new_state
        return True

    def _discovery_due(self) -> bool:
        if self._last_discovery is None:
            return True
        return self._clock() - self._last_discovery >= self.discovery_interval

    def _is_due(self, entry: MarketEntry, now: float) -> bool:
        """Due once the market's interval has elapsed, within half a tick."""
        if entry.last_crank_timestamp is None:
            return True
        interval = self.crank_interval if entry.is_active else self.inactive_crank_interval
        return now - entry.last_crank_timestamp + self.crank_interval / 2 >= interval

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._state = SchedulerState.IDLE
        logger.info(
            f"Crank scheduler starting: interval={self.crank_interval}s "
            f"inactive={self.inactive_crank_interval}s batch={self.batch_size}"
        )
        self._task = asyncio.create_task(self._run_loop())
        self._task.add_done_callback(self._handle_task_exception)

    async def stop(self) -> None:
        """Stop the loop. Results of cranks still in flight are discarded."""
        self._running = False
        self._generation += 1
        self._transition(SchedulerState.STOPPED)

        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                logger.debug("Scheduler task cancelled")
        self._task = None
        logger.info("Crank scheduler stopped")

    def _handle_task_exception(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(f"Scheduler loop crashed: {exc}", exc_info=exc)

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Crank cycle failed: {e}", exc_info=True)
            await self._sleep(self.crank_interval)

    async def tick(self) -> CycleResult:
        """One full cycle: discovery when due, then crank everything due."""
        async with self._cycle_lock:
            if self._discovery_due():
                await self._discover()
            return await self._crank_all()

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def discover(self) -> Optional[ReconcileReport]:
        async with self._cycle_lock:
            return await self._discover()

    async def _discover(self) -> Optional[ReconcileReport]:
        if not self._transition(SchedulerState.DISCOVERING):
            return None
        try:
            return await self._discover_markets()
        finally:
            self._settle(SchedulerState.DISCOVERING)

    async def _discover_markets(self) -> Optional[ReconcileReport]:
        generation = self._generation
        discovered: Dict[str, MarketConfig] = {}
        try:
            for program_id in self.program_ids:
                for market in await self.market_source.discover_markets(program_id):
                    discovered[market.slab_address] = market
        except Exception as e:
            # Keep the previous set; a failed listing must not count as "missing"
            logger.error(f"Market discovery failed: {e}")
            await self.bus.emit(EventType.DISCOVERY_FAILED, {"error": classify_error(e).message}, source="scheduler")
            return None

        if generation != self._generation:
            return None

        self._last_discovery = self._clock()
        report = self.registry.reconcile(discovered)

        for market_id in report.added:
            config = discovered[market_id]
            await self.bus.emit(
                EventType.MARKET_DISCOVERED,
                {"market_id": market_id, "oracle_mode": config.oracle_mode.value},
                source="scheduler",
            )
        for market_id in report.removed:
            await self.bus.emit(EventType.MARKET_REMOVED, {"market_id": market_id}, source="scheduler")

        logger.info(
            f"Discovery: {len(discovered)} found, {len(report.added)} added, "
            f"{len(report.removed)} removed, {len(self.registry)} tracked"
        )
        return report

    def _settle(self, phase: SchedulerState) -> None:
        """Return to IDLE after ``phase`` however it ended, unless stopped meanwhile."""
        if self._state is phase:
            self._transition(SchedulerState.IDLE)

    # ------------------------------------------------------------------
    # Cranking
    # ------------------------------------------------------------------

    async def crank_all(self) -> CycleResult:
        async with self._cycle_lock:
            return await self._crank_all()

    async def _crank_all(self) -> CycleResult:
        result = CycleResult()
        if not self._transition(SchedulerState.CRANKING):
            return result

        try:
            completed = await self._crank_due(result)
        finally:
            self._settle(SchedulerState.CRANKING)
        if not completed:
            return result

        self._cycle_count += 1
        self._last_cycle_result = result
        logger.info(
            f"Crank cycle {self._cycle_count}: {result.success} ok, "
            f"{result.failed} failed, {result.skipped} skipped"
        )
        await self.bus.emit(EventType.CYCLE_COMPLETED, result.to_dict(), source="scheduler")
        return result

    async def _crank_due(self, result: CycleResult) -> bool:
        """Crank every due market into ``result``. False when stopped part way."""
        cycle_id = new_cycle_id()
        generation = self._generation
        now = self._clock()

        due: List[str] = []
        for entry in self.registry.all_entries():
            if entry.market_id in self._in_flight or not self._is_due(entry, now):
                result.record(entry.market_id, CrankOutcome.SKIPPED)
            else:
                due.append(entry.market_id)

        for start in range(0, len(due), self.batch_size):
            batch = due[start:start + self.batch_size]
            outcomes = await asyncio.gather(*(self._crank_isolated(m, cycle_id) for m in batch))
            for market_id, outcome in zip(batch, outcomes):
                result.record(market_id, outcome)
            if generation != self._generation:
                return False
            if start + self.batch_size < len(due):
                await self._sleep(self.batch_delay)
        return True

    async def _crank_isolated(self, market_id: str, cycle_id: Optional[str] = None) -> CrankOutcome:
        try:
            return await self._run_crank(market_id, cycle_id)
        except _UNISOLATED:
            raise
        except BaseException as e:
            logger.error(f"Unhandled error cranking {market_id[:8]}...: {e!r}", exc_info=True)
            return CrankOutcome.FAILED

    async def crank_market(self, market_id: str) -> bool:
        """Crank one market now. True when the crank landed."""
        outcome = await self._crank_isolated(market_id)
        return outcome is CrankOutcome.SUCCESS

    async def crank_market_outcome(self, market_id: str) -> CrankOutcome:
        return await self._crank_isolated(market_id)

    async def _run_crank(self, market_id: str, cycle_id: Optional[str]) -> CrankOutcome:
        if self._state is SchedulerState.STOPPED:
            return CrankOutcome.SKIPPED
        entry = self.registry.get(market_id)
        if entry is None:
            logger.warning(f"Crank requested for unknown market {market_id[:8]}...")
            return CrankOutcome.SKIPPED
        if market_id in self._in_flight:
            logger.debug(f"Crank already in flight for {market_id[:8]}...")
            return CrankOutcome.SKIPPED

        self._in_flight.add(market_id)
        generation = self._generation
        try:
            with MarketContext(market_id, cycle_id):
                try:
                    signature, price = await self._execute_crank(entry)
                except DuplicateSubmissionError as e:
                    await self.bus.emit(
                        EventType.CRANK_SKIPPED,
                        {"market_id": market_id, "reason": "duplicate", "signature": e.signature},
                        source="scheduler",
                    )
                    return CrankOutcome.SKIPPED
                except _UNISOLATED:
                    raise
                except BaseException as e:
                    if generation != self._generation:
                        logger.debug(f"Discarding failure for {market_id[:8]}... after stop")
                        return CrankOutcome.SKIPPED
                    await self._on_failure(market_id, e)
                    return CrankOutcome.FAILED

                if generation != self._generation:
                    logger.debug(f"Discarding result for {market_id[:8]}... after stop")
                    return CrankOutcome.SKIPPED
                await self._on_success(market_id, signature, price)
                return CrankOutcome.SUCCESS
        finally:
            self._in_flight.discard(market_id)

    async def _on_success(self, market_id: str, signature: str, price: Optional[PriceCacheEntry]) -> None:
        change = self.registry.record_result(market_id, True, now=self._clock())
        logger.info(f"Cranked {market_id[:8]}...: {signature[:16]}...")

        data = {"market_id": market_id, "signature": signature}
        if price is not None:
            data["price_e6"] = price.price_e6
            data["price_source"] = price.source.value
        await self.bus.emit(EventType.CRANK_SUCCESS, data, source="scheduler")

        if price is not None:
            await self.bus.emit(
                EventType.PRICE_UPDATED,
                {"market_id": market_id, "price_e6": price.price_e6, "source": price.source.value},
                source="scheduler",
            )
        if change.reactivated:
            await self.bus.emit(EventType.MARKET_REACTIVATED, {"market_id": market_id}, source="scheduler")

    async def _on_failure(self, market_id: str, error: BaseException) -> None:
        classified = classify_error(error)
        change = self.registry.record_result(market_id, False, error, now=self._clock())
        entry = self.registry.get(market_id)
        logger.error(f"Crank failed for {market_id[:8]}... [{classified.category.value}]: {classified.message}")

        await self.bus.emit(
            EventType.CRANK_FAILURE,
            {
                "market_id": market_id,
                "error": classified.message,
                "error_type": classified.error_type,
                "category": classified.category.value,
                "consecutive_failures": entry.consecutive_failures if entry else None,
            },
            source="scheduler",
        )
        if change.deactivated:
            await self.bus.emit(
                EventType.MARKET_DEACTIVATED,
                {"market_id": market_id, "consecutive_failures": entry.consecutive_failures if entry else None},
                source="scheduler",
            )

    def _config_for(self, entry: MarketEntry) -> MarketConfig:
        if entry.config is not None:
            return entry.config
        return MarketConfig(slab_address=entry.market_id, program_id=self.program_ids[0])

    async def _execute_crank(self, entry: MarketEntry):
        config = self._config_for(entry)
        payer = self.signer.pubkey()
        instructions: List[Instruction] = []
        price: Optional[PriceCacheEntry] = None

        if config.oracle_mode is OracleMode.ADMIN:
            oracle = config.slab_address
            price = await self._resolve_admin_price(config)
            if price is not None:
                instructions.append(build_push_oracle_price_instruction(
                    config.program_id, payer, config.slab_address, price.price_e6, int(self._clock()),
                ))
        else:
            if not config.oracle_account:
                raise MarketConfigError("External-oracle market has no oracle account", market_id=entry.market_id)
            oracle = config.oracle_account

        instructions.append(build_keeper_crank_instruction(config.program_id, payer, config.slab_address, oracle))
        signature = await self.submitter.submit(
            instructions, self.signer, market_id=entry.market_id, operation="crank"
        )
        return signature, price

    async def _resolve_admin_price(self, config: MarketConfig) -> Optional[PriceCacheEntry]:
        """Price to push before the crank, or None to crank without pushing."""
        slab = config.slab_address
        if config.oracle_authority and config.oracle_authority != str(self.signer.pubkey()):
            if slab not in self._non_authority_logged:
                self._non_authority_logged.add(slab)
                logger.info(
                    f"Not oracle authority for {slab[:8]}... "
                    f"(authority {config.oracle_authority[:8]}...), cranking without price push"
                )
            return None

        price = None
        if config.collateral_mint:
            price = await self.resolver.fetch_price(config.collateral_mint)

        if price is None and config.authority_price_e6 > 0:
            logger.info(f"No external price for {slab[:8]}..., using on-chain {config.authority_price_e6}")
            price = PriceCacheEntry(
                price_e6=config.authority_price_e6,
                fetched_at_ms=int(self._clock() * 1000),
                source=PriceSource.ON_CHAIN,
            )

        if price is None:
            logger.warning(f"No price source for {slab[:8]}..., cranking without price push")
            await self.bus.emit(
                EventType.PRICE_UNAVAILABLE,
                {"market_id": slab, "mint": config.collateral_mint},
                source="scheduler",
            )
        return price

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_status(self) -> Dict[str, dict]:
        return self.registry.snapshot()

    def get_last_cycle_result(self) -> Optional[Dict[str, int]]:
        if self._last_cycle_result is None:
            return None
        return self._last_cycle_result.to_dict()

    def get_stats(self) -> dict:
        return {
            "state": self._state.value,
            "running": self._running,
            "cycles": self._cycle_count,
            "markets": len(self.registry),
            "active_markets": len(self.registry.active_set()),
            "in_flight": len(self._in_flight),
            "last_discovery": self._last_discovery,
            "last_cycle": self.get_last_cycle_result(),
        }
