"""Keeper service: wires the components together and owns their lifecycle."""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import List, Optional

from aiohttp import web

from keeper.config import KeeperConfig
from keeper.discovery import CompositeMarketSource, HttpMarketSource, MarketSource, StaticMarketSource
from keeper.events import Event, EventBus, EventType
from keeper.health_server import start_health_server
from keeper.oracle import DexScreenerFeed, GeckoTerminalFeed, PriceSourceResolver
from keeper.price_stream import PriceStreamEngine, U64PriceDecoder
from keeper.registry import MarketRegistry
from keeper.scheduler import CrankScheduler
from keeper.solana import TransactionSubmitter, load_keypair

logger = logging.getLogger(__name__)


def build_market_source(config: KeeperConfig) -> MarketSource:
    sources: List[MarketSource] = []
    if config.markets_file or config.static_markets:
        sources.append(StaticMarketSource(config.markets_file or None, config.static_markets))
    if config.markets_api_url:
        sources.append(HttpMarketSource(config.markets_api_url, timeout=config.price.api_timeout))
    if len(sources) == 1:
        return sources[0]
    return CompositeMarketSource(sources)


class KeeperService:
    """Composition root for the keeper."""

    def __init__(self, config: KeeperConfig, bus: Optional[EventBus] = None):
        self.config = config
        self.bus = bus or EventBus()
        self.signer = load_keypair(config.crank_keypair)

        self.registry = MarketRegistry(
            failure_threshold=config.scheduler.failure_threshold,
            missing_discovery_limit=config.scheduler.missing_discovery_limit,
        )
        self.resolver = PriceSourceResolver(
            [
                DexScreenerFeed(base_url=config.price.dexscreener_url),
                GeckoTerminalFeed(base_url=config.price.geckoterminal_url),
            ],
            timeout=config.price.api_timeout,
            cache_max_age_ms=config.price.cache_max_age_ms,
            max_deviation_pct=config.price.max_deviation_pct,
        )
        sub = config.submitter
        self.submitter = TransactionSubmitter(
            config.rpc_url,
            max_attempts=sub.max_attempts,
            base_delay=sub.base_delay,
            max_delay=sub.max_delay,
            replay_ttl=sub.replay_ttl,
            compute_unit_price=sub.compute_unit_price,
            compute_unit_limit=sub.compute_unit_limit,
            rpc_timeout=sub.rpc_timeout,
            confirm_timeout=sub.confirm_timeout,
        )
        self.market_source = build_market_source(config)
        sched = config.scheduler
        self.scheduler = CrankScheduler(
            self.registry,
            self.submitter,
            self.resolver,
            self.market_source,
            self.signer,
            self.bus,
            config.program_ids,
            crank_interval=sched.crank_interval,
            inactive_crank_interval=sched.inactive_crank_interval,
            discovery_interval=sched.discovery_interval,
            batch_size=sched.batch_size,
            batch_delay=sched.batch_delay,
        )

        self.stream: Optional[PriceStreamEngine] = None
        if config.stream.enabled and config.stream.price_offset is not None:
            self.stream = PriceStreamEngine(
                config.ws_url,
                self.bus,
                U64PriceDecoder(config.stream.price_offset),
                max_reconnect_attempts=config.stream.max_reconnect_attempts,
                base_delay=config.stream.base_delay,
                max_delay=config.stream.max_delay,
                history_size=config.stream.history_size,
                heartbeat=config.stream.heartbeat,
            )
            # Follow the registry: stream every market the scheduler tracks
            self.bus.subscribe(EventType.MARKET_DISCOVERED, self._on_market_discovered)
            self.bus.subscribe(EventType.MARKET_REMOVED, self._on_market_removed)
        elif config.stream.enabled:
            logger.info("Price stream disabled: KEEPER_STREAM_PRICE_OFFSET not set")

        self._health_runner: Optional[web.AppRunner] = None
        self._stop_event = asyncio.Event()
        self._started = False

    async def _on_market_discovered(self, event: Event) -> None:
        await self.stream.subscribe_to_slab(event.data["market_id"])

    async def _on_market_removed(self, event: Event) -> None:
        await self.stream.unsubscribe_from_slab(event.data["market_id"])

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        logger.info(
            f"Keeper starting: signer={str(self.signer.pubkey())[:8]}... "
            f"programs={len(self.config.program_ids)} rpc={self.config.rpc_url}"
        )
        if self.stream is not None:
            await self.stream.start()
        await self.scheduler.start()
        if self.config.health.enabled:
            self._health_runner = await start_health_server(
                self.scheduler,
                self.stream,
                host=self.config.health.host,
                port=self.config.health.port,
                api_key=self.config.health.api_key,
            )

    async def stop(self) -> None:
        """Stop every component. Safe to call more than once."""
        self._stop_event.set()
        if not self._started:
            return
        self._started = False
        logger.info("Keeper stopping")

        await self.scheduler.stop()
        if self.stream is not None:
            await self.stream.stop()
        if self._health_runner is not None:
            await self._health_runner.cleanup()
            self._health_runner = None
        await self.submitter.close()
        await self.resolver.close()
        await self.market_source.close()
        logger.info("Keeper stopped")

    async def run_once(self) -> dict:
        """Discover and crank a single cycle, then return its tally."""
        await self.scheduler.discover()
        result = await self.scheduler.crank_all()
        await self.submitter.close()
        await self.resolver.close()
        await self.market_source.close()
        return result.to_dict()

    async def run_forever(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._stop_event.set)
            except NotImplementedError:
                # Windows event loops have no signal handler support
                pass

        await self.start()
        try:
            await self._stop_event.wait()
        finally:
            await self.stop()
