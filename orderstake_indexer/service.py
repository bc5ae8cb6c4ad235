import asyncio
import logging
from typing import Any, Dict, List, Optional, Type

from .collectibles import CollectiblesEngine
from .config import IndexerConfig
from .connection import ConnectionManager, wait_or_stop
from .engine import IndexingEngine
from .errors import ChainConnectionError, NetworkMismatchError
from .heads import HeadWatcher
from .staking import StakingEngine
from .store import RecordStore

log = logging.getLogger(__name__)

ENGINES: Dict[str, Type[IndexingEngine]] = {
    StakingEngine.name: StakingEngine,
    CollectiblesEngine.name: CollectiblesEngine,
}


class IndexerService:
    """Owns the shared connection and store and runs one engine per domain."""

    def __init__(
        self,
        config: IndexerConfig,
        connection: Optional[ConnectionManager] = None,
        store: Optional[RecordStore] = None,
    ):
        self.config = config
        self.connection = connection or ConnectionManager(config)
        self.store = store or RecordStore(config.data_dir)
        self.stop_event = asyncio.Event()
        self.fatal_error: Optional[NetworkMismatchError] = None
        self.engines: List[IndexingEngine] = [
            ENGINES[name](self.connection, self.store, config, self.stop_event) for name in config.engines
        ]

    async def start(self) -> None:
        await self.connection.connect()
        self.connection.load_bindings()

    def stop(self) -> None:
        if not self.stop_event.is_set():
            log.info("Shutdown requested")
        self.stop_event.set()

    async def backfill(self) -> Dict[str, Optional[int]]:
        """One-time mode: rehydrate and backfill every engine, then return."""
        reached = {}
        for engine in self.engines:
            engine.rehydrate()
            await engine.restore_projections()
            reached[engine.name] = await engine.index_past_events()
        return reached

    async def run(self, once: bool = False) -> None:
        await self.start()
        if once:
            await self.backfill()
            self.log_stats()
            return

        aux = [
            asyncio.ensure_future(self._watch_health()),
            asyncio.ensure_future(self._monitor(self.config.status_interval, self.log_status)),
            asyncio.ensure_future(self._monitor(self.config.stats_interval, self.log_stats)),
        ]
        if self.config.rpc_ws_url:
            watcher = HeadWatcher(self.config.rpc_ws_url, self.connection)
            aux.append(asyncio.ensure_future(watcher.run(self.stop_event)))

        log.info("Starting %d engine(s): %s", len(self.engines), ", ".join(e.name for e in self.engines))
        try:
            await asyncio.gather(*(self._run_engine(engine) for engine in self.engines))
        finally:
            self.stop_event.set()
            for task in aux:
                task.cancel()
            await asyncio.gather(*aux, return_exceptions=True)
            self.log_stats()
            log.info("Indexer stopped")
        if self.fatal_error is not None:
            raise self.fatal_error

    async def _run_engine(self, engine: IndexingEngine) -> None:
        try:
            await engine.run()
        except NetworkMismatchError:
            self.stop()
            raise

    async def _watch_health(self) -> None:
        try:
            await self.connection.health_check_loop(self.stop_event)
        except NetworkMismatchError as exc:
            # reconnected to another chain; halt everything
            log.error("%s", exc)
            self.fatal_error = exc
            self.stop()

    async def _monitor(self, interval: float, report: Any) -> None:
        while not await wait_or_stop(self.stop_event, interval):
            try:
                result = report()
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                log.exception("Periodic report failed")

    async def log_status(self) -> None:
        try:
            head: Any = await self.connection.current_block_height()
        except ChainConnectionError:
            head = "unavailable"
        log.info("Status: current block %s", head)
        for engine in self.engines:
            log.info("Status %s: %s", engine.name, engine.status())

    def log_stats(self) -> Dict[str, Dict[str, Any]]:
        stats = self.store.stats()
        total = sum(entry["record_count"] for entry in stats.values())
        log.info("Storage: %d records across %d streams", total, len(stats))
        for stream, entry in stats.items():
            log.info(
                "  %s: %d records, checkpoint %s",
                stream,
                entry["record_count"],
                entry["checkpoint"],
            )
        return stats
