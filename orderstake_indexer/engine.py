import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from .config import IndexerConfig
from .connection import ContractHandle, ConnectionManager
from .errors import ChainConnectionError, NetworkMismatchError, QueryRangeError
from .normalize import DisplayRule, format_address, normalize_log, to_checksum
from .records import EventRecord
from .store import RecordStore

log = logging.getLogger(__name__)

BlockRange = Tuple[int, int]


class EngineState(enum.Enum):
    IDLE = "idle"
    BACKFILLING = "backfilling"
    POLLING = "polling"
    STOPPED = "stopped"


@dataclass(frozen=True)
class EventKind:
    """One event type an engine indexes, and the stream its records go to."""

    name: str
    stream: str
    display: Mapping[str, DisplayRule] = field(default_factory=dict)


def chunk_ranges(start: int, end: int, size: int) -> List[BlockRange]:
    """Split ``[start, end]`` into contiguous inclusive chunks of at most ``size`` blocks."""
    if size < 1:
        raise ValueError("chunk size must be positive")
    chunks = []
    current = start
    while current <= end:
        chunk_end = min(current + size - 1, end)
        chunks.append((current, chunk_end))
        current = chunk_end + 1
    return chunks


class IndexingEngine:
    """Backfill-then-poll indexer for one factory and the children it creates.

    Subclasses declare the factory binding, the shared child interface, the
    creation event (and which of its arguments carries the child address) and
    the event kinds to index. Each chunk runs two passes: factory events first,
    so newly created children are known, then every known child's events over
    the same chunk.
    """

    name = "engine"
    factory_contract = ""
    child_interface = ""
    creation_event = ""
    child_address_arg = ""
    child_label = "child"
    checkpoint_stream = ""
    factory_events: Tuple[EventKind, ...] = ()
    child_events: Tuple[EventKind, ...] = ()

    def __init__(
        self,
        connection: ConnectionManager,
        store: RecordStore,
        config: IndexerConfig,
        stop_event: Optional[asyncio.Event] = None,
    ):
        self.connection = connection
        self.store = store
        self.config = config
        self.start_block = config.start_block
        self.poll_interval = config.poll_interval
        self.chunk_delay = config.chunk_delay
        self.chunk_retries = max(config.chunk_retries, 0)
        self.retry_delay = config.retry_delay
        self._stop = stop_event or asyncio.Event()

        self.state = EngineState.IDLE
        self.known_entities: Set[str] = set()
        self.last_checked_block: Optional[int] = None
        self.failed_ranges: List[BlockRange] = []
        self._warned: Set[str] = set()

    # ----------------------------------------------------------------- setup

    @property
    def creation_kind(self) -> EventKind:
        for kind in self.factory_events:
            if kind.name == self.creation_event:
                return kind
        raise LookupError(f"{self.name}: creation event {self.creation_event} not declared")

    @property
    def streams(self) -> List[str]:
        names = {self.checkpoint_stream}
        names.update(kind.stream for kind in self.factory_events + self.child_events)
        return sorted(names)

    def rehydrate(self) -> int:
        """Repopulate the known children from recorded creation events."""
        records = self.store.query(self.creation_kind.stream, {"event_name": self.creation_event})
        before = len(self.known_entities)
        for record in records:
            address = (record.get("args") or {}).get(self.child_address_arg)
            if address:
                self.known_entities.add(to_checksum(address))
        loaded = len(self.known_entities) - before
        log.info("%s: loaded %d known %ss from storage", self.name, loaded, self.child_label)
        return loaded

    async def restore_projections(self) -> int:
        """Rebuild the snapshot of every recorded child that has none stored."""
        restored = 0
        for record in self.store.query(self.creation_kind.stream, {"event_name": self.creation_event}):
            address = (record.get("args") or {}).get(self.child_address_arg)
            if not address or self.store.get_projection(address) is not None:
                continue
            if await self.rebuild_projection(to_checksum(address), record):
                restored += 1
        if restored:
            log.info("%s: restored %d missing %s snapshot(s)", self.name, restored, self.child_label)
        return restored

    async def rebuild_projection(self, address: str, record: Mapping[str, Any]) -> bool:
        """Rebuild one child's snapshot from its creation record. No-op by default."""
        return False

    def stop(self) -> None:
        self._stop.set()

    def _warn_once(self, key: str, msg: str, *args: Any) -> None:
        if key in self._warned:
            return
        self._warned.add(key)
        log.warning(msg, *args)

    # ------------------------------------------------------------- lifecycle

    async def run(self) -> None:
        """Rehydrate, backfill to the head, then poll until stopped.

        Only NetworkMismatchError escapes. Any other backfill failure is logged
        and polling resumes from the stored checkpoint.
        """
        self.rehydrate()
        try:
            await self.restore_projections()
            await self.index_past_events()
        except NetworkMismatchError:
            raise
        except ChainConnectionError as exc:
            log.error("%s: backfill aborted: %s", self.name, exc)
        except Exception:
            log.exception("%s: backfill failed, continuing with polling", self.name)
        await self.poll_forever()

    async def index_past_events(self) -> Optional[int]:
        self.state = EngineState.BACKFILLING
        checkpoint = self.store.get_checkpoint(self.checkpoint_stream)
        start = checkpoint + 1 if checkpoint is not None else self.start_block
        end = await self.connection.current_block_height()

        if start > end:
            log.info("%s: no new blocks to process (checkpoint %s, head %d)", self.name, checkpoint, end)
            self.last_checked_block = end
            return checkpoint

        log.info(
            "%s: indexing from block %d to %d (last processed: %s)",
            self.name,
            start,
            end,
            checkpoint if checkpoint is not None else "none",
        )
        reached = await self.process_range(start, end)
        # set only on success; after a failure the first poll re-scans from the checkpoint
        self.last_checked_block = end
        log.info("%s: backfill completed up to block %d", self.name, reached)
        return reached

    async def poll_forever(self) -> None:
        self.state = EngineState.POLLING
        log.info("%s: polling every %.1fs", self.name, self.poll_interval)
        while not self._stop.is_set():
            await self._wait_next_tick()
            if self._stop.is_set():
                break
            try:
                await self.poll_once()
            except NetworkMismatchError:
                raise
            except ChainConnectionError as exc:
                log.warning("%s: poll skipped, %s", self.name, exc)
            except Exception:
                log.exception("%s: polling cycle failed", self.name)
        self.state = EngineState.STOPPED
        log.info("%s: stopped", self.name)

    async def poll_once(self) -> bool:
        head = await self.connection.current_block_height()
        if self.last_checked_block is not None and head <= self.last_checked_block and not self.failed_ranges:
            return False

        checkpoint = self.store.get_checkpoint(self.checkpoint_stream)
        start = checkpoint + 1 if checkpoint is not None else self.start_block
        if start > head:
            self.last_checked_block = head
            return False

        log.info("%s: polling blocks %d to %d", self.name, start, head)
        await self.process_range(start, head)
        self.last_checked_block = head
        return True

    async def _wait_next_tick(self) -> None:
        head_wait = asyncio.ensure_future(self.connection.wait_for_new_head(self.poll_interval))
        stop_wait = asyncio.ensure_future(self._stop.wait())
        try:
            await asyncio.wait({head_wait, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            head_wait.cancel()
            stop_wait.cancel()

    # -------------------------------------------------------------- indexing

    async def process_range(self, start: int, end: int) -> int:
        """Index ``[start, end]`` chunk by chunk and advance the checkpoint.

        Failed chunks do not stop later chunks, but the checkpoint never moves
        past the first failed one, so the next cycle re-scans it. Returns the
        block the checkpoint now covers.
        """
        chunks = chunk_ranges(start, end, self.connection.max_range_for_query())
        completed_to = start - 1
        failures: List[BlockRange] = []

        for index, (chunk_start, chunk_end) in enumerate(chunks):
            if self._stop.is_set():
                log.info("%s: shutdown requested, stopping before block %d", self.name, chunk_start)
                break
            ok = await self.process_chunk(chunk_start, chunk_end)
            if not ok:
                failures.append((chunk_start, chunk_end))
            elif not failures:
                completed_to = chunk_end
            if index < len(chunks) - 1 and self.chunk_delay > 0:
                await asyncio.sleep(self.chunk_delay)

        self.failed_ranges = failures
        if failures:
            log.warning(
                "%s: %d chunk(s) failed, first at %d-%d; holding checkpoint",
                self.name,
                len(failures),
                failures[0][0],
                failures[0][1],
            )
        if completed_to >= start:
            for stream in self.streams:
                self.store.set_checkpoint(stream, completed_to)
        return completed_to

    async def process_chunk(self, from_block: int, to_block: int) -> bool:
        log.debug("%s: processing chunk %d-%d", self.name, from_block, to_block)
        ok = True

        factory = self.connection.get_contract(self.factory_contract)
        if factory is None:
            self._warn_once(
                "factory",
                "%s: %s not available, skipping factory events",
                self.name,
                self.factory_contract,
            )
        else:
            for kind in self.factory_events:
                logs, fetched = await self._fetch(factory, kind.name, from_block, to_block)
                ok = ok and fetched
                for entry in logs:
                    if kind.name == self.creation_event:
                        self.register_child(entry)
                    await self.process_event(kind, entry, factory)

        # second pass: every known child, including ones found above
        for address in sorted(self.known_entities):
            handle = self.connection.contract_at(address, self.child_interface)
            if handle is None:
                self._warn_once(
                    "interface",
                    "%s: no %s ABI available, skipping %s events",
                    self.name,
                    self.child_interface,
                    self.child_label,
                )
                break
            for kind in self.child_events:
                logs, fetched = await self._fetch(handle, kind.name, from_block, to_block)
                ok = ok and fetched
                for entry in logs:
                    await self.process_event(kind, entry, handle)
        return ok

    async def _fetch(
        self, handle: ContractHandle, event_name: str, from_block: int, to_block: int
    ) -> Tuple[List[Any], bool]:
        if event_name not in handle.events:
            self._warn_once(
                f"{handle.name}.{event_name}",
                "%s: %s ABI has no %s event, skipping",
                self.name,
                handle.name,
                event_name,
            )
            return [], True

        last_error: Optional[Exception] = None
        for attempt in range(self.chunk_retries + 1):
            if attempt:
                await asyncio.sleep(self.retry_delay)
            try:
                return await self.connection.get_logs(handle, event_name, from_block, to_block), True
            except (QueryRangeError, ChainConnectionError) as exc:
                last_error = exc
                log.warning("%s: %s (attempt %d/%d)", self.name, exc, attempt + 1, self.chunk_retries + 1)

        log.error(
            "%s: giving up on %s for %s in %d-%d: %s",
            self.name,
            event_name,
            format_address(handle.address),
            from_block,
            to_block,
            last_error,
        )
        return [], False

    def register_child(self, entry: Mapping[str, Any]) -> Optional[str]:
        raw = (entry.get("args") or {}).get(self.child_address_arg)
        if not raw:
            log.warning("%s: %s without %s", self.name, self.creation_event, self.child_address_arg)
            return None
        address = to_checksum(raw)
        if address not in self.known_entities:
            self.known_entities.add(address)
            log.info("%s: discovered %s %s", self.name, self.child_label, address)
        return address

    # --------------------------------------------------------- event records

    def normalize(
        self,
        kind: EventKind,
        entry: Mapping[str, Any],
        handle: ContractHandle,
        rules: Optional[Mapping[str, DisplayRule]] = None,
        extra_display: Optional[Mapping[str, Any]] = None,
    ) -> EventRecord:
        display = dict(extra_display or {})
        if handle.name == self.child_interface:
            display.setdefault(self.child_label, format_address(handle.address))
        return normalize_log(
            entry,
            handle.name,
            rules if rules is not None else kind.display,
            display,
        )

    def append(self, kind: EventKind, record: EventRecord) -> bool:
        added = self.store.append(kind.stream, record)
        if added:
            log.info("event %s %s", record.event_name, record.display)
        return added

    async def process_event(self, kind: EventKind, entry: Mapping[str, Any], handle: ContractHandle) -> bool:
        """Normalize and store one log. Subclasses hook projections in here."""
        return self.append(kind, self.normalize(kind, entry, handle))

    # ---------------------------------------------------------------- status

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "known_entities": len(self.known_entities),
            "last_checked_block": self.last_checked_block,
            "checkpoint": self.store.get_checkpoint(self.checkpoint_stream),
            "failed_ranges": len(self.failed_ranges),
        }
