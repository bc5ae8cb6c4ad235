import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from eth_utils import event_abi_to_log_topic
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3._utils.events import get_event_data

from .config import ZERO_ADDRESS, ContractConfig, IndexerConfig
from .errors import ChainConnectionError, EnrichmentError, NetworkMismatchError, QueryRangeError

log = logging.getLogger(__name__)

Web3Factory = Callable[[IndexerConfig], Any]


@dataclass(frozen=True)
class ContractHandle:
    name: str
    address: str
    abi: List[Dict[str, Any]] = field(repr=False)
    events: Dict[str, Dict[str, Any]] = field(repr=False, default_factory=dict)

    def topic(self, event_name: str) -> str:
        return "0x" + event_abi_to_log_topic(self.events[event_name]).hex()


def bind_contract(name: str, address: str, abi: List[Dict[str, Any]]) -> ContractHandle:
    """Bind a (possibly shared) interface descriptor to a concrete address."""
    events = {
        item["name"]: item
        for item in abi
        if isinstance(item, dict) and item.get("type") == "event" and not item.get("anonymous")
    }
    return ContractHandle(name=name, address=Web3.to_checksum_address(address), abi=abi, events=events)


def _load_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _extract_abi(abi_json: Any) -> Optional[List[Dict[str, Any]]]:
    if isinstance(abi_json, list):
        return abi_json
    if isinstance(abi_json, dict) and "abi" in abi_json:
        return abi_json.get("abi")
    return None


def _find_abi_file(contract_name: str, abi_dir: str) -> Optional[str]:
    if not abi_dir or not os.path.exists(abi_dir):
        return None
    for candidate in (f"{contract_name}.json", f"{contract_name}.abi.json"):
        direct = os.path.join(abi_dir, candidate)
        if os.path.exists(direct):
            return direct

    # Hardhat artifacts nest each contract in its own directory
    for root, _dirs, files in os.walk(abi_dir):
        if f"{contract_name}.json" in files:
            return os.path.join(root, f"{contract_name}.json")
    return None


def _default_web3(config: IndexerConfig) -> AsyncWeb3:
    return AsyncWeb3(AsyncHTTPProvider(config.rpc_url, request_kwargs={"timeout": config.request_timeout}))


class ConnectionManager:
    """Single shared handle to the chain and to the configured contracts."""

    def __init__(self, config: IndexerConfig, web3_factory: Optional[Web3Factory] = None):
        self.config = config
        self._web3_factory = web3_factory or _default_web3
        self.w3: Optional[Any] = None
        self.healthy = False
        self.contracts: Dict[str, ContractHandle] = {}
        self._interfaces: Dict[str, List[Dict[str, Any]]] = {}
        self._reconnect_lock = asyncio.Lock()
        self._head_cond = asyncio.Condition()
        self._head_seq = 0
        self.latest_head: Optional[int] = None

    # ------------------------------------------------------------ connection

    async def _open(self) -> Any:
        try:
            w3 = self._web3_factory(self.config)
            chain_id = int(await w3.eth.chain_id)
        except Exception as exc:
            raise ChainConnectionError(f"RPC {self.config.rpc_url} unreachable: {exc}") from exc

        if chain_id != self.config.chain_id:
            raise NetworkMismatchError(self.config.chain_id, chain_id)
        return w3

    async def connect(self) -> None:
        """Connect with a fixed retry delay, then verify the chain id.

        Raises ChainConnectionError once retries are exhausted and
        NetworkMismatchError (without retrying) on the wrong chain.
        """
        attempts = max(self.config.retry_attempts, 0)
        log.info("Connecting to RPC %s", self.config.rpc_url)
        for attempt in range(attempts + 1):
            if attempt:
                log.info("Retrying connection (%d/%d)...", attempt, attempts)
                await asyncio.sleep(self.config.retry_delay)
            try:
                self.w3 = await self._open()
            except ChainConnectionError as exc:
                log.error("Failed to connect: %s", exc)
                continue
            self.healthy = True
            log.info("Connected to %s (chain %d)", self.config.network, self.config.chain_id)
            return
        raise ChainConnectionError(f"Failed to connect after {attempts + 1} attempts")

    async def is_healthy(self) -> bool:
        if self.w3 is None:
            return False
        try:
            await self.w3.eth.block_number
        except Exception as exc:
            log.warning("Health check failed: %s", exc)
            return False
        return True

    async def reconnect(self, stop: Optional[asyncio.Event] = None) -> bool:
        """Reconnect with exponential backoff until it works or ``stop`` is set.

        NetworkMismatchError is not retried; the connection stays unhealthy.
        """
        async with self._reconnect_lock:
            self.healthy = False
            attempt = 0
            while stop is None or not stop.is_set():
                try:
                    self.w3 = await self._open()
                except NetworkMismatchError as exc:
                    log.error("Reconnection refused: %s", exc)
                    raise
                except ChainConnectionError as exc:
                    delay = min(self.config.max_backoff, 2 ** attempt)
                    attempt += 1
                    log.error("Reconnection failed (%s); retrying in %.0fs", exc, delay)
                    if stop is None:
                        await asyncio.sleep(delay)
                    elif await wait_or_stop(stop, delay):
                        return False
                    continue

                self.healthy = True
                if not self.contracts:
                    self.load_bindings()
                log.info("Reconnection successful")
                return True
        return False

    async def health_check_loop(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            if await wait_or_stop(stop, self.config.health_check_interval):
                return
            if not await self.is_healthy():
                log.warning("Connection unhealthy, attempting reconnection...")
                await self.reconnect(stop)

    def _require_web3(self) -> Any:
        if self.w3 is None or not self.healthy:
            raise ChainConnectionError("RPC connection unavailable (reconnecting)")
        return self.w3

    # -------------------------------------------------------------- bindings

    def _load_abi(self, name: str, abi_source: Any) -> Optional[List[Dict[str, Any]]]:
        if isinstance(abi_source, list):
            return abi_source
        if isinstance(abi_source, str):
            abi_path = abi_source
            if os.path.isdir(abi_path):
                abi_path = _find_abi_file(name, abi_path)
            if abi_path and os.path.exists(abi_path):
                return _extract_abi(_load_json(abi_path))
            return None
        abi_path = _find_abi_file(name, self.config.abi_dir)
        if abi_path:
            return _extract_abi(_load_json(abi_path))
        return None

    def _bind(self, entry: ContractConfig) -> Optional[ContractHandle]:
        if not entry.active:
            log.warning("Skipping %s: contract is inactive", entry.name)
            return None
        if not entry.address or entry.address.lower() == ZERO_ADDRESS:
            log.warning("Skipping %s: no address configured", entry.name)
            return None
        if not Web3.is_address(entry.address):
            log.warning("Skipping %s: invalid address %s", entry.name, entry.address)
            return None
        try:
            abi = self._load_abi(entry.name, entry.abi)
        except (OSError, ValueError) as exc:
            log.warning("Skipping %s: unreadable ABI (%s)", entry.name, exc)
            return None
        if not abi:
            log.warning("Skipping %s: ABI not found (searched in %s)", entry.name, self.config.abi_dir)
            return None
        return bind_contract(entry.name, entry.address, abi)

    def load_bindings(self) -> Dict[str, ContractHandle]:
        for entry in self.config.contracts.values():
            handle = self._bind(entry)
            if handle is None:
                continue
            self.contracts[entry.name] = handle
            log.info("Loaded contract %s at %s", entry.name, handle.address)
        log.info("Loaded %d contracts", len(self.contracts))
        return self.contracts

    def load_interface(self, name: str) -> Optional[List[Dict[str, Any]]]:
        if name in self._interfaces:
            return self._interfaces[name]
        try:
            abi = self._load_abi(name, self.config.interfaces.get(name))
        except (OSError, ValueError) as exc:
            log.warning("Interface %s unreadable: %s", name, exc)
            abi = None
        if not abi:
            log.warning("Interface %s not found (searched in %s)", name, self.config.abi_dir)
            return None
        self._interfaces[name] = abi
        return abi

    def contract_at(self, address: str, interface: str) -> Optional[ContractHandle]:
        abi = self.load_interface(interface)
        if abi is None:
            return None
        return bind_contract(interface, address, abi)

    def get_contract(self, name: str) -> Optional[ContractHandle]:
        handle = self.contracts.get(name)
        if handle is None:
            log.debug("Contract %s not loaded", name)
        return handle

    # --------------------------------------------------------------- queries

    async def current_block_height(self) -> int:
        w3 = self._require_web3()
        try:
            return int(await w3.eth.block_number)
        except Exception as exc:
            raise ChainConnectionError(f"block height unavailable: {exc}") from exc

    def max_range_for_query(self) -> int:
        return max(int(self.config.max_block_range), 1)

    async def get_logs(self, handle: ContractHandle, event_name: str, from_block: int, to_block: int) -> List[Any]:
        """Decoded ``event_name`` logs of ``handle`` in ``[from_block, to_block]``."""
        event_abi = handle.events.get(event_name)
        if event_abi is None:
            raise QueryRangeError(event_name, handle.address, from_block, to_block, "event not in ABI")
        w3 = self._require_web3()
        try:
            raw_logs = await w3.eth.get_logs(
                {
                    "fromBlock": from_block,
                    "toBlock": to_block,
                    "address": handle.address,
                    "topics": [handle.topic(event_name)],
                }
            )
            decoded = [get_event_data(w3.codec, event_abi, entry) for entry in raw_logs]
        except Exception as exc:
            raise QueryRangeError(event_name, handle.address, from_block, to_block, str(exc)) from exc

        return sorted(decoded, key=lambda x: (x.get("blockNumber", 0), x.get("logIndex", 0)))

    async def call(
        self,
        target: Union[ContractHandle, str],
        fn_name: str,
        *args: Any,
        abi: Optional[List[Dict[str, Any]]] = None,
    ) -> Any:
        """Read-only contract call; any failure surfaces as EnrichmentError."""
        if isinstance(target, ContractHandle):
            address, abi = target.address, abi or target.abi
        else:
            address = target
        try:
            if not abi:
                raise ValueError("no ABI given")
            w3 = self._require_web3()
            contract = w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)
            return await getattr(contract.functions, fn_name)(*args).call()
        except Exception as exc:
            raise EnrichmentError(f"{fn_name}() on {address} failed: {exc}") from exc

    # ------------------------------------------------------------ new heads

    async def notify_head(self, block_number: int) -> None:
        async with self._head_cond:
            self.latest_head = block_number
            self._head_seq += 1
            self._head_cond.notify_all()

    async def wait_for_new_head(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for a new-head notification."""
        seen = self._head_seq
        async with self._head_cond:
            try:
                await asyncio.wait_for(self._head_cond.wait_for(lambda: self._head_seq > seen), timeout)
            except asyncio.TimeoutError:
                return False
        return True


async def wait_or_stop(stop: asyncio.Event, timeout: float) -> bool:
    """Sleep up to ``timeout``; True if ``stop`` was set meanwhile."""
    try:
        await asyncio.wait_for(stop.wait(), timeout)
    except asyncio.TimeoutError:
        return False
    return True
