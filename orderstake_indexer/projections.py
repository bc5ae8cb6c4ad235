"""Per-contract snapshots enriched with on-chain reads.

Every read is independent: a failed one leaves its field ``None`` and the
snapshot is still written. Snapshots are rebuilt wholesale and are never used
to decide what gets indexed.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .errors import ChainConnectionError, EnrichmentError
from .normalize import format_address, format_amount, stringify, to_checksum

log = logging.getLogger(__name__)

ERC20_META_ABI = [
    {
        "inputs": [],
        "name": "name",
        "outputs": [{"internalType": "string", "name": "", "type": "string"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "symbol",
        "outputs": [{"internalType": "string", "name": "", "type": "string"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "decimals",
        "outputs": [{"internalType": "uint8", "name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "totalSupply",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function"
    }
]

# positional outputs of EcosystemStaking.getPoolInfo() / getPoolMetadata()
POOL_INFO_FIELDS = (
    "staking_token",
    "reward_token",
    "total_staked",
    "reward_per_block",
    "start_block",
    "end_block",
    "last_reward_block",
    "creator",
)
POOL_METADATA_FIELDS = (
    "pool_name",
    "pool_description",
    "staking_symbol",
    "reward_symbol",
    "staking_logo",
    "reward_logo",
)

# event argument -> pool info field, used when getPoolInfo() is unavailable
_POOL_EVENT_FALLBACK = {
    "stakingToken": "staking_token",
    "rewardToken": "reward_token",
    "rewardPerBlock": "reward_per_block",
    "startBlock": "start_block",
    "endBlock": "end_block",
    "creator": "creator",
}


@dataclass
class TokenInfo:
    address: str
    name: Optional[str] = None
    symbol: Optional[str] = None
    decimals: Optional[int] = None
    total_supply: Optional[str] = None

    @property
    def complete(self) -> bool:
        return None not in (self.name, self.symbol, self.decimals, self.total_supply)


@dataclass
class PoolSnapshot:
    address: str
    pool_data: Optional[Dict[str, Any]] = None
    pool_metadata: Optional[Dict[str, Any]] = None
    pool_stats: Optional[Dict[str, Any]] = None
    token_info: Dict[str, Optional[Dict[str, Any]]] = field(default_factory=dict)
    creator: Optional[str] = None
    source: str = "chain"

    @property
    def reward_decimals(self) -> int:
        return _decimals(self.token_info.get("reward_token"))

    @property
    def staking_decimals(self) -> int:
        return _decimals(self.token_info.get("staking_token"))

    def display(self) -> Dict[str, Any]:
        """Presentation fields merged into the PoolCreated record."""
        metadata = self.pool_metadata or {}
        staking = self.token_info.get("staking_token") or {}
        reward = self.token_info.get("reward_token") or {}
        total_staked = (self.pool_data or {}).get("total_staked")
        return {
            "poolName": metadata.get("pool_name") or "Unknown Pool",
            "stakingSymbol": staking.get("symbol") or metadata.get("staking_symbol") or "UNKNOWN",
            "rewardSymbol": reward.get("symbol") or metadata.get("reward_symbol") or "UNKNOWN",
            "totalStaked": format_amount(total_staked, self.staking_decimals) if total_staked else "0.0",
        }

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CollectionSnapshot:
    address: str
    creator: Optional[str] = None
    mint_token: Optional[str] = None
    mint_price: Optional[str] = None
    max_supply: Optional[str] = None
    base_uri: Optional[str] = None
    mint_token_info: Optional[Dict[str, Any]] = None
    created_block: Optional[int] = None

    @property
    def mint_decimals(self) -> int:
        return _decimals(self.mint_token_info)

    def display(self) -> Dict[str, Any]:
        symbol = (self.mint_token_info or {}).get("symbol")
        return {
            "mintPrice": format_amount(self.mint_price, self.mint_decimals),
            "mintSymbol": symbol or "UNKNOWN",
        }

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _decimals(token: Optional[Mapping[str, Any]]) -> int:
    if token and token.get("decimals") is not None:
        return int(token["decimals"])
    return 18


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class TokenInfoCache:
    """ERC-20 metadata reads, cached per token once every field has been read."""

    def __init__(self, connection: Any):
        self.connection = connection
        self._cache: Dict[str, TokenInfo] = {}

    async def get(self, address: Optional[str]) -> Optional[TokenInfo]:
        if not address:
            return None
        address = to_checksum(address)
        if address in self._cache:
            return self._cache[address]

        info = TokenInfo(address=address)
        for fn_name in ("name", "symbol", "decimals", "totalSupply"):
            try:
                value = await self.connection.call(address, fn_name, abi=ERC20_META_ABI)
            except EnrichmentError as exc:
                log.debug("Token info read failed: %s", exc)
                continue
            if fn_name == "decimals":
                info.decimals = int(value)
            elif fn_name == "totalSupply":
                info.total_supply = str(value)
            else:
                setattr(info, fn_name, str(value))

        if info.complete:
            self._cache[address] = info
        return info


async def _read_tuple(
    connection: Any, address: str, fn_name: str, fields: Sequence[str], abi: List[Dict[str, Any]]
) -> Optional[Dict[str, Any]]:
    try:
        values = await connection.call(address, fn_name, abi=abi)
    except EnrichmentError as exc:
        log.debug("%s", exc)
        return None
    if isinstance(values, Mapping):
        values = list(values.values())
    if not isinstance(values, (list, tuple)) or len(values) < len(fields):
        log.debug("%s() on %s returned unexpected value %r", fn_name, address, values)
        return None
    return {name: stringify(value) for name, value in zip(fields, values)}


def pool_stats(pool_data: Mapping[str, Any], current_block: Optional[int]) -> Optional[Dict[str, Any]]:
    start = _as_int(pool_data.get("start_block"))
    end = _as_int(pool_data.get("end_block"))
    if current_block is None or start is None or end is None:
        return None
    has_started = current_block >= start
    has_ended = current_block > end
    return {
        "current_block": current_block,
        "blocks_remaining": 0 if has_ended else end - current_block,
        "is_active": has_started and not has_ended,
        "has_started": has_started,
        "has_ended": has_ended,
    }


async def build_pool_snapshot(
    connection: Any,
    pool_address: str,
    event_args: Mapping[str, Any],
    pool_abi: Optional[List[Dict[str, Any]]],
    tokens: TokenInfoCache,
) -> PoolSnapshot:
    address = to_checksum(pool_address)
    snapshot = PoolSnapshot(address=address)

    if pool_abi:
        snapshot.pool_data = await _read_tuple(connection, address, "getPoolInfo", POOL_INFO_FIELDS, pool_abi)
        snapshot.pool_metadata = await _read_tuple(
            connection, address, "getPoolMetadata", POOL_METADATA_FIELDS, pool_abi
        )
    if snapshot.pool_data is None and event_args:
        snapshot.source = "event"
        snapshot.pool_data = {
            target: stringify(event_args[arg]) for arg, target in _POOL_EVENT_FALLBACK.items() if arg in event_args
        }

    data = snapshot.pool_data or {}
    snapshot.creator = data.get("creator") or stringify(event_args.get("creator"))
    staking = await tokens.get(data.get("staking_token"))
    reward = await tokens.get(data.get("reward_token"))
    snapshot.token_info = {
        "staking_token": asdict(staking) if staking else None,
        "reward_token": asdict(reward) if reward else None,
    }

    try:
        current_block: Optional[int] = await connection.current_block_height()
    except ChainConnectionError as exc:
        log.debug("Pool stats skipped: %s", exc)
        current_block = None
    snapshot.pool_stats = pool_stats(data, current_block)

    log.info(
        "Built pool snapshot for %s (info=%s, metadata=%s)",
        format_address(address),
        snapshot.source if snapshot.pool_data else "none",
        "yes" if snapshot.pool_metadata else "no",
    )
    return snapshot


async def build_collection_snapshot(
    collection_address: str,
    event_args: Mapping[str, Any],
    tokens: TokenInfoCache,
    created_block: Optional[int] = None,
) -> CollectionSnapshot:
    mint_token = event_args.get("mintToken")
    info = await tokens.get(mint_token)
    return CollectionSnapshot(
        address=to_checksum(collection_address),
        creator=stringify(event_args.get("creator")),
        mint_token=stringify(mint_token),
        mint_price=stringify(event_args.get("mintPrice")),
        max_supply=stringify(event_args.get("maxSupply")),
        base_uri=event_args.get("baseURI"),
        mint_token_info=asdict(info) if info else None,
        created_block=created_block,
    )
