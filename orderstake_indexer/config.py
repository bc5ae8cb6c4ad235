import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from .errors import ConfigError

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

DEFAULT_ENGINES = ["staking", "collectibles"]

# env var -> contract it overrides (and activates)
ADDRESS_OVERRIDES = {
    "ECOSYSTEM_STAKING_FACTORY_ADDRESS": "EcosystemStakingFactory",
    "ORDER_NFT_LAUNCH_ADDRESS": "OrderNFTLaunch",
}


@dataclass
class ContractConfig:
    name: str
    address: Optional[str] = None
    abi: Any = None
    active: bool = True


@dataclass
class IndexerConfig:
    rpc_url: str
    chain_id: int
    network: str = "avalanche"
    rpc_ws_url: Optional[str] = None
    abi_dir: str = "./abi"
    data_dir: str = "./data"
    start_block: int = 0
    max_block_range: int = 2000
    poll_interval: float = 15.0
    chunk_delay: float = 0.1
    chunk_retries: int = 2
    retry_attempts: int = 3
    retry_delay: float = 5.0
    health_check_interval: float = 30.0
    max_backoff: float = 30.0
    request_timeout: float = 30.0
    status_interval: float = 300.0
    stats_interval: float = 900.0
    log_level: str = "INFO"
    contracts: Dict[str, ContractConfig] = field(default_factory=dict)
    interfaces: Dict[str, Any] = field(default_factory=dict)
    engines: List[str] = field(default_factory=lambda: list(DEFAULT_ENGINES))


def _load_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "y", "on"}
    return bool(value)


def _contracts_from(raw: Mapping[str, Any]) -> Dict[str, ContractConfig]:
    contracts: Dict[str, ContractConfig] = {}
    for name, entry in raw.items():
        if isinstance(entry, dict):
            contracts[name] = ContractConfig(
                name=name,
                address=entry.get("address") or None,
                abi=entry.get("abi"),
                active=_as_bool(entry.get("active", entry.get("isActive", True))),
            )
        else:
            contracts[name] = ContractConfig(name=name, address=entry or None)
    return contracts


def config_from_dict(raw: Mapping[str, Any], env: Optional[Mapping[str, str]] = None) -> IndexerConfig:
    """Build an IndexerConfig from a parsed JSON document plus env overrides."""
    env = os.environ if env is None else env

    rpc_url = env.get("RPC_URL") or raw.get("rpc_url")
    if not rpc_url:
        raise ConfigError("rpc_url is required (config or RPC_URL)")

    chain_id_raw = env.get("CHAIN_ID") or raw.get("chain_id")
    if chain_id_raw in (None, ""):
        raise ConfigError("chain_id is required (config or CHAIN_ID)")
    try:
        chain_id = int(chain_id_raw)
    except (TypeError, ValueError):
        raise ConfigError(f"chain_id must be an integer, got {chain_id_raw!r}")

    contracts = _contracts_from(raw.get("contracts", {}))
    for env_key, contract_name in ADDRESS_OVERRIDES.items():
        address = env.get(env_key)
        if not address:
            continue
        entry = contracts.setdefault(contract_name, ContractConfig(name=contract_name))
        entry.address = address
        entry.active = True

    engines = list(raw.get("engines", DEFAULT_ENGINES))
    unknown = [name for name in engines if name not in DEFAULT_ENGINES]
    if unknown:
        raise ConfigError(f"Unknown engines: {', '.join(unknown)}")

    return IndexerConfig(
        rpc_url=rpc_url,
        chain_id=chain_id,
        network=raw.get("network", "avalanche"),
        rpc_ws_url=env.get("RPC_WS_URL") or raw.get("rpc_ws_url"),
        abi_dir=raw.get("abi_dir", "./abi"),
        data_dir=env.get("DATA_DIR") or raw.get("data_dir", "./data"),
        start_block=int(env.get("START_BLOCK") or raw.get("start_block", 0)),
        max_block_range=int(raw.get("max_block_range", 2000)),
        poll_interval=float(raw.get("poll_interval", 15)),
        chunk_delay=float(raw.get("chunk_delay", 0.1)),
        chunk_retries=int(raw.get("chunk_retries", 2)),
        retry_attempts=int(raw.get("retry_attempts", 3)),
        retry_delay=float(raw.get("retry_delay", 5)),
        health_check_interval=float(raw.get("health_check_interval", 30)),
        max_backoff=float(raw.get("max_backoff", 30)),
        request_timeout=float(raw.get("request_timeout", 30)),
        status_interval=float(raw.get("status_interval", 300)),
        stats_interval=float(raw.get("stats_interval", 900)),
        log_level=env.get("LOG_LEVEL") or raw.get("log_level", "INFO"),
        contracts=contracts,
        interfaces=dict(raw.get("interfaces", {})),
        engines=engines,
    )


def load_config(path: str, env: Optional[Mapping[str, str]] = None) -> IndexerConfig:
    try:
        raw = _load_json(path)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}")
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Config file {path} is not valid JSON: {exc}")
    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    return config_from_dict(raw, env)
