from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Tuple

RecordKey = Tuple[str, str, int]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class EventRecord:
    event_name: str
    contract_name: str
    contract_address: str
    block_number: int
    transaction_hash: str
    log_index: int
    args: Dict[str, Any] = field(default_factory=dict)
    display: Dict[str, Any] = field(default_factory=dict)
    recorded_at: str = field(default_factory=utc_now_iso)

    @property
    def key(self) -> RecordKey:
        return record_key(self.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EventRecord":
        return cls(
            event_name=data["event_name"],
            contract_name=data.get("contract_name", ""),
            contract_address=data.get("contract_address", ""),
            block_number=int(data.get("block_number") or 0),
            transaction_hash=data["transaction_hash"],
            log_index=int(data.get("log_index") or 0),
            args=dict(data.get("args") or {}),
            display=dict(data.get("display") or {}),
            recorded_at=data.get("recorded_at") or utc_now_iso(),
        )


def record_key(record: Mapping[str, Any]) -> RecordKey:
    """Dedup key: (transaction hash, event name, log index)."""
    return (
        str(record["transaction_hash"]).lower(),
        str(record["event_name"]),
        int(record.get("log_index") or 0),
    )


def order_key(record: Mapping[str, Any]) -> Tuple[int, int]:
    return int(record.get("block_number") or 0), int(record.get("log_index") or 0)
