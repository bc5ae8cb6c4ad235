"""Turn decoded logs into EventRecords.

``args`` keeps the raw values in a JSON-safe form (integers as strings so
uint256 values survive, addresses checksummed, bytes as 0x-hex). ``display``
is a parallel, presentation-only rendering.
"""

from decimal import Decimal, localcontext
from typing import Any, Callable, Dict, Mapping, Optional

from hexbytes import HexBytes
from web3 import Web3

from .records import EventRecord

DisplayRule = Callable[[Any], Any]


def to_hex(value: Any) -> str:
    if isinstance(value, (HexBytes, bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value)
    return text if text.startswith("0x") else f"0x{text}"


def _is_address(value: Any) -> bool:
    return isinstance(value, str) and len(value) == 42 and value.startswith("0x") and Web3.is_address(value)


def to_checksum(address: str) -> str:
    return Web3.to_checksum_address(address)


def format_address(address: Optional[str]) -> str:
    if not address:
        return "0x0000...0000"
    return f"{address[:6]}...{address[-4:]}"


def format_amount(value: Any, decimals: int = 18) -> str:
    """Scale a raw integer amount by ``decimals``, e.g. 1500000000000000000 -> "1.5"."""
    try:
        raw = int(value)
    except (TypeError, ValueError):
        return "0.0"
    with localcontext() as ctx:
        ctx.prec = 78
        text = format(Decimal(raw).scaleb(-max(int(decimals), 0)), "f")
    if "." not in text:
        return f"{text}.0"
    text = text.rstrip("0")
    return f"{text}0" if text.endswith(".") else text


def stringify(value: Any) -> Any:
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, (HexBytes, bytes, bytearray)):
        return to_hex(value)
    if _is_address(value):
        return to_checksum(value)
    if isinstance(value, Mapping):
        return {str(k): stringify(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [stringify(v) for v in value]
    return value


def amount(decimals: int = 18) -> DisplayRule:
    return lambda value: format_amount(value, decimals)


def label(on: str, off: str) -> DisplayRule:
    return lambda value: on if value else off


def plain(value: Any) -> Any:
    return stringify(value)


def _default_display(value: Any) -> Any:
    if _is_address(value):
        return format_address(to_checksum(value))
    return stringify(value)


def normalize_log(
    log: Mapping[str, Any],
    contract_name: str,
    rules: Optional[Mapping[str, DisplayRule]] = None,
    extra_display: Optional[Mapping[str, Any]] = None,
) -> EventRecord:
    """Build an EventRecord from a decoded log (``get_event_data`` output)."""
    raw_args = dict(log.get("args") or {})
    rules = rules or {}

    display: Dict[str, Any] = {}
    for name, value in raw_args.items():
        rule = rules.get(name)
        display[name] = rule(value) if rule else _default_display(value)
    if extra_display:
        display.update(extra_display)

    return EventRecord(
        event_name=str(log["event"]),
        contract_name=contract_name,
        contract_address=to_checksum(log["address"]),
        block_number=int(log["blockNumber"]),
        transaction_hash=to_hex(log["transactionHash"]).lower(),
        log_index=int(log.get("logIndex") or 0),
        args={name: stringify(value) for name, value in raw_args.items()},
        display=display,
    )
