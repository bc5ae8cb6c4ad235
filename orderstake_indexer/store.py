"""Restart-safe JSON record store.

Layout under ``data_dir``::

    <stream>.json        sorted list of event records, one file per stream
    checkpoints.json     {stream: last processed block}
    projections.json     {contract address: snapshot}

Every write goes to ``<file>.tmp`` first and is renamed over the original, so a
crash leaves either the old or the new content. Unreadable files are copied
aside as ``<file>.corrupted.<timestamp>`` and replaced with an empty value.
"""

import json
import logging
import os
import re
import shutil
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Set, Union

from hexbytes import HexBytes

from .errors import StoreCorruptionError
from .records import EventRecord, RecordKey, order_key, record_key, utc_now_iso

log = logging.getLogger(__name__)

CHECKPOINT_FILE = "checkpoints.json"
PROJECTION_FILE = "projections.json"
_RESERVED = {CHECKPOINT_FILE[:-5], PROJECTION_FILE[:-5]}
_STREAM_NAME = re.compile(r"^[A-Za-z0-9_-]+$")


def json_default(obj: Any) -> Any:
    if isinstance(obj, (HexBytes, bytes, bytearray)):
        return "0x" + bytes(obj).hex()
    if isinstance(obj, set):
        return sorted(obj)
    return str(obj)


def _matches(actual: Any, expected: Any) -> bool:
    if actual == expected:
        return True
    if actual is None or expected is None:
        return False
    return str(actual).lower() == str(expected).lower()


class RecordStore:
    def __init__(self, data_dir: str):
        self.data_dir = data_dir
        os.makedirs(self.data_dir, exist_ok=True)
        self._keys: Dict[str, Set[RecordKey]] = {}
        # corrupted streams whose backup failed; never overwritten
        self._unsaved: Set[str] = set()

    # ------------------------------------------------------------------ paths

    def _stream_path(self, stream: str) -> str:
        if not _STREAM_NAME.match(stream) or stream in _RESERVED:
            raise ValueError(f"Invalid stream name: {stream!r}")
        return os.path.join(self.data_dir, f"{stream}.json")

    def _map_path(self, filename: str) -> str:
        return os.path.join(self.data_dir, filename)

    # ------------------------------------------------------------ raw file io

    @staticmethod
    def _read_json(path: str) -> Any:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as exc:
            raise StoreCorruptionError(path, str(exc)) from exc

    @staticmethod
    def _write_json(path: str, payload: Any) -> None:
        tmp_path = f"{path}.tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, default=json_default, ensure_ascii=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    @staticmethod
    def _quarantine(path: str) -> Optional[str]:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        backup = f"{path}.corrupted.{stamp}"
        try:
            shutil.copy2(path, backup)
        except OSError as exc:
            log.error("Failed to back up corrupted file %s: %s", path, exc)
            return None
        log.warning("Backed up corrupted file to %s", backup)
        return backup

    def _read_map(self, filename: str) -> Dict[str, Any]:
        path = self._map_path(filename)
        if not os.path.exists(path):
            return {}
        try:
            data = self._read_json(path)
            if not isinstance(data, dict):
                raise StoreCorruptionError(path, "top level is not an object")
        except StoreCorruptionError as exc:
            log.error("%s", exc)
            self._quarantine(path)
            return {}
        return data

    # ---------------------------------------------------------------- streams

    def load(self, stream: str) -> List[Dict[str, Any]]:
        """Return the persisted records of ``stream`` and rebuild its key set.

        Never raises on bad content: a corrupted file is quarantined and an
        empty stream takes its place.
        """
        path = self._stream_path(stream)
        if not os.path.exists(path):
            self._keys[stream] = set()
            return []

        try:
            payload = self._read_json(path)
            if not isinstance(payload, list):
                raise StoreCorruptionError(path, "top level is not a list")
        except StoreCorruptionError as exc:
            log.error("%s", exc)
            if self._quarantine(path):
                self._write_json(path, [])
                self._unsaved.discard(stream)
            else:
                self._unsaved.add(stream)
            self._keys[stream] = set()
            return []

        self._unsaved.discard(stream)

        records: List[Dict[str, Any]] = []
        keys: Set[RecordKey] = set()
        for entry in payload:
            if not isinstance(entry, dict) or not entry.get("transaction_hash") or not entry.get("event_name"):
                log.warning("Dropping invalid record in %s: %r", stream, entry)
                continue
            key = record_key(entry)
            if key in keys:
                log.warning("Dropping duplicate record in %s: %s", stream, key)
                continue
            keys.add(key)
            records.append(entry)

        self._keys[stream] = keys
        log.debug("Loaded %d records from %s", len(records), stream)
        return records

    def append(self, stream: str, record: Union[EventRecord, Mapping[str, Any]]) -> bool:
        """Persist ``record`` unless its dedup key is already in ``stream``.

        Returns False for a duplicate, which callers treat as success. Raises
        StoreCorruptionError rather than overwrite a corrupted file that could
        not be backed up.
        """
        entry = record.to_dict() if isinstance(record, EventRecord) else dict(record)
        key = record_key(entry)

        if stream not in self._keys:
            self.load(stream)
        if key in self._keys[stream]:
            log.debug("Skipping duplicate %s event %s:%s", key[1], key[0], key[2])
            return False

        records = self.load(stream)
        if stream in self._unsaved:
            raise StoreCorruptionError(self._stream_path(stream), "corrupted file has no backup, refusing to overwrite")
        records.append(entry)
        records.sort(key=order_key)
        self._write_json(self._stream_path(stream), records)
        self._keys[stream].add(key)
        return True

    def contains(self, stream: str, key: RecordKey) -> bool:
        if stream not in self._keys:
            self.load(stream)
        return key in self._keys[stream]

    def query(
        self,
        stream: str,
        filters: Optional[Mapping[str, Any]] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Records of ``stream`` matching every equality filter.

        A filter key matches a top-level record field or, failing that, a
        field of the raw ``args``.
        """
        records = self.load(stream)
        if filters:
            selected = []
            for record in records:
                args = record.get("args") or {}
                if all(
                    _matches(record[k] if k in record else args.get(k), v)
                    for k, v in filters.items()
                ):
                    selected.append(record)
            records = selected
        offset = max(offset, 0)
        end = offset + limit if limit is not None else None
        return records[offset:end]

    def streams(self) -> List[str]:
        names = []
        for filename in os.listdir(self.data_dir):
            if not filename.endswith(".json"):
                continue
            name = filename[:-5]
            if name in _RESERVED or not _STREAM_NAME.match(name):
                continue
            names.append(name)
        return sorted(names)

    # ------------------------------------------------------------ checkpoints

    def get_checkpoint(self, stream: str) -> Optional[int]:
        value = self._read_map(CHECKPOINT_FILE).get(stream)
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            log.warning("Ignoring invalid checkpoint for %s: %r", stream, value)
            return None

    def set_checkpoint(self, stream: str, block: int) -> bool:
        """Advance the checkpoint of ``stream``; lower values are ignored."""
        checkpoints = self._read_map(CHECKPOINT_FILE)
        current = checkpoints.get(stream)
        if isinstance(current, int) and block < current:
            log.warning("Refusing to move checkpoint for %s back from %d to %d", stream, current, block)
            return False
        checkpoints[stream] = int(block)
        self._write_json(self._map_path(CHECKPOINT_FILE), checkpoints)
        log.debug("Saved checkpoint %d for %s", block, stream)
        return True

    # ------------------------------------------------------------ projections

    def put_projection(self, key: str, value: Mapping[str, Any]) -> None:
        projections = self._read_map(PROJECTION_FILE)
        projections[key] = {**value, "last_updated": utc_now_iso()}
        self._write_json(self._map_path(PROJECTION_FILE), projections)

    def get_projection(self, key: str) -> Optional[Dict[str, Any]]:
        projections = self._read_map(PROJECTION_FILE)
        if key in projections:
            return projections[key]
        lowered = key.lower()
        for candidate, value in projections.items():
            if candidate.lower() == lowered:
                return value
        return None

    def get_all_projections(self) -> Dict[str, Any]:
        return self._read_map(PROJECTION_FILE)

    # ------------------------------------------------------------------ stats

    def stats(self) -> Dict[str, Dict[str, Any]]:
        checkpoints = self._read_map(CHECKPOINT_FILE)
        stats: Dict[str, Dict[str, Any]] = {}
        names = set(self.streams())
        names.update(name for name in checkpoints if _STREAM_NAME.match(name) and name not in _RESERVED)
        for stream in sorted(names):
            path = self._stream_path(stream)
            try:
                st = os.stat(path)
            except OSError:
                st = None
            stats[stream] = {
                "record_count": len(self.load(stream)) if st else 0,
                "file_size": st.st_size if st else 0,
                "last_modified": (
                    datetime.fromtimestamp(st.st_mtime, tz=timezone.utc).isoformat() if st else None
                ),
                "checkpoint": checkpoints.get(stream),
            }
        return stats
