"""
Results ledger: one JSON array shared by every stage.

Writers read the whole file, add their record and rewrite it. A missing, empty or
corrupt file is treated as an empty ledger on the write path (with a warning) so a
stage can always leave its record behind. Readers are strict: a dependent stage
cannot proceed without a valid predecessor, so each read failure raises its own
LedgerError subclass.

There is no file locking. Stages are run one at a time by the operator.
"""

import json
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from hexbytes import HexBytes
from web3.datastructures import AttributeDict

from cdk_harness import console
from cdk_harness.errors import (
    LedgerEmptyError,
    LedgerMalformedError,
    LedgerMissingError,
    LedgerShapeError,
    PredecessorFieldError,
    PredecessorNotFoundError,
)
from cdk_harness.records import VERDICT_SUCCESS, StageRecord, utc_timestamp

MAX_SAFE_INTEGER = 2**53 - 1


def to_jsonable(obj):
    """Recursively convert Web3 AttributeDict, HexBytes, big ints and records into JSON-serializable types."""
    if isinstance(obj, AttributeDict):
        return {k: to_jsonable(v) for k, v in obj.items()}
    if isinstance(obj, dict):
        return {str(k): to_jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_jsonable(x) for x in obj]
    if isinstance(obj, (HexBytes, bytes, bytearray)):
        return "0x" + bytes(obj).hex()
    if isinstance(obj, bool):
        return obj
    if isinstance(obj, int):
        return obj if abs(obj) <= MAX_SAFE_INTEGER else str(obj)
    if isinstance(obj, (Decimal, Path)):
        return str(obj)
    if hasattr(obj, "to_dict") and callable(obj.to_dict):
        return to_jsonable(obj.to_dict())
    return obj


class ResultLedger:
    def __init__(self, path: Union[str, Path], network_name: str = "default"):
        self.path = Path(path)
        self.network_name = network_name

    # -------------------------
    # Write path (tolerant)
    # -------------------------
    def _load_for_write(self) -> List[Any]:
        if not self.path.exists():
            return []
        try:
            content = self.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            console.warn(f"Could not read existing {self.path.name}: {e}. Creating a new one.")
            return []
        if content.strip() == "":
            return []
        try:
            data = json.loads(content)
        except ValueError as e:
            console.warn(f"Could not parse existing {self.path.name}: {e}. Creating a new one.")
            return []
        if not isinstance(data, list):
            console.warn(f"Existing {self.path.name} is not a JSON array. Creating a new one.")
            return []
        return data

    def _stamp(self, record: Union[StageRecord, Dict[str, Any]]) -> Dict[str, Any]:
        body = record.to_dict() if isinstance(record, StageRecord) else dict(record)
        entry = {
            "timestamp": body.pop("timestamp", None) or utc_timestamp(),
            "networkUsed": self.network_name,
        }
        body.pop("networkUsed", None)
        entry.update(body)
        return entry

    def append(self, record: Union[StageRecord, Dict[str, Any]], replace_label: Optional[str] = None) -> bool:
        """
        Add record to the ledger and rewrite the file.

        With replace_label set, every existing entry whose `stage` contains that
        label is dropped first (re-running the stage does not pile up history).
        Returns False if the file could not be written; never raises for I/O.
        """
        entry = self._stamp(record)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            console.error(f"Could not create results directory {self.path.parent}: {e}")
            return False

        entries = self._load_for_write()
        if replace_label:
            before = len(entries)
            entries = [e for e in entries if not _stage_contains(e, replace_label)]
            dropped = before - len(entries)
            if dropped:
                console.info(f"Replacing {dropped} earlier record(s) for '{replace_label}'")
        entries.append(entry)

        try:
            payload = json.dumps(to_jsonable(entries), indent=2, ensure_ascii=False, default=str)
            self.path.write_text(payload + "\n", encoding="utf-8")
        except (OSError, TypeError, ValueError) as e:
            console.error(f"Error writing {self.path}: {e}")
            return False

        console.info(f"Results for stage '{entry.get('stage')}' logged to {self.path}")
        return True

    # -------------------------
    # Read path (strict)
    # -------------------------
    def read(self) -> List[Dict[str, Any]]:
        console.info(f"Attempting to read results from: {self.path}")
        if not self.path.exists():
            raise LedgerMissingError(
                f"Results file not found at {self.path}. Ensure Stage 2 successfully saved its output."
            )
        try:
            raw = self.path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise LedgerMalformedError(f"Results file {self.path} is not valid UTF-8: {e}")
        if raw.strip() == "":
            raise LedgerEmptyError(
                f"Results file {self.path} is empty. Stage 2 might have failed to write its results."
            )
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise LedgerMalformedError(
                f"Failed to parse {self.path.name}: {e}. Content preview (first 200 chars): {raw[:200]!r}"
            )
        if not isinstance(data, list):
            raise LedgerShapeError(
                f"Parsed {self.path.name} is not an array (got {type(data).__name__}). The file structure is unexpected."
            )
        console.info(f"Read {self.path.name}: {len(data)} entries.")
        return data

    def find_latest_success(self, label: str, entries: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
        """Most recent entry whose stage contains label and whose verdict is success."""
        if entries is None:
            entries = self.read()
        for entry in reversed(entries):
            if _stage_contains(entry, label) and entry.get("verdict") == VERDICT_SUCCESS:
                console.info(f"Found '{label}' success entry (timestamp {entry.get('timestamp')}).")
                return entry

        console.error(f"Successful '{label}' data not found in {self.path.name}. Current entries:")
        for i, item in enumerate(entries):
            if isinstance(item, dict):
                console.error(
                    f"  Entry {i}: stage='{item.get('stage')}', verdict='{item.get('verdict')}', "
                    f"contractAddress='{item.get('contractAddress')}'"
                )
            else:
                console.error(f"  Entry {i}: <{type(item).__name__}>")
        raise PredecessorNotFoundError(
            f"Successful '{label}' record (verdict 'success') not found in {self.path}."
        )


def require_fields(record: Dict[str, Any], names: Iterable[str]) -> Dict[str, Any]:
    for name in names:
        if not record.get(name):
            raise PredecessorFieldError(
                f"Stage record '{record.get('stage')}' found, but '{name}' field is missing or null. Cannot proceed.",
                name,
            )
    return record


def _stage_contains(entry: Any, label: str) -> bool:
    return isinstance(entry, dict) and isinstance(entry.get("stage"), str) and label in entry["stage"]
