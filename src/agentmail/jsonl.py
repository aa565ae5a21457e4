"""Newline-delimited JSON record files shared by the mailbox and registry stores.

Unparseable lines are skipped by readers but kept verbatim when a file is
rewritten, so a prune never drops data it could not decode.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Generic, Iterable, Optional, TypeVar

from .errors import MalformedRecordError

_logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class Record(Generic[T]):
    raw: str
    value: Optional[T]

    @property
    def malformed(self) -> bool:
        return self.value is None


def dumps(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def decode_line(path: Path, line_number: int, line: str, decode: Callable[[Any], T]) -> T:
    try:
        return decode(json.loads(line))
    except (json.JSONDecodeError, ValueError, TypeError, KeyError) as exc:
        raise MalformedRecordError(str(path), line_number, str(exc)) from exc


def read_records(path: Path, decode: Callable[[Any], T]) -> list[Record[T]]:
    """Return every non-blank line of ``path`` in file order.

    A missing file reads as empty.
    """
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return []
    lines = text.split("\n")
    records: list[Record[T]] = []
    for index, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        try:
            records.append(Record(raw=line, value=decode_line(path, index, line, decode)))
        except MalformedRecordError as exc:
            # A final line without newline is usually an append still in flight.
            in_flight = index == len(lines) and not text.endswith("\n")
            _logger.log(
                logging.DEBUG if in_flight else logging.WARNING,
                "jsonl.malformed_record",
                extra={"path": str(path), "line": index, "error": str(exc)},
            )
            records.append(Record(raw=line, value=None))
    return records


def values(records: Iterable[Record[T]]) -> list[T]:
    return [record.value for record in records if record.value is not None]


def write_records(path: Path, records: Iterable[Record[T]], encode: Callable[[T], dict[str, Any]]) -> None:
    """Atomically replace ``path`` with ``records``.

    The caller must hold the file's lock. Unlocked readers observe either the
    old or the new contents, never a partial file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            for record in records:
                line = record.raw if record.value is None else dumps(encode(record.value))
                handle.write(line + "\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def append_line(path: Path, payload: dict[str, Any]) -> None:
    """Append one record; the caller must hold the file's lock."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(path), os.O_RDWR | os.O_APPEND | os.O_CREAT, 0o600)
    size = os.fstat(fd).st_size
    # Never glue a new record onto a truncated last line.
    needs_newline = size > 0 and os.pread(fd, 1, size - 1) != b"\n"
    with os.fdopen(fd, "a", encoding="utf-8") as handle:
        handle.write(("\n" if needs_newline else "") + dumps(payload) + "\n")
        handle.flush()
        os.fsync(handle.fileno())
