#!/usr/bin/env python3
"""
Result Output Module

Writes one JSON document per fetched message to a line-delimited JSON file.
Mail API payloads are passed through as-is; the serializer only has to cope
with values the json module does not understand natively (dates, enums,
bytes) and with payloads that refer back to themselves.
"""

import base64
import dataclasses
import datetime
import json
import os
from enum import Enum
from typing import Any, Dict, List, Optional, Set

import structlog

from fetch_errors import WriterError

# Fixed, round-trippable UTC date form
DATETIME_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

_SKIP = object()


@dataclasses.dataclass(frozen=True)
class OutputRecord:
    """A message paired with the attachments fetched for it"""
    message: Any
    attachments: List[Any] = dataclasses.field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"Message": self.message, "Attachments": list(self.attachments)}


def format_datetime(value: datetime.datetime) -> str:
    """Render a datetime in UTC; naive values are taken to be UTC already"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc).strftime(DATETIME_FORMAT)


def to_jsonable(value: Any, _active: Optional[Set[int]] = None) -> Any:
    """
    Convert value into plain JSON types.

    A container that is reached again while it is still being converted is
    dropped from its parent instead of raising a circular reference error.
    """
    if _active is None:
        _active = set()

    if isinstance(value, Enum):
        return value.name
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, datetime.datetime):
        return format_datetime(value)
    if isinstance(value, (datetime.date, datetime.time)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")

    if id(value) in _active:
        return _SKIP

    _active.add(id(value))
    try:
        if isinstance(value, OutputRecord):
            return to_jsonable(value.to_dict(), _active)
        if isinstance(value, dict):
            result = {}
            for key, item in value.items():
                converted = to_jsonable(item, _active)
                if converted is not _SKIP:
                    result[str(key)] = converted
            return result
        if isinstance(value, (list, tuple, set, frozenset)):
            return [converted for converted in (to_jsonable(item, _active) for item in value) if converted is not _SKIP]
        if dataclasses.is_dataclass(value) and not isinstance(value, type):
            fields = {f.name: getattr(value, f.name) for f in dataclasses.fields(value)}
            return to_jsonable(fields, _active)
        if hasattr(value, "__dict__"):
            public = {k: v for k, v in vars(value).items() if not k.startswith("_")}
            return to_jsonable(public, _active)
    finally:
        _active.discard(id(value))

    return str(value)


def dumps(value: Any) -> str:
    """Serialize value to a single line of JSON"""
    return json.dumps(to_jsonable(value), ensure_ascii=False, separators=(",", ":"))


class ResultWriter:
    """Handles file creation and line writing for fetched messages"""

    def __init__(self, output_file: str, logger=None):
        """
        Args:
            output_file: Path of the line-delimited JSON file to append to
            logger: Logger handle, defaults to this module's logger
        """
        self.output_file = output_file
        self.file_handle = None
        self.record_count = 0
        self.logger = logger or structlog.get_logger(__name__)

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def open(self) -> None:
        """Create parent directories and open the output file for appending"""
        try:
            os.makedirs(os.path.dirname(self.output_file) or ".", exist_ok=True)
            self.file_handle = open(self.output_file, "a", encoding="utf-8")
        except OSError as e:
            raise WriterError(f"Failed to create output file {self.output_file}: {e}") from e
        self.logger.debug("Created output file", path=self.output_file)

    def write_line(self, record: Any) -> None:
        """
        Append record as one JSON line.

        The file is flushed after every record so that a run that fails
        partway leaves every earlier line readable.
        """
        if not self.file_handle:
            raise WriterError("Output file not opened. Call open() first.")

        line = dumps(record)
        try:
            self.file_handle.write(line)
            self.file_handle.write("\n")
            self.file_handle.flush()
        except OSError as e:
            raise WriterError(f"Failed to write to output file {self.output_file}: {e}") from e

        self.record_count += 1

    def close(self) -> None:
        """Close the output file; safe to call more than once"""
        if not self.file_handle:
            return
        try:
            self.file_handle.close()
        except OSError as e:
            raise WriterError(f"Failed to close output file {self.output_file}: {e}") from e
        finally:
            self.file_handle = None
        self.logger.debug("Output file finalized", path=self.output_file, records=self.record_count)
