"""
CSV output for received stream records

Records are flattened into (column, value) pairs. Nested messages prefix
their field names ("pose_position_x"), repeated fields are numbered
("covariance_0", "covariance_1", ...). Works for protobuf messages,
dataclasses, mappings and plain scalars.
"""

import csv
import dataclasses
import logging
from collections.abc import Mapping
from typing import Any, List, Optional, TextIO, Tuple

logger = logging.getLogger(__name__)


def _is_message(value: Any) -> bool:
    return hasattr(value, "ListFields") and hasattr(value, "DESCRIPTOR")


def _is_sequence(value: Any) -> bool:
    if isinstance(value, (str, bytes, bytearray, Mapping)) or _is_message(value):
        return False
    return hasattr(value, "__len__") and hasattr(value, "__getitem__")


def _fields(record: Any) -> List[Tuple[str, Any]]:
    if _is_message(record):
        # Only fields that are set, in declaration order
        return [(descriptor.name, value) for descriptor, value in record.ListFields()]
    if dataclasses.is_dataclass(record) and not isinstance(record, type):
        return [(f.name, getattr(record, f.name)) for f in dataclasses.fields(record)]
    if isinstance(record, Mapping):
        return list(record.items())
    raise TypeError(f"Cannot flatten record of type {type(record).__name__}")


def _is_composite(value: Any) -> bool:
    return (_is_message(value) or isinstance(value, Mapping)
            or (dataclasses.is_dataclass(value) and not isinstance(value, type)))


def flatten(record: Any, prefix: str = "") -> List[Tuple[str, Any]]:
    """
    Flatten a record into ordered (column, value) pairs.

    Raw payloads (bytes) become a single "payload" column holding hex.
    """
    if isinstance(record, (bytes, bytearray)):
        return [(prefix + "payload", record.hex())]

    columns = []
    for name, value in _fields(record):
        if _is_composite(value):
            columns.extend(flatten(value, f"{prefix}{name}_"))
        elif _is_sequence(value):
            for i, item in enumerate(value):
                if _is_composite(item):
                    columns.extend(flatten(item, f"{prefix}{name}_{i}_"))
                else:
                    columns.append((f"{prefix}{name}_{i}", item))
        elif isinstance(value, (bytes, bytearray)):
            columns.append((prefix + name, value.hex()))
        else:
            columns.append((prefix + name, value))
    return columns


def csv_header(record: Any) -> List[str]:
    return [name for name, _ in flatten(record)]


def csv_line(record: Any) -> List[Any]:
    return [value for _, value in flatten(record)]


class CsvRecordWriter:
    """
    Writes records to a CSV file, with a header taken from the first record.

    Example:
        with open('pose.csv', 'w', newline='') as f:
            writer = CsvRecordWriter(f)
            for frame in frames:
                writer.write(frame)
    """

    def __init__(self, output: TextIO):
        self._writer = csv.writer(output)
        self.header: Optional[List[str]] = None
        self.records_written = 0

    def write(self, record: Any):
        columns = flatten(record)
        if self.header is None:
            self.header = [name for name, _ in columns]
            self._writer.writerow(self.header)
        elif len(columns) != len(self.header):
            # Optional fields may be unset in some records
            logger.debug(f"Record has {len(columns)} columns, header has {len(self.header)}")
        self._writer.writerow([value for _, value in columns])
        self.records_written += 1
