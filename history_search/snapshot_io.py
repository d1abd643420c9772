"""Binary persistence for cache snapshots.

File layout::

    header  <4sIIdQ16s>  magic, version, entry count, built_at, body length, fingerprint
    body    msgpack map   records, trigram postings, prefix postings

The header is fixed-size so a snapshot can be validated at startup without
decoding the body.
"""
import logging
import os
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

import msgpack
from msgpack.exceptions import UnpackException

from history_search.errors import PersistenceError
from history_search.index import CacheSnapshot, freeze_postings
from history_search.models import HistoryRecord

logger = logging.getLogger(__name__)

SNAPSHOT_MAGIC = b"HSNP"
SNAPSHOT_VERSION = 1
HEADER_FORMAT = "<4sIIdQ16s"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)
FINGERPRINT_SIZE = 16


@dataclass(frozen=True)
class SnapshotHeader:
    magic: bytes
    version: int
    entry_count: int
    built_at: float
    body_length: int
    fingerprint: str

    @property
    def is_supported(self) -> bool:
        return self.magic == SNAPSHOT_MAGIC and self.version == SNAPSHOT_VERSION


def _encode_fingerprint(fingerprint: str) -> bytes:
    raw = fingerprint.encode("ascii", errors="ignore")[:FINGERPRINT_SIZE]
    return raw.ljust(FINGERPRINT_SIZE, b"\0")


def _encode_body(snapshot: CacheSnapshot) -> bytes:
    body = {
        "records": [record.to_dict() for record in snapshot.records],
        "trigrams": {key: list(ids) for key, ids in snapshot.trigrams.items()},
        "prefixes": {key: list(ids) for key, ids in snapshot.prefixes.items()},
    }
    return msgpack.packb(body, use_bin_type=True)


def save_snapshot(snapshot: CacheSnapshot, path: Path) -> int:
    """Write a snapshot atomically (temp file, then rename).

    Args:
        snapshot: Snapshot to persist
        path: Destination file

    Returns:
        Number of bytes written

    Raises:
        PersistenceError: If the file cannot be written
    """
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        body = _encode_body(snapshot)
        header = struct.pack(
            HEADER_FORMAT,
            SNAPSHOT_MAGIC,
            SNAPSHOT_VERSION,
            snapshot.entry_count,
            snapshot.built_at,
            len(body),
            _encode_fingerprint(snapshot.fingerprint),
        )
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp_path, "wb") as f:
            f.write(header)
            f.write(body)
        os.replace(tmp_path, path)
    except (OSError, ValueError, TypeError, struct.error) as e:
        try:
            tmp_path.unlink()
        except OSError:
            pass
        raise PersistenceError(f"Failed to save snapshot to {path}: {e}") from e

    return HEADER_SIZE + len(body)


def read_header(path: Path) -> SnapshotHeader:
    """Read only the fixed-size header.

    Raises:
        PersistenceError: If the file is missing or too short
    """
    try:
        with open(path, "rb") as f:
            raw = f.read(HEADER_SIZE)
    except OSError as e:
        raise PersistenceError(f"Cannot read snapshot header from {path}: {e}") from e

    if len(raw) < HEADER_SIZE:
        raise PersistenceError(f"Snapshot file too small: {len(raw)} bytes")

    magic, version, entry_count, built_at, body_length, fingerprint = struct.unpack(HEADER_FORMAT, raw)
    return SnapshotHeader(
        magic=magic,
        version=version,
        entry_count=entry_count,
        built_at=built_at,
        body_length=body_length,
        fingerprint=fingerprint.rstrip(b"\0").decode("ascii", errors="replace"),
    )


def is_valid_snapshot_file(path: Path) -> bool:
    """Cheap validity check: magic, version and declared size, without decoding the body."""
    try:
        header = read_header(path)
        size = path.stat().st_size
    except (PersistenceError, OSError):
        return False
    return header.is_supported and size >= HEADER_SIZE + header.body_length


def load_snapshot(path: Path) -> CacheSnapshot:
    """Load a snapshot written by ``save_snapshot``.

    Raises:
        PersistenceError: If the file is missing, truncated, from another
            format version, or does not decode
    """
    header = read_header(path)
    if not header.is_supported:
        raise PersistenceError(
            f"Unsupported snapshot format: magic={header.magic!r} version={header.version}"
        )

    try:
        with open(path, "rb") as f:
            f.seek(HEADER_SIZE)
            raw_body = f.read(header.body_length)
    except OSError as e:
        raise PersistenceError(f"Cannot read snapshot body from {path}: {e}") from e

    if len(raw_body) != header.body_length:
        raise PersistenceError(
            f"Snapshot body truncated: expected {header.body_length} bytes, got {len(raw_body)}"
        )

    try:
        body: Dict[str, Any] = msgpack.unpackb(raw_body, raw=False, strict_map_key=False)
        records = tuple(HistoryRecord.from_dict(item) for item in body["records"])
        trigrams = freeze_postings(body["trigrams"])
        prefixes = freeze_postings(body["prefixes"])
    except (ValueError, KeyError, TypeError, UnpackException) as e:
        raise PersistenceError(f"Corrupt snapshot body in {path}: {e}") from e

    if len(records) != header.entry_count:
        raise PersistenceError(
            f"Snapshot entry count mismatch: header says {header.entry_count}, body has {len(records)}"
        )

    logger.debug("Loaded snapshot with %d entries from %s", len(records), path)
    return CacheSnapshot(
        records=records,
        trigrams=trigrams,
        prefixes=prefixes,
        built_at=header.built_at,
        fingerprint=header.fingerprint,
    )
