from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, Optional, Sequence

from .config import DEFAULT_CACHE_TTL_SECONDS, config_base_dir
from .s3 import BucketInfo, ObjectInfo

LOGGER = logging.getLogger(__name__)

CACHE_VERSION = 1
OPERATION_BUCKETS = "buckets"
OPERATION_OBJECTS = "objects"


class ListingCache:
    """Persistent stale-while-revalidate cache for listing results.

    Entries are keyed by an operation name and its parameters. An entry is
    treated as missing once it is older than the TTL or once the AWS config
    and credentials files change, since either may change what is visible.
    A TTL of zero keeps entries until they are invalidated.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
    ) -> None:
        self.path = path or config_base_dir() / "listing-cache.json"
        self.ttl_seconds = max(0, int(ttl_seconds))

    def _aws_config_path(self) -> Path:
        return Path.home() / ".aws" / "config"

    def _aws_credentials_path(self) -> Path:
        return Path.home() / ".aws" / "credentials"

    def _aws_config_hash(self) -> Optional[str]:
        hasher = hashlib.sha256()
        found = False
        sources = (
            ("config", self._aws_config_path()),
            ("credentials", self._aws_credentials_path()),
        )
        for label, path in sources:
            try:
                data = path.read_bytes()
            except OSError:
                continue
            hasher.update(label.encode("utf-8"))
            hasher.update(b"\0")
            hasher.update(data)
            hasher.update(b"\0")
            found = True
        if not found:
            return None
        return hasher.hexdigest()

    def _entry_key(self, operation: str, params: Sequence[object]) -> str:
        return json.dumps([operation, *params])

    def _read(self) -> dict[str, dict]:
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError):
            LOGGER.warning("Discarding unreadable listing cache %s", self.path)
            return {}
        if not isinstance(payload, dict) or payload.get("version") != CACHE_VERSION:
            return {}
        entries = payload.get("entries")
        if not isinstance(entries, dict):
            return {}
        return entries

    def _write(self, entries: dict[str, dict]) -> bool:
        payload = {"version": CACHE_VERSION, "entries": entries}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            temp_path = self.path.with_suffix(".tmp")
            temp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            temp_path.replace(self.path)
        except OSError:
            LOGGER.exception("Could not write listing cache %s", self.path)
            return False
        return True

    def get(self, operation: str, params: Sequence[object]) -> Optional[object]:
        entry = self._read().get(self._entry_key(operation, params))
        if not isinstance(entry, dict) or "value" not in entry:
            return None
        if entry.get("aws_config_sha256") != self._aws_config_hash():
            LOGGER.debug("Cache entry for %s is stale: AWS config changed", operation)
            return None
        if self.ttl_seconds <= 0:
            return entry["value"]
        saved_at = _parse_timestamp(entry.get("saved_at"))
        if saved_at is None:
            return None
        age = datetime.now(timezone.utc) - saved_at
        if age > timedelta(seconds=self.ttl_seconds):
            LOGGER.debug("Cache entry for %s expired", operation)
            return None
        return entry["value"]

    def put(self, operation: str, params: Sequence[object], value: object) -> bool:
        entries = self._read()
        entries[self._entry_key(operation, params)] = {
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "aws_config_sha256": self._aws_config_hash(),
            "value": value,
        }
        return self._write(entries)

    def invalidate(
        self,
        operation: Optional[str] = None,
        params: Optional[Sequence[object]] = None,
    ) -> bool:
        if operation is None:
            return self._write({})
        entries = self._read()
        if params is not None:
            entries.pop(self._entry_key(operation, params), None)
        else:
            entries = {
                key: entry
                for key, entry in entries.items()
                if _entry_operation(key) != operation
            }
        return self._write(entries)

    def load_buckets(
        self, profile: Optional[str], region: Optional[str]
    ) -> Optional[list[BucketInfo]]:
        value = self.get(OPERATION_BUCKETS, (profile, region))
        if not isinstance(value, list):
            return None
        return decode_buckets(value)

    def save_buckets(
        self,
        profile: Optional[str],
        region: Optional[str],
        buckets: Iterable[BucketInfo],
    ) -> bool:
        return self.put(OPERATION_BUCKETS, (profile, region), encode_buckets(buckets))

    def load_objects(
        self, profile: Optional[str], region: Optional[str], bucket: str
    ) -> Optional[list[ObjectInfo]]:
        value = self.get(OPERATION_OBJECTS, (profile, region, bucket))
        if not isinstance(value, list):
            return None
        return decode_objects(value)

    def save_objects(
        self,
        profile: Optional[str],
        region: Optional[str],
        bucket: str,
        objects: Iterable[ObjectInfo],
    ) -> bool:
        return self.put(
            OPERATION_OBJECTS, (profile, region, bucket), encode_objects(objects)
        )


def _entry_operation(key: str) -> Optional[str]:
    try:
        decoded = json.loads(key)
    except json.JSONDecodeError:
        return None
    if isinstance(decoded, list) and decoded and isinstance(decoded[0], str):
        return decoded[0]
    return None


def _parse_timestamp(value: object) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def encode_buckets(buckets: Iterable[BucketInfo]) -> list[dict]:
    return [
        {"name": bucket.name, "creation_date": _format_timestamp(bucket.creation_date)}
        for bucket in buckets
    ]


def decode_buckets(rows: list) -> list[BucketInfo]:
    buckets: list[BucketInfo] = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        name = row.get("name")
        if not isinstance(name, str) or not name:
            continue
        buckets.append(
            BucketInfo(name=name, creation_date=_parse_timestamp(row.get("creation_date")))
        )
    return buckets


def encode_objects(objects: Iterable[ObjectInfo]) -> list[dict]:
    return [
        {
            "key": info.key,
            "size": info.size,
            "last_modified": _format_timestamp(info.last_modified),
            "storage_class": info.storage_class,
        }
        for info in objects
    ]


def decode_objects(rows: list) -> list[ObjectInfo]:
    objects: list[ObjectInfo] = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        key = row.get("key")
        size = row.get("size")
        if not isinstance(key, str) or not key:
            continue
        if isinstance(size, bool) or not isinstance(size, int):
            size = 0
        storage_class = row.get("storage_class")
        objects.append(
            ObjectInfo(
                key=key,
                size=size,
                last_modified=_parse_timestamp(row.get("last_modified")),
                storage_class=storage_class if isinstance(storage_class, str) else None,
            )
        )
    return objects
