"""Two-tier key/value cache with size routing and lazy TTL expiry.

Small payloads live in an in-process string store with a byte quota; large
payloads are written to a directory of JSON files and a small metadata
record (``<key>_meta``) in the small tier tells readers where to look.
Expiry is checked when an entry is read; nothing sweeps in the background.

Tier failures never escape the public methods: writes fall back to the
other tier, reads degrade to a miss, and every failure is logged.
"""

import json
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Optional
from urllib.parse import quote, unquote
import logging

logger = logging.getLogger(__name__)

SMALL = "small"
LARGE = "large"
META_SUFFIX = "_meta"


class TierUnavailableError(Exception):
    """A storage tier cannot be used in this runtime."""


class CacheTier:
    """Interface of a string key/value storage tier."""

    name: str = ""

    def available(self) -> bool:
        raise NotImplementedError

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def keys(self) -> Iterable[str]:
        raise NotImplementedError


class MemoryTier(CacheTier):
    """In-process store with a total size quota."""

    name = SMALL

    def __init__(self, max_bytes: int = 10 * 1024 * 1024) -> None:
        self.max_bytes = max_bytes
        self._items: dict[str, str] = {}
        self._used = 0

    def available(self) -> bool:
        return True

    def get(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set(self, key: str, value: str) -> None:
        size = len(value.encode("utf-8"))
        previous = self._items.get(key)
        previous_size = len(previous.encode("utf-8")) if previous is not None else 0
        if self._used - previous_size + size > self.max_bytes:
            raise TierUnavailableError(f"Small tier quota exceeded writing {key}")
        self._items[key] = value
        self._used += size - previous_size

    def delete(self, key: str) -> None:
        value = self._items.pop(key, None)
        if value is not None:
            self._used -= len(value.encode("utf-8"))

    def keys(self) -> Iterable[str]:
        return list(self._items)


class FileTier(CacheTier):
    """One JSON file per key under a directory."""

    name = LARGE

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def available(self) -> bool:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError:
            return False
        return os.access(self.directory, os.W_OK)

    def _path(self, key: str) -> Path:
        return self.directory / f"{quote(key, safe='')}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        if not self.available():
            raise TierUnavailableError(f"Cache directory {self.directory} is not writable")
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(value, encoding="utf-8")
        tmp.replace(path)

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def keys(self) -> Iterable[str]:
        if not self.directory.exists():
            return []
        return [unquote(p.stem) for p in self.directory.glob("*.json")]


@dataclass
class CacheStatus:
    """Introspection result for one cache key."""

    exists: bool = False
    tier: Optional[str] = None
    size: int = 0
    count: int = 0
    timestamp: float = 0.0
    age: float = 0.0


def _item_count(data: Any) -> int:
    return len(data) if isinstance(data, (list, tuple)) else 1


class TieredCache:
    """Cache that routes entries to a small or large tier by serialized size."""

    def __init__(
        self,
        small: Optional[CacheTier] = None,
        large: Optional[CacheTier] = None,
        prefix: str = "etsy",
        size_threshold: int = 5 * 1024 * 1024,
        default_max_age: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.small = small if small is not None else MemoryTier()
        self.large = large if large is not None else FileTier(".cache/tiered")
        self.prefix = prefix
        self.size_threshold = size_threshold
        self.default_max_age = default_max_age
        self._clock = clock

    def _full_key(self, key: str) -> str:
        return f"{self.prefix}_{key}"

    # Low level tier access; failures are logged and swallowed here only

    def _tier_get(self, tier: CacheTier, key: str) -> Optional[str]:
        try:
            if not tier.available():
                return None
            return tier.get(key)
        except (TierUnavailableError, OSError) as e:
            logger.warning(f"Cache {tier.name} tier read failed for {key}: {e}")
            return None
        except UnicodeDecodeError as e:
            logger.error(f"Undecodable cache entry {key} in {tier.name} tier, purging: {e}")
            self._tier_delete(tier, key)
            return None

    def _tier_delete(self, tier: CacheTier, key: str) -> None:
        try:
            tier.delete(key)
        except (TierUnavailableError, OSError) as e:
            logger.warning(f"Cache {tier.name} tier delete failed for {key}: {e}")

    def _tier_set(self, tier: CacheTier, key: str, value: str) -> bool:
        try:
            if not tier.available():
                raise TierUnavailableError(f"{tier.name} tier unavailable")
            tier.set(key, value)
            return True
        except (TierUnavailableError, OSError) as e:
            logger.warning(f"Cache {tier.name} tier write failed for {key}: {e}")
            return False

    def _read_record(self, tier: CacheTier, key: str) -> Optional[tuple[dict, str]]:
        """Read and validate a ``{"timestamp", "data"}`` record.

        Corrupt records are purged and reported as missing.
        """
        raw = self._tier_get(tier, key)
        if raw is None:
            return None
        try:
            record = json.loads(raw)
            if not isinstance(record, dict) or "data" not in record:
                raise ValueError("missing data field")
            float(record["timestamp"])
        except (ValueError, TypeError, KeyError) as e:
            logger.error(f"Corrupt cache entry {key} in {tier.name} tier, purging: {e}")
            self._tier_delete(tier, key)
            return None
        return record, raw

    def _read_meta(self, full_key: str) -> Optional[dict]:
        found = self._read_record(self.small, full_key + META_SUFFIX)
        if found is None:
            return None
        meta = found[0]["data"]
        if not isinstance(meta, dict) or meta.get("tier") not in (SMALL, LARGE):
            self._tier_delete(self.small, full_key + META_SUFFIX)
            return None
        return meta

    def _remove(self, full_key: str) -> None:
        self._tier_delete(self.small, full_key)
        self._tier_delete(self.small, full_key + META_SUFFIX)
        self._tier_delete(self.large, full_key)

    def save(self, key: str, data: Any) -> bool:
        """Store ``data`` under ``key``, replacing any previous entry.

        Returns:
            True if some tier accepted the entry.
        """
        full_key = self._full_key(key)
        try:
            serialized = json.dumps(data)
        except (TypeError, ValueError) as e:
            logger.error(f"Cache value for {key} is not serializable: {e}")
            return False

        size = len(serialized.encode("utf-8"))
        timestamp = self._clock()
        record = f'{{"timestamp": {json.dumps(timestamp)}, "data": {serialized}}}'
        preferred = LARGE if size > self.size_threshold else SMALL

        self._remove(full_key)

        order = (self.large, self.small) if preferred == LARGE else (self.small, self.large)
        for tier in order:
            if not self._tier_set(tier, full_key, record):
                continue
            if tier is self.large:
                meta = {
                    "size": size,
                    "count": _item_count(data),
                    "timestamp": timestamp,
                    "tier": LARGE,
                }
                meta_record = json.dumps({"timestamp": timestamp, "data": meta})
                # Without metadata, readers fall back to probing both tiers
                self._tier_set(self.small, full_key + META_SUFFIX, meta_record)
            if tier.name != preferred:
                logger.warning(f"Cache entry {key} stored in {tier.name} tier instead of {preferred}")
            logger.debug(f"Cached {key} in {tier.name} tier ({size} bytes)")
            return True

        logger.error(f"No cache tier accepted {key}")
        return False

    def _is_expired(self, timestamp: float, max_age: float) -> bool:
        return self._clock() - timestamp > max_age

    def load(self, key: str, max_age: Optional[float] = None) -> Any:
        """Return the cached value, or None if missing or older than ``max_age`` seconds."""
        max_age = self.default_max_age if max_age is None else max_age
        full_key = self._full_key(key)

        meta = self._read_meta(full_key)
        if meta is not None and meta["tier"] == LARGE:
            if self._is_expired(float(meta.get("timestamp", 0)), max_age):
                logger.info(f"Cache entry {key} expired")
                return None
            found = self._read_record(self.large, full_key)
            if found is None:
                # Metadata points at a vanished entry
                self._tier_delete(self.small, full_key + META_SUFFIX)
                return None
            return found[0]["data"]

        for tier in (self.small, self.large):
            found = self._read_record(tier, full_key)
            if found is None:
                continue
            record = found[0]
            if self._is_expired(float(record["timestamp"]), max_age):
                logger.info(f"Cache entry {key} expired")
                return None
            return record["data"]

        return None

    def clear(self, key: Optional[str] = None) -> int:
        """Remove one key from both tiers, or every key under the prefix.

        Returns:
            Number of stored items removed.
        """
        if key is not None:
            full_key = self._full_key(key)
            removed = sum(
                1
                for tier, k in (
                    (self.small, full_key),
                    (self.small, full_key + META_SUFFIX),
                    (self.large, full_key),
                )
                if self._tier_get(tier, k) is not None
            )
            self._remove(full_key)
            logger.info(f"Cleared cache entry {key}")
            return removed

        removed = 0
        namespace = f"{self.prefix}_"
        for tier in (self.small, self.large):
            try:
                keys = list(tier.keys()) if tier.available() else []
            except (TierUnavailableError, OSError) as e:
                logger.warning(f"Cache {tier.name} tier listing failed: {e}")
                continue
            for k in keys:
                if k.startswith(namespace):
                    self._tier_delete(tier, k)
                    removed += 1
        logger.info(f"Cleared {removed} cache entries under {namespace}")
        return removed

    def status(self, key: str) -> CacheStatus:
        """Describe the entry for ``key``. Only undecodable entries are removed."""
        full_key = self._full_key(key)
        now = self._clock()

        raw_meta = self._tier_get(self.small, full_key + META_SUFFIX)
        if raw_meta is not None:
            try:
                meta = json.loads(raw_meta)["data"]
                timestamp = float(meta.get("timestamp", 0))
                return CacheStatus(
                    exists=True,
                    tier=LARGE,
                    size=int(meta.get("size", 0)),
                    count=int(meta.get("count", 0)),
                    timestamp=timestamp,
                    age=now - timestamp,
                )
            except (ValueError, TypeError, KeyError, AttributeError):
                pass

        for tier in (self.small, self.large):
            raw = self._tier_get(tier, full_key)
            if raw is None:
                continue
            try:
                record = json.loads(raw)
                timestamp = float(record.get("timestamp", 0))
                data = record["data"]
            except (ValueError, TypeError, KeyError, AttributeError):
                continue
            return CacheStatus(
                exists=True,
                tier=tier.name,
                size=len(raw.encode("utf-8")),
                count=_item_count(data),
                timestamp=timestamp,
                age=now - timestamp,
            )

        return CacheStatus()
