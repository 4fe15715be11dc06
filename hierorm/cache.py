"""
Lookup caches for single-record lookups and per-instance component sets.

Both caches belong to one Engine and are guarded by a re-entrant lock, so an
engine can be shared between threads; scope an engine to one request or
transaction when stale reads across writers are not acceptable.
"""
import json
import hashlib
import logging
import threading
from typing import Any, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger("LookupCache")


def lookup_key(*parts: Any) -> str:
    """md5 over the JSON form of the given filter/sort/join/limit parts."""
    payload = json.dumps(parts, sort_keys=True, default=str)
    return hashlib.md5(payload.encode("utf-8")).hexdigest()


class LookupCache:
    """
    Single-record cache keyed by (class, md5(filter, sort)).

    Misses are cached as None. Writes flush every class of the written
    record's ancestry and bump the write generation of its hierarchy, which
    component caches compare against.
    """

    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled
        self._lock = threading.RLock()
        self._records: Dict[str, Dict[str, Any]] = {}
        self._generations: Dict[str, int] = {}
        self.hits = 0
        self.misses = 0

    def lookup(self, class_name: str, key: str) -> Tuple[bool, Any]:
        """Return (hit, record). Destroyed records are evicted and reported as a miss."""
        if not self.enabled:
            return False, None
        with self._lock:
            entries = self._records.get(class_name)
            if entries is None or key not in entries:
                self.misses += 1
                return False, None
            record = entries[key]
            if record is not None and getattr(record, "destroyed", False):
                logger.debug(f"Evicting destroyed {record!r} from {class_name} cache")
                del entries[key]
                self.misses += 1
                return False, None
            self.hits += 1
            return True, record

    def store(self, class_name: str, key: str, record: Any) -> None:
        if not self.enabled:
            return
        with self._lock:
            self._records.setdefault(class_name, {})[key] = record

    def flush(self, class_names: Iterable[str], base_class: Optional[str] = None) -> None:
        with self._lock:
            names = list(class_names)
            for name in names:
                self._records.pop(name, None)
            if base_class is not None:
                self._generations[base_class] = self._generations.get(base_class, 0) + 1
            logger.debug(f"Flushed lookup cache for {names}")

    def flush_all(self) -> None:
        with self._lock:
            self._records.clear()
            for base_class in list(self._generations):
                self._generations[base_class] += 1
            logger.debug("Flushed entire lookup cache")

    def generation(self, base_class: str) -> int:
        with self._lock:
            return self._generations.get(base_class, 0)

    def size(self) -> int:
        with self._lock:
            return sum(len(entries) for entries in self._records.values())

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "enabled": self.enabled,
                "entries": self.size(),
                "hits": self.hits,
                "misses": self.misses,
                "generations": dict(self._generations),
            }


class ComponentCache:
    """
    Per-record cache of resolved components keyed by ``<relation>`` or
    ``<relation>_<md5>``. Entries stamped with a generation are discarded once
    the target hierarchy has been written since they were stored.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._entries: Dict[str, Tuple[Optional[Tuple[str, int]], Any]] = {}

    def get(self, key: str, cache: Optional[LookupCache] = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stamp, value = entry
            if stamp is not None and cache is not None:
                base_class, generation = stamp
                if cache.generation(base_class) != generation:
                    del self._entries[key]
                    return None
            return value

    def put(self, key: str, value: Any, stamp: Optional[Tuple[str, int]] = None) -> Any:
        with self._lock:
            self._entries[key] = (stamp, value)
            return value

    def invalidate(self, relation: str) -> None:
        """Drop the entry for ``relation`` and every keyed query on it."""
        with self._lock:
            prefix = f"{relation}_"
            for key in list(self._entries):
                if key == relation or key.startswith(prefix):
                    del self._entries[key]

    def values(self) -> List[Any]:
        with self._lock:
            return [value for _, value in self._entries.values()]

    def items(self) -> List[Tuple[str, Any]]:
        with self._lock:
            return [(key, value) for key, (_, value) in self._entries.items()]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
