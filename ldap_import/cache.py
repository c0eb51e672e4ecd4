"""
Directory state cache for one analysis run.

The preloader fetches every candidate entity and container with one bulk call
each, so that per-row planning only performs dictionary lookups. When a bulk
call fails the preloader falls back to per-key lookups on a small worker pool;
a failing single lookup is treated as "not found".
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional, Iterable, Set

from ldap_import.directory.base import DirectoryService, DirectoryError
from ldap_import.models import ExistingEntity

logger = logging.getLogger(__name__)


class ConcurrentSet:
    """Case-insensitive set with an atomic check-and-add."""

    def __init__(self, items: Iterable[str] = ()):
        self._lock = threading.Lock()
        self._items: Set[str] = {item.casefold() for item in items}

    def add_if_absent(self, item: str) -> bool:
        """Add ``item``; return True only for the caller that actually added it."""
        key = item.casefold()
        with self._lock:
            if key in self._items:
                return False
            self._items.add(key)
            return True

    def __contains__(self, item: str) -> bool:
        with self._lock:
            return item.casefold() in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


@dataclass
class StateCache:
    """Entities and containers known to exist when the run started."""
    entities: Dict[str, ExistingEntity] = field(default_factory=dict)
    containers: Set[str] = field(default_factory=set)
    identifiers: Dict[int, str] = field(default_factory=dict)
    stats: Dict[str, Any] = field(default_factory=dict)

    def get_entity(self, identifier: str) -> Optional[ExistingEntity]:
        return self.entities.get(identifier.casefold())

    def has_container(self, dn: str) -> bool:
        return dn.casefold() in self.containers


class StatePreloader:
    """
    Builds a ``StateCache`` from the directory.

    Args:
        directory: Directory backend
        fallback_workers: Concurrency cap for per-key fallback lookups
    """

    def __init__(self, directory: DirectoryService, fallback_workers: int = 10):
        self.directory = directory
        self.fallback_workers = max(1, int(fallback_workers))

    def load(self, identifiers: Iterable[str], container_paths: Iterable[str]) -> StateCache:
        identifiers = sorted({i for i in identifiers if i}, key=str.casefold)
        container_paths = sorted({p for p in container_paths if p}, key=str.casefold)

        cache = StateCache()
        cache.entities, entity_mode = self._load_entities(identifiers)
        cache.containers, container_mode = self._load_containers(container_paths)
        cache.stats = {
            'identifiers_requested': len(identifiers),
            'entities_found': len(cache.entities),
            'containers_requested': len(container_paths),
            'containers_found': len(cache.containers),
            'entity_lookup': entity_mode,
            'container_lookup': container_mode,
        }
        logger.info(f"Preloaded {len(cache.entities)}/{len(identifiers)} entities and "
                    f"{len(cache.containers)}/{len(container_paths)} containers "
                    f"({entity_mode}/{container_mode})")
        return cache

    def _load_entities(self, identifiers: List[str]):
        if not identifiers:
            return {}, 'bulk'
        try:
            found = self.directory.get_entities(identifiers)
            return {key.casefold(): entity for key, entity in found.items()}, 'bulk'
        except DirectoryError as e:
            logger.warning(f"Bulk entity lookup failed, falling back to single lookups: {e}")

        def _lookup(identifier):
            try:
                return self.directory.get_entity(identifier)
            except DirectoryError as e:
                logger.warning(f"Lookup of {identifier} failed, treating as not found: {e}")
                return None

        with ThreadPoolExecutor(max_workers=self.fallback_workers) as pool:
            results = list(pool.map(_lookup, identifiers))
        return {entity.identifier.casefold(): entity for entity in results if entity}, 'fallback'

    def _load_containers(self, paths: List[str]):
        if not paths:
            return set(), 'bulk'
        try:
            return {dn.casefold() for dn in self.directory.get_existing_containers(paths)}, 'bulk'
        except DirectoryError as e:
            logger.warning(f"Bulk container lookup failed, falling back to single lookups: {e}")

        def _exists(path):
            try:
                return self.directory.container_exists(path)
            except DirectoryError as e:
                logger.warning(f"Lookup of container {path} failed, treating as missing: {e}")
                return False

        with ThreadPoolExecutor(max_workers=self.fallback_workers) as pool:
            flags = list(pool.map(_exists, paths))
        return {path.casefold() for path, exists in zip(paths, flags) if exists}, 'fallback'
