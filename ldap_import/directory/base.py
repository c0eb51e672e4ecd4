"""
Directory service interface consumed by the import engine.

This module defines the abstract base class that every directory backend must
implement. The planner only reads through it; the executor also applies
changes through it.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Any, Optional, Iterable, Set

from ldap_import.models import ExistingEntity

logger = logging.getLogger(__name__)


class DirectoryError(Exception):
    """Base exception for directory operation errors."""
    pass


class DirectoryUnavailable(DirectoryError):
    """Raised when the directory cannot be reached or bound."""
    pass


ENTITY = 'entity'
GROUP = 'group'
CONTAINER = 'container'
OTHER = 'other'


@dataclass(frozen=True)
class DirectoryChild:
    """Immediate child object of a container."""
    dn: str
    kind: str
    identifier: str = ''


class DirectoryService(ABC):
    """
    Abstract directory backend.

    Entities are addressed by their identifier (``sAMAccountName``), containers
    and groups by DN.
    """

    @abstractmethod
    def check_health(self) -> bool:
        """Return True when the directory is reachable and the bind is valid."""
        pass

    @abstractmethod
    def get_entity(self, identifier: str) -> Optional[ExistingEntity]:
        """Fetch a single entity by identifier, None when absent."""
        pass

    def get_entities(self, identifiers: Iterable[str]) -> Dict[str, ExistingEntity]:
        """
        Fetch many entities at once.

        Returns a dict keyed by case-folded identifier. Backends should
        override this with a real bulk query; the default loops.
        """
        found = {}
        for identifier in identifiers:
            entity = self.get_entity(identifier)
            if entity:
                found[entity.identifier.casefold()] = entity
        return found

    def entity_exists(self, identifier: str) -> bool:
        return self.get_entity(identifier) is not None

    @abstractmethod
    def container_exists(self, dn: str) -> bool:
        pass

    def get_existing_containers(self, dns: Iterable[str]) -> Set[str]:
        """Return the case-folded subset of ``dns`` that exist."""
        return {dn.casefold() for dn in dns if self.container_exists(dn)}

    @abstractmethod
    def create_entity(self, identifier: str, container: str, attributes: Dict[str, Any]) -> str:
        """Create an entity and return its DN."""
        pass

    @abstractmethod
    def update_entity(self, identifier: str, attributes: Dict[str, Any]) -> bool:
        """Replace the given attributes; return True if anything changed."""
        pass

    @abstractmethod
    def delete_entity(self, identifier: str) -> None:
        pass

    @abstractmethod
    def move_entity(self, identifier: str, source: str, destination: str) -> str:
        """Move an entity between containers and return its new DN."""
        pass

    @abstractmethod
    def get_entity_container(self, identifier: str) -> Optional[str]:
        pass

    @abstractmethod
    def create_container(self, dn: str) -> None:
        pass

    @abstractmethod
    def delete_container(self, dn: str) -> None:
        pass

    @abstractmethod
    def group_exists(self, dn: str) -> bool:
        pass

    @abstractmethod
    def create_group(self, name: str, container: str, security: bool = True,
                     description: str = '') -> str:
        """Create a group and return its DN."""
        pass

    @abstractmethod
    def delete_group(self, dn: str) -> None:
        pass

    @abstractmethod
    def add_member(self, group_dn: str, identifier: str) -> bool:
        """Add an entity to a group; return False if it already was a member."""
        pass

    @abstractmethod
    def list_group_members(self, group_dn: str) -> List[str]:
        """Member DNs of a group."""
        pass

    @abstractmethod
    def list_children(self, dn: str) -> List[DirectoryChild]:
        """Immediate children of a container."""
        pass

    @abstractmethod
    def list_containers(self, root: str) -> List[str]:
        """DNs of all containers below ``root`` (recursive, root excluded)."""
        pass

    @abstractmethod
    def list_entities(self, root: str) -> List[ExistingEntity]:
        """All entities below ``root`` (recursive)."""
        pass

    def close(self):
        """Release backend resources."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
