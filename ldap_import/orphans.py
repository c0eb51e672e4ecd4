"""
Orphan detection and empty container cleanup.

Entities found under the managed root that are absent from the import file
are orphans and are planned for deletion. Containers left without occupants
by those deletions are then planned for removal, deepest first, together with
any empty groups they hold.

Cleanup during analysis is only a prediction: nothing has been deleted yet.
The executor re-checks every container before deleting it and runs this same
cleanup again after the deletions have actually happened.
"""

import logging
from typing import Dict, List, Iterable, Optional, Set, Tuple

from ldap_import.directory.base import DirectoryService, DirectoryError, ENTITY, GROUP, CONTAINER
from ldap_import.models import ActionType, PlannedAction, AttributeMap
from ldap_import.paths import ancestors_within, path_depth

logger = logging.getLogger(__name__)


def orphan_error_action(message: str) -> PlannedAction:
    return PlannedAction(ActionType.ERROR, 'orphan-cleanup', '', message=message)


class OrphanDetector:
    """Finds directory entities under a root that the import no longer lists."""

    def __init__(self, directory: DirectoryService):
        self.directory = directory

    def detect(self, source_identifiers: Iterable[str], root: str) -> Tuple[List[PlannedAction], List[str]]:
        """
        Plan deletions for orphaned entities.

        Args:
            source_identifiers: Final identifiers of every row in the import
            root: Managed root container

        Returns:
            Tuple of (planned actions, containers that were scanned). On a
            configuration or directory error the actions hold a single ERROR
            and the scanned list is empty.
        """
        if not root:
            logger.error("Orphan cleanup requested but no root container is configured")
            return [orphan_error_action("No root container configured; orphan cleanup skipped")], []

        wanted = {identifier.casefold() for identifier in source_identifiers if identifier}

        try:
            entities = self.directory.list_entities(root)
        except DirectoryError as e:
            logger.error(f"Could not list entities under {root}: {e}")
            return [orphan_error_action(f"Orphan scan of {root} failed: {e}")], []

        actions = []
        scopes: List[str] = []
        seen_scopes: Set[str] = set()
        for entity in entities:
            if entity.container.casefold() not in seen_scopes:
                seen_scopes.add(entity.container.casefold())
                scopes.append(entity.container)
            if entity.identifier.casefold() in wanted:
                continue
            actions.append(PlannedAction(
                ActionType.DELETE_ENTITY,
                entity.identifier,
                entity.container,
                AttributeMap({
                    'distinguishedName': entity.dn,
                    'displayName': entity.attributes.get('displayName', ''),
                }),
                message=f"Delete {entity.identifier}: not present in import",
            ))

        logger.info(f"Orphan scan of {root}: {len(entities)} entities, {len(actions)} orphans, "
                    f"{len(scopes)} containers")
        return actions, scopes


class EmptyContainerCleanup:
    """Plans removal of containers (and their empty groups) that end up with no occupants."""

    def __init__(self, directory: DirectoryService):
        self.directory = directory

    @staticmethod
    def candidates(scopes: Iterable[str], root: str) -> List[str]:
        """Scopes and their ancestors strictly below ``root``, deepest first."""
        found: Dict[str, str] = {}
        for scope in scopes:
            for dn in ancestors_within(scope, root):
                found.setdefault(dn.casefold(), dn)
        return sorted(found.values(), key=path_depth, reverse=True)

    def plan(self, scopes: Iterable[str], root: str,
             planned_deletions: Optional[List[PlannedAction]] = None,
             exclude: Iterable[str] = (),
             keep: Iterable[str] = ()) -> List[PlannedAction]:
        """
        Plan DELETE_GROUP/DELETE_CONTAINER actions for containers that will be empty.

        Args:
            scopes: Containers touched by deletions
            root: Managed root; never a candidate
            planned_deletions: DELETE_ENTITY actions not yet executed; their
                entities are counted as already gone
            exclude: Containers already deleted
            keep: Containers that will hold objects created by this run

        Returns:
            Planned actions, deepest containers first
        """
        if not root:
            return []

        gone_ids: Set[str] = set()
        gone_dns: Set[str] = set()
        for action in planned_deletions or []:
            gone_ids.add(action.object_key.casefold())
            dn = action.attributes.get('distinguishedName')
            if dn:
                gone_dns.add(dn.casefold())

        excluded = {dn.casefold() for dn in exclude}
        kept = {dn.casefold() for dn in keep}
        empty: Set[str] = set(excluded)
        actions: List[PlannedAction] = []

        for dn in self.candidates(scopes, root):
            if dn.casefold() in excluded or dn.casefold() in kept:
                continue
            try:
                groups = self._removable_groups(dn, gone_ids, gone_dns, empty)
            except DirectoryError as e:
                logger.warning(f"Could not check whether {dn} is empty: {e}")
                continue
            if groups is None:
                continue

            for group_dn in groups:
                actions.append(PlannedAction(ActionType.DELETE_GROUP, group_dn, dn,
                                             message=f"Delete empty group {group_dn}"))
            actions.append(PlannedAction(ActionType.DELETE_CONTAINER, dn, dn,
                                         message=f"Delete empty container {dn}"))
            empty.add(dn.casefold())

        if actions:
            logger.info(f"Planned removal of {sum(a.action_type == ActionType.DELETE_CONTAINER for a in actions)} "
                        f"empty containers")
        return actions

    def _removable_groups(self, dn: str, gone_ids: Set[str], gone_dns: Set[str],
                          empty: Set[str]) -> Optional[List[str]]:
        """Empty groups blocking ``dn``, or None if anything else occupies it."""
        groups = []
        for child in self.directory.list_children(dn):
            if child.kind == ENTITY and (child.identifier.casefold() in gone_ids
                                         or child.dn.casefold() in gone_dns):
                continue
            if child.kind == CONTAINER and child.dn.casefold() in empty:
                continue
            if child.kind == GROUP:
                members = self.directory.list_group_members(child.dn)
                if all(member.casefold() in gone_dns for member in members):
                    groups.append(child.dn)
                    continue
            return None
        return groups
