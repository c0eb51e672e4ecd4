"""
Action ordering.

Every action type has a fixed rank so that containers exist before their
members are created, entities exist before they join groups, and members are
removed before the groups and containers holding them. Sorting is stable, so
actions of the same type keep the order in which they were planned (parent
containers before their children).
"""

from dataclasses import dataclass
from typing import List

from ldap_import.models import ActionType, PlannedAction

PRIORITIES = {
    ActionType.CREATE_CONTAINER: 10,
    ActionType.CREATE_ENTITY: 20,
    ActionType.UPDATE_ENTITY: 30,
    ActionType.MOVE_ENTITY: 40,
    ActionType.PROVISION_SHARE: 50,
    ActionType.CREATE_GROUP: 55,
    ActionType.ADD_MEMBERSHIP: 60,
    ActionType.DELETE_ENTITY: 70,
    ActionType.DELETE_GROUP: 80,
    ActionType.DELETE_CONTAINER: 90,
    ActionType.ERROR: 100,
}

# Independent per-entity operations; anything touching containers or groups runs one at a time.
PARALLEL_SAFE = frozenset({
    ActionType.CREATE_ENTITY,
    ActionType.UPDATE_ENTITY,
    ActionType.MOVE_ENTITY,
    ActionType.PROVISION_SHARE,
    ActionType.DELETE_ENTITY,
})


@dataclass
class ActionBatch:
    """Consecutive actions of one type, run together by the executor."""
    action_type: ActionType
    actions: List[PlannedAction]
    parallel: bool


def priority(action: PlannedAction) -> int:
    return PRIORITIES[action.action_type]


def schedule(actions: List[PlannedAction]) -> List[PlannedAction]:
    """Return ``actions`` sorted by priority, ties kept in input order."""
    return sorted(actions, key=priority)


def partition(actions: List[PlannedAction]) -> List[ActionBatch]:
    """Group scheduled actions into per-type batches in priority order."""
    batches: List[ActionBatch] = []
    for action in schedule(actions):
        if batches and batches[-1].action_type == action.action_type:
            batches[-1].actions.append(action)
        else:
            batches.append(ActionBatch(action.action_type, [action],
                                       action.action_type in PARALLEL_SAFE))
    return batches
