"""
Core data model for the LDAP bulk import engine.

Defines the attribute mapping used for every directory record, the planned
action and its execution result, and the aggregate analysis/execution results
returned to callers. Execution results are shared between worker threads and
are therefore updated under a lock.
"""

import threading
from collections.abc import MutableMapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Any, Optional, Iterable


class AttributeMap(MutableMapping):
    """
    Attribute dictionary with case-insensitive keys.

    Keys are case-folded once on insertion; the first spelling seen for a key
    is kept for display and for writing back to the directory.
    """

    def __init__(self, data=None, **kwargs):
        self._store: Dict[str, tuple] = {}
        if data is not None:
            self.update(data)
        if kwargs:
            self.update(kwargs)

    @staticmethod
    def _fold(key: str) -> str:
        return str(key).casefold()

    def __setitem__(self, key, value):
        folded = self._fold(key)
        original = self._store[folded][0] if folded in self._store else key
        self._store[folded] = (original, value)

    def __getitem__(self, key):
        return self._store[self._fold(key)][1]

    def __delitem__(self, key):
        del self._store[self._fold(key)]

    def __iter__(self):
        return (original for original, _ in self._store.values())

    def __len__(self):
        return len(self._store)

    def __contains__(self, key):
        return self._fold(key) in self._store

    def copy(self) -> 'AttributeMap':
        return AttributeMap(self)

    def to_dict(self) -> Dict[str, Any]:
        """Return a plain dict using the preserved key spelling."""
        return {original: value for original, value in self._store.values()}

    def __eq__(self, other):
        if isinstance(other, (AttributeMap, dict)):
            other = other if isinstance(other, AttributeMap) else AttributeMap(other)
            return {k: v for k, (_, v) in self._store.items()} == \
                {k: v for k, (_, v) in other._store.items()}
        return NotImplemented

    def __repr__(self):
        return f"AttributeMap({self.to_dict()!r})"


class ActionType(Enum):
    """Kinds of directory change the planner can emit."""
    CREATE_CONTAINER = 'create_container'
    CREATE_ENTITY = 'create_entity'
    UPDATE_ENTITY = 'update_entity'
    MOVE_ENTITY = 'move_entity'
    PROVISION_SHARE = 'provision_share'
    CREATE_GROUP = 'create_group'
    ADD_MEMBERSHIP = 'add_membership'
    DELETE_ENTITY = 'delete_entity'
    DELETE_GROUP = 'delete_group'
    DELETE_CONTAINER = 'delete_container'
    ERROR = 'error'


DELETION_TYPES = frozenset({
    ActionType.DELETE_ENTITY,
    ActionType.DELETE_GROUP,
    ActionType.DELETE_CONTAINER,
})


@dataclass(frozen=True)
class ExistingEntity:
    """Snapshot of an entity as found in the directory at preload time."""
    identifier: str
    dn: str
    container: str
    attributes: AttributeMap = field(default_factory=AttributeMap, compare=False)


@dataclass
class PlannedAction:
    """A single change the executor is asked to apply."""
    action_type: ActionType
    object_key: str
    target_path: str
    attributes: AttributeMap = field(default_factory=AttributeMap)
    message: str = ''
    row_index: Optional[int] = None
    resource_key: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.attributes, AttributeMap):
            self.attributes = AttributeMap(self.attributes or {})

    def describe(self) -> str:
        return f"{self.action_type.value} {self.object_key} @ {self.target_path}"


@dataclass
class AnalysisSummary:
    """Aggregate counts for one planning pass."""
    rows: int = 0
    unchanged: int = 0
    errors: int = 0
    counts: Dict[str, int] = field(default_factory=dict)
    duration_seconds: float = 0.0

    def count(self, action_type: ActionType) -> int:
        return self.counts.get(action_type.value, 0)

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.counts)
        data.update({
            'rows': self.rows,
            'unchanged': self.unchanged,
            'errors': self.errors,
            'duration_seconds': round(self.duration_seconds, 3),
        })
        return data


@dataclass
class AnalysisResult:
    """Ordered action list produced by the planner plus its summary."""
    actions: List[PlannedAction]
    summary: AnalysisSummary
    identifiers: Dict[int, str] = field(default_factory=dict)
    scanned_scopes: List[str] = field(default_factory=list)

    def actions_of(self, action_type: ActionType) -> List[PlannedAction]:
        return [a for a in self.actions if a.action_type == action_type]


class ActionState(Enum):
    PENDING = 'pending'
    RUNNING = 'running'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'


_TRANSITIONS = {
    ActionState.PENDING: {ActionState.RUNNING, ActionState.FAILED},
    ActionState.RUNNING: {ActionState.SUCCEEDED, ActionState.FAILED},
    ActionState.SUCCEEDED: set(),
    ActionState.FAILED: set(),
}


class ActionResult:
    """Outcome of one action, moving Pending -> Running -> Succeeded|Failed."""

    def __init__(self, action: PlannedAction):
        self.action = action
        self.state = ActionState.PENDING
        self.message = ''
        self.started_at: Optional[datetime] = None
        self.finished_at: Optional[datetime] = None

    def _move_to(self, state: ActionState):
        if state not in _TRANSITIONS[self.state]:
            raise ValueError(f"Illegal transition {self.state.value} -> {state.value} "
                             f"for {self.action.describe()}")
        self.state = state

    def start(self):
        self._move_to(ActionState.RUNNING)
        self.started_at = datetime.now()

    def succeed(self, message: str = ''):
        self._move_to(ActionState.SUCCEEDED)
        self.message = message
        self.finished_at = datetime.now()

    def fail(self, message: str):
        if self.started_at is None:
            self.started_at = datetime.now()
        self._move_to(ActionState.FAILED)
        self.message = message
        self.finished_at = datetime.now()

    @property
    def succeeded(self) -> bool:
        return self.state == ActionState.SUCCEEDED

    @property
    def duration_seconds(self) -> float:
        if not self.started_at or not self.finished_at:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def __repr__(self):
        return f"ActionResult({self.action.describe()}, {self.state.value}, {self.message!r})"


class ExecutionResult:
    """
    Thread-safe accumulator of action results for one execution run.

    Per-type counters only count successes; failures are tracked in aggregate
    and are available individually through ``results``.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.results: List[ActionResult] = []
        self.counts: Dict[str, int] = {}
        self.succeeded = 0
        self.failed = 0
        self.warnings: List[str] = []
        self.cancelled = False
        self.started_at = datetime.now()
        self.finished_at: Optional[datetime] = None

    def record(self, result: ActionResult):
        with self._lock:
            self.results.append(result)
            if result.succeeded:
                self.succeeded += 1
                key = result.action.action_type.value
                self.counts[key] = self.counts.get(key, 0) + 1
            else:
                self.failed += 1

    def warn(self, message: str):
        with self._lock:
            self.warnings.append(message)

    def finish(self):
        self.finished_at = datetime.now()

    @property
    def attempted(self) -> int:
        return self.succeeded + self.failed

    @property
    def duration_seconds(self) -> float:
        end = self.finished_at or datetime.now()
        return (end - self.started_at).total_seconds()

    def failures(self) -> List[ActionResult]:
        return [r for r in self.results if not r.succeeded]

    def successes_of(self, action_type: ActionType) -> List[ActionResult]:
        return [r for r in self.results if r.succeeded and r.action.action_type == action_type]

    def summary_message(self) -> str:
        message = f"Import completed with {self.succeeded} successes and {self.failed} errors"
        if self.cancelled:
            message += " (cancelled)"
        return message

    def to_dict(self) -> Dict[str, Any]:
        return {
            'attempted': self.attempted,
            'succeeded': self.succeeded,
            'failed': self.failed,
            'counts': dict(self.counts),
            'warnings': list(self.warnings),
            'cancelled': self.cancelled,
            'duration_seconds': round(self.duration_seconds, 3),
            'message': self.summary_message(),
        }


def count_by_type(actions: Iterable[PlannedAction]) -> Dict[str, int]:
    """Count planned actions per action type value."""
    counts: Dict[str, int] = {}
    for action in actions:
        key = action.action_type.value
        counts[key] = counts.get(key, 0) + 1
    return counts
