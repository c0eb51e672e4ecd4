"""
Execution of planned import actions.

Actions run batch by batch in scheduler order; a batch finishes completely
before the next one starts. Independent per-entity batches run on a bounded
thread pool, container and group changes run one at a time. Share provisioning
is grouped by file server and sent in capped sub-batches with a short pause in
between, so one server never receives the whole batch at once.

A failing action never stops the run: its exception is recorded as a failed
result. Deletions are re-checked at execution time against the current
settings (protected containers) and the current directory state (emptiness).
"""

import time
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Callable

from ldap_import.config import ImportSettings
from ldap_import.directory.base import DirectoryService
from ldap_import.logging_setup import audit_logger
from ldap_import.models import ActionResult, ActionType, ExecutionResult, PlannedAction
from ldap_import.orphans import EmptyContainerCleanup
from ldap_import.paths import is_within, same_path
from ldap_import.progress import (
    ProgressReporter, STATUS_EXECUTING, STATUS_CLEANUP, STATUS_COMPLETED, STATUS_CANCELLED,
)
from ldap_import.provisioning.base import ResourceProvisioner, ProvisioningError
from ldap_import.scheduler import ActionBatch, partition

logger = logging.getLogger(__name__)


class DeletionRefused(Exception):
    """Raised when a deletion targets a protected or non-empty object."""
    pass


class ImportExecutor:
    """
    Applies planned actions to the directory and provisioning backends.

    Args:
        directory: Directory backend
        settings: Import settings; read again at every deletion
        provisioner: Share provisioning backend
        progress: Progress reporter for the session
    """

    def __init__(self, directory: DirectoryService, settings: ImportSettings,
                 provisioner: Optional[ResourceProvisioner] = None,
                 progress: Optional[ProgressReporter] = None):
        self.directory = directory
        self.settings = settings
        self.provisioner = provisioner
        self.progress = progress or ProgressReporter()
        self._total = 0

        self._handlers: Dict[ActionType, Callable[[PlannedAction], str]] = {
            ActionType.CREATE_CONTAINER: self._create_container,
            ActionType.CREATE_ENTITY: self._create_entity,
            ActionType.UPDATE_ENTITY: self._update_entity,
            ActionType.MOVE_ENTITY: self._move_entity,
            ActionType.PROVISION_SHARE: self._provision_share,
            ActionType.CREATE_GROUP: self._create_group,
            ActionType.ADD_MEMBERSHIP: self._add_membership,
            ActionType.DELETE_ENTITY: self._delete_entity,
            ActionType.DELETE_GROUP: self._delete_group,
            ActionType.DELETE_CONTAINER: self._delete_container,
        }

    @property
    def max_workers(self) -> int:
        return max(1, int(self.settings.execution.get('max_workers') or 1))

    def execute(self, actions: List[PlannedAction],
                cancel_event: Optional[threading.Event] = None) -> ExecutionResult:
        """
        Run all actions and return the aggregated result.

        Args:
            actions: Planned actions, in any order
            cancel_event: Set to stop the run between actions

        Returns:
            ExecutionResult describing every action that was attempted
        """
        cancel_event = cancel_event or threading.Event()
        result = ExecutionResult()
        self._total = len(actions)

        logger.info(f"Executing {len(actions)} actions with up to {self.max_workers} workers")
        self.progress.report(0, STATUS_EXECUTING, f"Executing {len(actions)} actions")

        for batch in partition(actions):
            if cancel_event.is_set():
                break
            self._run_batch(batch, result, cancel_event)
            self.progress.report_fraction(result.attempted, self._total, STATUS_EXECUTING,
                                          f"Finished {len(batch.actions)} {batch.action_type.value} actions")

        if self.settings.execution.get('post_cleanup') and not cancel_event.is_set():
            self._post_cleanup(result, cancel_event)

        result.cancelled = cancel_event.is_set()
        result.finish()

        message = result.summary_message()
        if result.cancelled:
            logger.warning(f"{message}; {self._total - result.attempted} actions not started")
            self.progress.report_fraction(result.attempted, self._total, STATUS_CANCELLED, message)
        else:
            logger.info(f"{message} in {result.duration_seconds:.2f}s")
            self.progress.report(100, STATUS_COMPLETED, message)
        return result

    # Batches

    def _run_batch(self, batch: ActionBatch, result: ExecutionResult, cancel_event: threading.Event):
        logger.debug(f"Running {len(batch.actions)} {batch.action_type.value} actions "
                     f"({'parallel' if batch.parallel else 'sequential'})")
        if batch.action_type == ActionType.PROVISION_SHARE:
            self._run_provisioning(batch.actions, result, cancel_event)
        elif batch.parallel and len(batch.actions) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                list(pool.map(lambda action: self._run_action(action, result, cancel_event), batch.actions))
        else:
            for action in batch.actions:
                if cancel_event.is_set():
                    break
                self._run_action(action, result, cancel_event)

    def _run_provisioning(self, actions: List[PlannedAction], result: ExecutionResult,
                          cancel_event: threading.Event):
        size = max(1, int(self.settings.execution.get('provision_batch_size') or 1))
        pause = float(self.settings.execution.get('provision_batch_pause_seconds') or 0)

        by_host: Dict[str, List[PlannedAction]] = {}
        for action in actions:
            by_host.setdefault(action.resource_key or '', []).append(action)

        first = True
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            for host, host_actions in by_host.items():
                for start in range(0, len(host_actions), size):
                    if cancel_event.is_set():
                        return
                    if not first and pause:
                        time.sleep(pause)
                    first = False
                    chunk = host_actions[start:start + size]
                    logger.debug(f"Provisioning {len(chunk)} shares on {host or 'default host'}")
                    list(pool.map(lambda action: self._run_action(action, result, cancel_event), chunk))

    def _run_action(self, action: PlannedAction, result: ExecutionResult,
                    cancel_event: threading.Event) -> Optional[ActionResult]:
        if cancel_event.is_set():
            return None

        outcome = ActionResult(action)
        if action.action_type == ActionType.ERROR:
            outcome.fail(action.message or f"Planning error for {action.object_key}")
        else:
            outcome.start()
            try:
                outcome.succeed(self._handlers[action.action_type](action))
            except DeletionRefused as e:
                audit_logger.log_deletion_refused(action.object_key, str(e))
                outcome.fail(str(e))
            except Exception as e:
                logger.error(f"{action.describe()} failed: {e}")
                outcome.fail(f"{action.describe()} failed: {e}")

        result.record(outcome)
        audit_logger.log_action(action.action_type.value, action.object_key, action.target_path,
                                outcome.succeeded, outcome.message)
        self.progress.report_fraction(result.attempted, max(self._total, result.attempted),
                                      STATUS_EXECUTING, outcome.message or action.describe())
        return outcome

    # Deletion guards

    def _protected_paths(self) -> List[str]:
        paths = [self.settings.default_container] + self.settings.protected_containers
        return [path for path in paths if path]

    def _check_not_protected(self, dn: str):
        for protected in self._protected_paths():
            # the protected path itself and every container above it
            if same_path(dn, protected) or is_within(protected, dn):
                raise DeletionRefused(f"{dn} is protected ({protected})")

    # Handlers

    def _create_container(self, action: PlannedAction) -> str:
        self.directory.create_container(action.target_path)
        return f"Container {action.target_path} created"

    def _create_entity(self, action: PlannedAction) -> str:
        dn = self.directory.create_entity(action.object_key, action.target_path, action.attributes.to_dict())
        return f"Created {dn}"

    def _update_entity(self, action: PlannedAction) -> str:
        if self.directory.update_entity(action.object_key, action.attributes.to_dict()):
            return f"Updated {action.object_key}"
        return f"{action.object_key} already up to date"

    def _move_entity(self, action: PlannedAction) -> str:
        source = action.attributes.get('source_path')
        if not source:
            raise ValueError(f"Move of {action.object_key} has no source container")
        new_dn = self.directory.move_entity(action.object_key, source, action.target_path)
        return f"Moved {action.object_key} to {new_dn}"

    def _provision_share(self, action: PlannedAction) -> str:
        if self.provisioner is None:
            raise ProvisioningError("No share provisioner configured")
        attributes = action.attributes
        self.provisioner.provision_share(
            attributes['server'],
            attributes['local_path'],
            attributes['share_name'],
            attributes['account'],
            list(attributes.get('subfolders') or []),
        )
        return f"Share \\\\{attributes['server']}\\{attributes['share_name']} provisioned"

    def _create_group(self, action: PlannedAction) -> str:
        dn = self.directory.create_group(
            action.attributes.get('groupName') or action.object_key,
            action.target_path,
            security=bool(action.attributes.get('security', True)),
            description=action.attributes.get('description', ''),
        )
        return f"Group {dn} created"

    def _add_membership(self, action: PlannedAction) -> str:
        group_dn = action.attributes.get('groupDn') or action.target_path
        if self.directory.add_member(group_dn, action.object_key):
            return f"Added {action.object_key} to {group_dn}"
        return f"{action.object_key} already member of {group_dn}"

    def _delete_entity(self, action: PlannedAction) -> str:
        root = self.settings.default_container
        if not root or not is_within(action.target_path, root):
            raise DeletionRefused(f"{action.object_key} in {action.target_path} is outside the managed root")
        dn = action.attributes.get('distinguishedName')
        if dn:
            self._check_not_protected(dn)
        self.directory.delete_entity(action.object_key)
        return f"Deleted {action.object_key}"

    def _delete_group(self, action: PlannedAction) -> str:
        self._check_not_protected(action.object_key)
        members = self.directory.list_group_members(action.object_key)
        if members:
            raise DeletionRefused(f"Group {action.object_key} still has {len(members)} members")
        self.directory.delete_group(action.object_key)
        return f"Deleted group {action.object_key}"

    def _delete_container(self, action: PlannedAction) -> str:
        self._check_not_protected(action.target_path)
        children = self.directory.list_children(action.target_path)
        if children:
            raise DeletionRefused(f"Container {action.target_path} is not empty ({len(children)} objects)")
        self.directory.delete_container(action.target_path)
        return f"Deleted container {action.target_path}"

    # Post-execution cleanup

    def _post_cleanup(self, result: ExecutionResult, cancel_event: threading.Event):
        root = self.settings.default_container
        deleted = result.successes_of(ActionType.DELETE_ENTITY)
        if not root or not deleted:
            return

        removed_containers = [r.action.target_path for r in result.successes_of(ActionType.DELETE_CONTAINER)]
        removed_groups = {r.action.object_key.casefold() for r in result.successes_of(ActionType.DELETE_GROUP)}

        self.progress.report(99, STATUS_CLEANUP, "Checking for containers emptied by deletions")
        actions = EmptyContainerCleanup(self.directory).plan(
            [r.action.target_path for r in deleted], root, exclude=removed_containers)
        actions = [a for a in actions
                   if not (a.action_type == ActionType.DELETE_GROUP and a.object_key.casefold() in removed_groups)]
        if not actions:
            return

        logger.info(f"Post-execution cleanup: {len(actions)} additional deletions")
        self._total += len(actions)
        for batch in partition(actions):
            if cancel_event.is_set():
                break
            self._run_batch(batch, result, cancel_event)
