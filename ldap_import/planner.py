"""
Import analysis: turns import rows into an ordered list of directory changes.

The planner resolves duplicate identities, maps every row to directory
attributes, preloads the current directory state in bulk and then decides per
row whether the entity must be created, moved, updated or left alone. Gated
auxiliary actions (share provisioning, class group membership) are evaluated
for every row independently of that primary decision.

Rows can be planned sequentially or on a thread pool; both produce the same
actions. The only state written during per-row planning is the registry of
containers and groups planned in this run, which uses ``ConcurrentSet``.
"""

import os
import time
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, List, Any, Optional

from ldap_import.cache import ConcurrentSet, StateCache, StatePreloader
from ldap_import.config import ConfigurationError, ImportSettings
from ldap_import.directory.base import DirectoryService, DirectoryError
from ldap_import.identity import DuplicateIdentityError, IdentityDisambiguator
from ldap_import.mapping import (
    RowMapper, ValidationError, MissingIdentityError, render_placeholders, template_errors,
)
from ldap_import.models import (
    ActionType, AnalysisResult, AnalysisSummary, AttributeMap, ExistingEntity,
    PlannedAction, count_by_type,
)
from ldap_import.orphans import OrphanDetector, EmptyContainerCleanup
from ldap_import.paths import (
    ancestors_within, build_container_path, container_name, missing_levels, path_depth, same_path,
)
from ldap_import.progress import ProgressReporter, STATUS_ANALYZING
from ldap_import.provisioning.base import ResourceProvisioner, ProvisioningError
from ldap_import.scheduler import schedule

logger = logging.getLogger(__name__)

EXCLUDED_ATTRIBUTES = frozenset(name.casefold() for name in [
    'password', 'userPassword', 'unicodePwd', 'objectClass', 'objectGUID',
    'objectSid', 'whenCreated', 'whenChanged', 'lastLogon', 'lastLogonTimestamp',
    'pwdLastSet', 'distinguishedName', 'cn', 'name',
])

CASE_SENSITIVE_ATTRIBUTES = frozenset(name.casefold() for name in [
    'description', 'info', 'homeDirectory', 'scriptPath',
])


def values_equal(attribute: str, left: Any, right: Any) -> bool:
    left = '' if left is None else str(left).strip()
    right = '' if right is None else str(right).strip()
    if not left and not right:
        return True
    if attribute.casefold() in CASE_SENSITIVE_ATTRIBUTES:
        return left == right
    return left.casefold() == right.casefold()


def diff_attributes(record: AttributeMap, existing: AttributeMap,
                    identifier_attribute: str = 'sAMAccountName') -> AttributeMap:
    """
    Attributes of ``record`` whose value differs from ``existing``.

    Secrets, object identifiers, timestamps and the identifier itself are
    never compared.
    """
    changes = AttributeMap()
    skipped = EXCLUDED_ATTRIBUTES | {identifier_attribute.casefold()}
    for name, value in record.items():
        if name.casefold() in skipped:
            continue
        if not values_equal(name, value, existing.get(name)):
            changes[name] = value
    return changes


@dataclass
class PreparedRow:
    """A row after disambiguation and mapping, before comparison."""
    index: int
    row: Dict[str, Any]
    container: str
    record: Optional[AttributeMap] = None
    error: Optional[ValidationError] = None


class _PlanningRun:
    """Mutable state of one ``analyze`` call, shared by planning workers."""

    def __init__(self, cache: StateCache, total_rows: int, progress: ProgressReporter, interval: int):
        self.cache = cache
        self.containers = ConcurrentSet()
        self.groups = ConcurrentSet()
        self.new_groups = set()
        self.members: Dict[str, Optional[set]] = {}
        self.group_lock = threading.Lock()
        self.counter_lock = threading.Lock()
        self.unchanged = 0
        self.processed = 0
        self.total_rows = total_rows
        self.progress = progress
        self.interval = max(1, interval)
        self.share_warning_logged = False

    def container_known(self, dn: str) -> bool:
        return self.cache.has_container(dn) or dn in self.containers

    def row_done(self, unchanged: bool):
        with self.counter_lock:
            self.processed += 1
            if unchanged:
                self.unchanged += 1
            processed = self.processed
        if processed % self.interval == 0 or processed == self.total_rows:
            self.progress.report_fraction(processed, self.total_rows, STATUS_ANALYZING,
                                          f"Analyzed {processed}/{self.total_rows} rows", 5, 85)


class ImportPlanner:
    """
    Plans the directory changes needed to match a batch of import rows.

    Args:
        directory: Directory backend used for reads
        settings: Import settings
        provisioner: Share provisioning backend, required only when share
            provisioning is enabled
        progress: Progress reporter for the session
    """

    def __init__(self, directory: DirectoryService, settings: ImportSettings,
                 provisioner: Optional[ResourceProvisioner] = None,
                 progress: Optional[ProgressReporter] = None):
        self.directory = directory
        self.settings = settings
        self.provisioner = provisioner
        self.progress = progress or ProgressReporter()
        self.mapper = RowMapper.from_settings(settings)
        self.disambiguator = IdentityDisambiguator(
            self.mapper,
            settings.first_name_column,
            settings.last_name_column,
            settings.max_identifier_length,
        )
        self.preloader = StatePreloader(directory, settings.planning['preload_fallback_workers'])

    @property
    def root(self) -> str:
        return self.settings.default_container

    def analyze(self, rows: List[Dict[str, Any]]) -> AnalysisResult:
        """
        Build the ordered action list for ``rows``.

        Args:
            rows: Import rows (column name to raw value)

        Returns:
            AnalysisResult with scheduled actions and summary counts
        """
        started = time.monotonic()
        logger.info(f"Analyzing {len(rows)} import rows under {self.root}")
        self.progress.report(0, STATUS_ANALYZING, f"Analyzing {len(rows)} rows")

        resolution = self.disambiguator.resolve(rows)
        prepared = [self._prepare(index, row, resolution.failures.get(index))
                    for index, row in enumerate(resolution.rows)]

        identifiers = [p.record[self.mapper.identifier_attribute] for p in prepared if p.record]
        self.progress.report(2, STATUS_ANALYZING, "Loading directory state")
        cache = self.preloader.load(identifiers, self._candidate_containers(prepared))
        cache.identifiers = dict(resolution.identifiers)
        self.progress.report(5, STATUS_ANALYZING, "Directory state loaded")

        run = _PlanningRun(cache, len(prepared), self.progress, self.settings.planning['progress_interval'])
        actions: List[PlannedAction] = self._ensure_root(run)
        for row_actions in self._plan_rows(prepared, run):
            actions.extend(row_actions)

        scanned: List[str] = []
        if self.settings.flag('delete_not_in_import'):
            self.progress.report(88, STATUS_ANALYZING, "Scanning for orphaned entities")
            orphan_actions, scanned = OrphanDetector(self.directory).detect(
                resolution.identifiers.values(), self.root)
            actions.extend(orphan_actions)
            if scanned and self.settings.flag('cleanup_empty_containers'):
                deletions = [a for a in orphan_actions if a.action_type == ActionType.DELETE_ENTITY]
                actions.extend(EmptyContainerCleanup(self.directory).plan(
                    scanned, self.root, deletions, keep=self._occupied_containers(prepared)))

        ordered = schedule(self._parents_first(actions))
        summary = AnalysisSummary(
            rows=len(rows),
            unchanged=run.unchanged,
            errors=sum(1 for a in ordered if a.action_type == ActionType.ERROR),
            counts=count_by_type(ordered),
            duration_seconds=time.monotonic() - started,
        )
        self.progress.report(100, STATUS_ANALYZING,
                             f"Analysis complete: {len(ordered)} actions, {summary.unchanged} unchanged")
        logger.info(f"Analysis complete in {summary.duration_seconds:.2f}s: {summary.to_dict()}")
        return AnalysisResult(ordered, summary, identifiers=dict(resolution.identifiers),
                              scanned_scopes=scanned)

    # Preparation

    def _prepare(self, index: int, row: Dict[str, Any],
                 failure: Optional[DuplicateIdentityError] = None) -> PreparedRow:
        source = AttributeMap(row)
        container = build_container_path(str(source.get(self.settings.container_column) or ''), self.root)
        prepared = PreparedRow(index=index, row=row, container=container, error=failure)
        if failure is not None:
            return prepared
        try:
            prepared.record = self.mapper.map_row(row)
        except ValidationError as e:
            logger.warning(f"Row {index}: {e}")
            prepared.error = e
            return prepared

        template = self.settings.folders.get('home_directory_template')
        if template:
            prepared.record['homeDirectory'] = render_placeholders(
                template, prepared.record,
                container=container_name(container),
                identifier_attribute=self.mapper.identifier_attribute,
            )
            if self.settings.folders.get('home_drive'):
                prepared.record['homeDrive'] = self.settings.folders['home_drive']
        return prepared

    def _candidate_containers(self, prepared: List[PreparedRow]) -> List[str]:
        paths = {self.root.casefold(): self.root} if self.root else {}
        for item in prepared:
            for level in missing_levels(item.container, lambda _: False):
                paths.setdefault(level.casefold(), level)
        return list(paths.values())

    def _occupied_containers(self, prepared: List[PreparedRow]) -> List[str]:
        """Target containers of valid rows and their ancestors below the root."""
        occupied = []
        for item in prepared:
            if item.record is not None:
                occupied.extend(ancestors_within(item.container, self.root))
        return occupied

    def _ensure_root(self, run: _PlanningRun) -> List[PlannedAction]:
        if not self.root or run.container_known(self.root):
            return []
        if not self.settings.flag('create_missing_containers'):
            logger.warning(f"Root container {self.root} does not exist and automatic creation is disabled")
            return []
        actions: List[PlannedAction] = []
        self._register_containers(self.root, run, actions)
        return actions

    # Row planning

    def _plan_rows(self, prepared: List[PreparedRow], run: _PlanningRun) -> List[List[PlannedAction]]:
        strategy = self.settings.planning.get('strategy', 'parallel')
        if strategy == 'sequential' or len(prepared) < 2:
            return [self._plan_row(item, run) for item in prepared]

        workers = self.settings.planning.get('max_workers') or min(32, (os.cpu_count() or 1) * 4)
        logger.debug(f"Planning {len(prepared)} rows on {workers} workers")
        with ThreadPoolExecutor(max_workers=workers) as pool:
            return list(pool.map(lambda item: self._plan_row(item, run), prepared))

    def _plan_row(self, item: PreparedRow, run: _PlanningRun) -> List[PlannedAction]:
        actions: List[PlannedAction] = []
        unchanged = False
        try:
            if item.error is not None:
                actions.append(self._error_action(item))
                return actions

            container = self._resolve_container(item.container, run, actions)
            identifier = item.record[self.mapper.identifier_attribute]
            existing = run.cache.get_entity(identifier)

            primary = self._primary_action(item, identifier, container, existing)
            if primary is None:
                unchanged = True
            else:
                actions.append(primary)

            actions.extend(self._auxiliary_actions(item, identifier, container, existing, run))
        except (DirectoryError, ProvisioningError, ConfigurationError) as e:
            logger.error(f"Row {item.index}: planning failed: {e}")
            actions.append(PlannedAction(ActionType.ERROR, self._row_key(item), item.container,
                                         AttributeMap(item.row), message=f"Planning failed: {e}",
                                         row_index=item.index))
        finally:
            run.row_done(unchanged)
        return actions

    def _row_key(self, item: PreparedRow) -> str:
        if item.record is not None:
            return item.record.get(self.mapper.identifier_attribute, 'Unknown')
        return 'Unknown'

    def _error_action(self, item: PreparedRow) -> PlannedAction:
        message = str(item.error)
        key = 'Unknown'
        if isinstance(item.error, MissingIdentityError):
            message = f"Row {item.index + 1}: missing {item.error.attribute}"
        elif isinstance(item.error, DuplicateIdentityError):
            key = item.error.identifier
        return PlannedAction(ActionType.ERROR, key, self.root, AttributeMap(item.row),
                             message=message, row_index=item.index)

    def _resolve_container(self, path: str, run: _PlanningRun, actions: List[PlannedAction]) -> str:
        if not path or run.container_known(path):
            return path
        if not self.settings.flag('create_missing_containers'):
            logger.warning(f"Container {path} does not exist and automatic creation is disabled; "
                           f"using {self.root}")
            return self.root
        self._register_containers(path, run, actions)
        return path

    def _register_containers(self, path: str, run: _PlanningRun, actions: List[PlannedAction]):
        for level in missing_levels(path, run.cache.has_container):
            if not run.containers.add_if_absent(level):
                continue
            actions.append(PlannedAction(
                ActionType.CREATE_CONTAINER, level, level,
                AttributeMap({'name': container_name(level)}),
                message=f"Create container {level}",
            ))
            actions.extend(self._container_group_actions(level, run))

    def _container_group_actions(self, container: str, run: _PlanningRun) -> List[PlannedAction]:
        groups = self.settings.group_management
        if not groups.get('create_container_groups'):
            return []
        prefix = groups.get('group_prefix') or ''
        name = container_name(container)
        actions = []
        for group_name, security in ((f"{prefix}Sec_{name}", True), (f"{prefix}Dist_{name}", False)):
            group_dn = f"CN={group_name},{container}"
            if run.groups.add_if_absent(group_dn):
                with run.group_lock:
                    run.new_groups.add(group_dn.casefold())
                actions.append(self._create_group_action(group_name, container, security))
        return actions

    @staticmethod
    def _create_group_action(name: str, container: str, security: bool) -> PlannedAction:
        return PlannedAction(
            ActionType.CREATE_GROUP, name, container,
            AttributeMap({'groupName': name, 'security': security, 'groupDn': f"CN={name},{container}"}),
            message=f"Create {'security' if security else 'distribution'} group {name} in {container}",
        )

    def _primary_action(self, item: PreparedRow, identifier: str, container: str,
                        existing: Optional[ExistingEntity]) -> Optional[PlannedAction]:
        record = item.record
        if existing is None:
            return PlannedAction(ActionType.CREATE_ENTITY, identifier, container, record.copy(),
                                 message=f"Create {identifier} in {container}", row_index=item.index)

        if self.settings.flag('move_entities') and not same_path(existing.container, container):
            return PlannedAction(
                ActionType.MOVE_ENTITY, identifier, container,
                AttributeMap({'source_path': existing.container}),
                message=f"Move {identifier} from {existing.container} to {container}",
                row_index=item.index,
            )

        changes = diff_attributes(record, existing.attributes, self.mapper.identifier_attribute)
        if not changes:
            return None
        if not self.settings.flag('overwrite_existing'):
            logger.debug(f"{identifier}: {len(changes)} differing attributes left as is (overwrite disabled)")
            return None
        return PlannedAction(ActionType.UPDATE_ENTITY, identifier, existing.container, changes,
                             message=f"Update {identifier}: {', '.join(sorted(changes))}",
                             row_index=item.index)

    # Auxiliary actions

    def _auxiliary_actions(self, item: PreparedRow, identifier: str, container: str,
                           existing: Optional[ExistingEntity], run: _PlanningRun) -> List[PlannedAction]:
        actions = []
        share = self._share_action(item, identifier, run)
        if share is not None:
            actions.append(share)
        actions.extend(self._class_group_actions(item, identifier, container, existing, run))
        return actions

    def _share_action(self, item: PreparedRow, identifier: str, run: _PlanningRun) -> Optional[PlannedAction]:
        folders = self.settings.folders
        if not folders.get('enable_share_provisioning'):
            return None
        server = folders.get('target_server')
        local_path = folders.get('local_path')
        domain = folders.get('netbios_domain')
        share_name = render_placeholders(folders.get('share_name_template') or '', item.record,
                                         identifier_attribute=self.mapper.identifier_attribute)
        if not all([server, local_path, domain, share_name]):
            return None
        if self.provisioner is None:
            if not run.share_warning_logged:
                run.share_warning_logged = True
                logger.warning("Share provisioning enabled but no provisioner configured; skipping shares")
            return None

        try:
            if self.provisioner.share_exists(server, share_name):
                logger.debug(f"Share \\\\{server}\\{share_name} already exists")
                return None
        except ProvisioningError as e:
            logger.warning(f"Could not check share {share_name} on {server}, planning creation anyway: {e}")

        return PlannedAction(
            ActionType.PROVISION_SHARE, share_name, local_path,
            AttributeMap({
                'server': server,
                'local_path': local_path,
                'share_name': share_name,
                'account': f"{domain}\\{identifier}",
                'subfolders': list(folders.get('subfolders') or []),
            }),
            message=f"Provision share \\\\{server}\\{share_name} for {identifier}",
            row_index=item.index,
            resource_key=server,
        )

    def _class_group_actions(self, item: PreparedRow, identifier: str, container: str,
                             existing: Optional[ExistingEntity], run: _PlanningRun) -> List[PlannedAction]:
        groups = self.settings.group_management
        if not groups.get('class_groups') or not container:
            return []

        template = groups.get('class_group_template') or 'GRP_%container%'
        problems = template_errors(template)
        if problems:
            raise ConfigurationError(f"Invalid class group template '{template}': {', '.join(problems)}")
        name = render_placeholders(template, item.record, container=container_name(container),
                                   identifier_attribute=self.mapper.identifier_attribute).strip()
        if not name:
            raise ConfigurationError(f"Class group template '{template}' renders an empty name")
        group_dn = f"CN={name},{container}"
        actions = []

        with run.group_lock:
            if group_dn not in run.groups:
                run.groups.add_if_absent(group_dn)
                exists = False
                # a container planned in this run cannot hold the group yet
                if run.cache.has_container(container):
                    try:
                        exists = self.directory.group_exists(group_dn)
                    except DirectoryError as e:
                        logger.warning(f"Could not check group {group_dn}, planning creation anyway: {e}")
                if not exists:
                    run.new_groups.add(group_dn.casefold())
                    actions.append(self._create_group_action(name, container, True))
            group_is_new = group_dn.casefold() in run.new_groups

        if existing is not None and not group_is_new and self._is_member(group_dn, existing.dn, run):
            return actions

        actions.append(PlannedAction(
            ActionType.ADD_MEMBERSHIP, identifier, group_dn,
            AttributeMap({'groupDn': group_dn}),
            message=f"Add {identifier} to {name}",
            row_index=item.index,
        ))
        return actions

    def _is_member(self, group_dn: str, member_dn: str, run: _PlanningRun) -> bool:
        with run.group_lock:
            key = group_dn.casefold()
            if key not in run.members:
                try:
                    run.members[key] = {dn.casefold() for dn in self.directory.list_group_members(group_dn)}
                except DirectoryError as e:
                    logger.warning(f"Could not list members of {group_dn}: {e}")
                    run.members[key] = None
            members = run.members[key]
        return members is not None and member_dn.casefold() in members

    @staticmethod
    def _parents_first(actions: List[PlannedAction]) -> List[PlannedAction]:
        """Order container creations by depth so parents precede children."""
        creates = [a for a in actions if a.action_type == ActionType.CREATE_CONTAINER]
        if len(creates) < 2:
            return actions
        others = [a for a in actions if a.action_type != ActionType.CREATE_CONTAINER]
        return sorted(creates, key=lambda a: path_depth(a.target_path)) + others
