"""
Orchestrator for LDAP Bulk Import runs.

The orchestrator loads configuration, sets up logging, connects the directory
and provisioning backends, and drives an import session through analysis and
execution. Each session is an explicit ``ImportSession`` object owned by the
caller; nothing about a session is kept in module state, so several sessions
can be analyzed and executed independently.
"""

import logging
import threading
import uuid
from datetime import datetime
from typing import Dict, List, Any, Optional

from ldap_import.config import ConfigLoader, ConfigurationError, ImportSettings, load_config
from ldap_import.directory.base import DirectoryService, DirectoryUnavailable
from ldap_import.directory.ldap_directory import LdapDirectory
from ldap_import.executor import ImportExecutor
from ldap_import.logging_setup import setup_logging, audit_logger
from ldap_import.models import AnalysisResult, ExecutionResult
from ldap_import.notifications import send_failure_notification, send_directory_unavailable, send_import_summary
from ldap_import.planner import ImportPlanner
from ldap_import.progress import ProgressChannel, ProgressReporter, LoggingProgressChannel
from ldap_import.provisioning.base import ResourceProvisioner
from ldap_import.provisioning.rest_agent import RestShareProvisioner

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ACTION_FAILURES = 1
EXIT_CONFIGURATION = 2
EXIT_DIRECTORY_UNAVAILABLE = 3
EXIT_UNEXPECTED = 4


class ImportRunError(Exception):
    """Raised when a session is driven out of order."""
    pass


class ImportSession:
    """
    State of one import from upload to execution.

    Args:
        rows: Import rows (column name to raw value)
        settings: Import settings used for this session
        session_id: Optional identifier; generated when omitted
    """

    def __init__(self, rows: List[Dict[str, Any]], settings: ImportSettings, session_id: Optional[str] = None):
        self.session_id = session_id or uuid.uuid4().hex[:12]
        self.rows = list(rows)
        self.settings = settings
        self.created_at = datetime.now()
        self.analysis: Optional[AnalysisResult] = None
        self.execution: Optional[ExecutionResult] = None
        self.cancel_event = threading.Event()

    def cancel(self):
        """Ask a running execution to stop between actions."""
        logger.info(f"Cancellation requested for session {self.session_id}")
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


class ImportOrchestrator:
    """
    Drives import sessions against configured backends.

    Backends may be injected (tests, embedding applications); otherwise they
    are built from configuration on ``start``.
    """

    def __init__(self, config_path: Optional[str] = None,
                 config: Optional[Dict[str, Any]] = None,
                 directory: Optional[DirectoryService] = None,
                 provisioner: Optional[ResourceProvisioner] = None,
                 progress_channel: Optional[ProgressChannel] = None):
        self.config_path = config_path
        self.config = config
        self.directory = directory
        self.provisioner = provisioner
        self.progress_channel = progress_channel or LoggingProgressChannel()
        self.settings: Optional[ImportSettings] = None
        self._owns_directory = directory is None
        self._owns_provisioner = provisioner is None
        self._started = False

    def start(self):
        """
        Load configuration, set up logging and connect the backends.

        Raises:
            ConfigurationError: If configuration is missing or invalid
            DirectoryUnavailable: If the directory cannot be reached
        """
        if self._started:
            return
        self._load_configuration()
        setup_logging(self.config.get('logging', {}))
        self.settings = ImportSettings.from_config(self.config)
        self._connect_directory()
        self._create_provisioner()
        self._started = True

    def _load_configuration(self):
        """Load and validate configuration."""
        try:
            if self.config is None:
                self.config = load_config(self.config_path)
                audit_logger.log_configuration_access(self.config_path or 'config.yaml')
            else:
                self.config = ConfigLoader(self.config_path).prepare(self.config)
        except ConfigurationError:
            raise
        except (OSError, ValueError, TypeError) as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

    def _connect_directory(self):
        if self.directory is not None:
            return
        mapped = list((self.config.get('import') or {}).get('attribute_mapping') or {})
        directory = LdapDirectory(self.config['ldap'], self.config.get('error_handling'), attributes=mapped)
        directory.connect()
        self.directory = directory

    def _create_provisioner(self):
        if self.provisioner is not None or not self.settings.folders.get('enable_share_provisioning'):
            return
        provisioning_config = self.config.get('provisioning') or {}
        if provisioning_config.get('base_url'):
            self.provisioner = RestShareProvisioner(provisioning_config, self.config.get('error_handling'))

    def new_session(self, rows: List[Dict[str, Any]], session_id: Optional[str] = None) -> ImportSession:
        self.start()
        session = ImportSession(rows, self.settings, session_id)
        logger.info(f"Created import session {session.session_id} with {len(session.rows)} rows")
        return session

    def _reporter(self, session: ImportSession) -> ProgressReporter:
        return ProgressReporter(self.progress_channel, session.session_id)

    def analyze(self, session: ImportSession) -> AnalysisResult:
        """
        Plan the changes for a session.

        Args:
            session: Session created by ``new_session``

        Returns:
            AnalysisResult, also stored on the session
        """
        self.start()
        planner = ImportPlanner(self.directory, session.settings, self.provisioner, self._reporter(session))
        session.analysis = planner.analyze(session.rows)
        return session.analysis

    def execute(self, session: ImportSession) -> ExecutionResult:
        """
        Apply an analyzed session.

        Args:
            session: Session previously passed to ``analyze``

        Returns:
            ExecutionResult, also stored on the session

        Raises:
            ImportRunError: If the session has not been analyzed
        """
        if session.analysis is None:
            raise ImportRunError(f"Session {session.session_id} must be analyzed before execution")
        self.start()
        executor = ImportExecutor(self.directory, session.settings, self.provisioner, self._reporter(session))
        session.execution = executor.execute(session.analysis.actions, session.cancel_event)
        audit_logger.log_run(session.session_id, session.execution.to_dict())
        return session.execution

    def run(self, rows: List[Dict[str, Any]]) -> int:
        """
        Analyze and execute ``rows`` in one session.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            session = self.new_session(rows)
            analysis = self.analyze(session)
            execution = self.execute(session)
            self._log_run_summary(session)
            self._send_summary(session)

            if execution.failed:
                logger.warning(f"Import completed with {execution.failed} failed actions")
                return EXIT_ACTION_FAILURES
            logger.info(f"Import completed successfully ({len(analysis.actions)} actions)")
            return EXIT_OK

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIGURATION
        except DirectoryUnavailable as e:
            logger.error(f"Directory unavailable: {e}")
            self._notify(send_directory_unavailable, str(e),
                         retry_count=(self.config or {}).get('error_handling', {}).get('max_retries', 0))
            return EXIT_DIRECTORY_UNAVAILABLE
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._notify(send_failure_notification, "Import Failed", f"Unexpected error: {e}")
            return EXIT_UNEXPECTED
        finally:
            self.close()

    def _notify(self, sender, *args, **kwargs):
        notifications_config = (self.config or {}).get('notifications', {})
        try:
            sender(*args, notifications_config, **kwargs)
        except Exception as e:
            logger.error(f"Failed to send notification: {e}")

    def _send_summary(self, session: ImportSession):
        failures = [r.message for r in session.execution.failures()]
        self._notify(send_import_summary, session.session_id, session.analysis.summary.to_dict(),
                     session.execution.to_dict(), failures)

    def _log_run_summary(self, session: ImportSession):
        summary = session.analysis.summary
        execution = session.execution

        logger.info("=== Import Summary ===")
        logger.info(f"Session: {session.session_id}")
        logger.info(f"Rows: {summary.rows}, unchanged: {summary.unchanged}, planning errors: {summary.errors}")
        for action_type, count in sorted(summary.counts.items()):
            logger.info(f"  planned {action_type}: {count}")
        logger.info(f"Attempted: {execution.attempted}, succeeded: {execution.succeeded}, "
                    f"failed: {execution.failed}")
        logger.info(f"Runtime: {execution.duration_seconds:.2f}s")
        for warning in execution.warnings:
            logger.warning(f"  {warning}")

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of configuration and backends.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except ConfigurationError as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        try:
            self._connect_directory()
            healthy = self.directory.check_health()
        except DirectoryUnavailable as e:
            healthy = False
            health_status['checks']['directory'] = {'status': 'fail', 'message': f'Directory unavailable: {e}'}
        if healthy:
            health_status['checks']['directory'] = {'status': 'pass', 'message': 'Directory reachable'}
        else:
            health_status['checks'].setdefault('directory', {'status': 'fail',
                                                             'message': 'Directory health check failed'})
            health_status['status'] = 'unhealthy'

        notifications_config = self.config.get('notifications', {})
        if notifications_config.get('enable_email', False):
            missing_fields = [f for f in ['smtp_server', 'email_from', 'email_to'] if not notifications_config.get(f)]
            if missing_fields:
                health_status['checks']['notifications'] = {
                    'status': 'fail',
                    'message': f'Missing notification config: {missing_fields}'
                }
                health_status['status'] = 'unhealthy'
            else:
                health_status['checks']['notifications'] = {
                    'status': 'pass',
                    'message': 'Email notification configuration valid'
                }
        else:
            health_status['checks']['notifications'] = {
                'status': 'skip',
                'message': 'Email notifications disabled'
            }

        return health_status

    def close(self):
        """Release backends created by the orchestrator."""
        if self.directory is not None and self._owns_directory:
            self.directory.close()
            self.directory = None
        if self.provisioner is not None and self._owns_provisioner:
            self.provisioner.close()
            self.provisioner = None
        self._started = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
