"""
Email notification utilities for LDAP Bulk Import.

This module sends email notifications for failed runs, directory outages and
import summaries.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, List, Any, Optional
from datetime import datetime

logger = logging.getLogger(__name__)

MAX_LISTED_FAILURES = 10


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Send email notification using SMTP.

    Args:
        subject: Email subject line
        body: Email body content
        config: Notification configuration dictionary

    Returns:
        True if email sent successfully, False otherwise
    """
    if not config.get('enable_email', False):
        logger.debug("Email notifications disabled")
        return False

    smtp_server = config.get('smtp_server')
    smtp_port = config.get('smtp_port', 587)
    smtp_username = config.get('smtp_username')
    smtp_password = config.get('smtp_password')
    smtp_tls = config.get('smtp_tls', True)

    email_from = config.get('email_from', smtp_username)
    email_to = config.get('email_to', [])

    if not smtp_server:
        logger.error("SMTP server not configured")
        return False

    if not email_to:
        logger.error("No email recipients configured")
        return False

    if isinstance(email_to, str):
        email_to = [email_to]

    logger.debug(f"Sending email to {len(email_to)} recipients via {smtp_server}:{smtp_port}")

    msg = MIMEMultipart()
    msg['From'] = email_from
    msg['To'] = ', '.join(email_to)
    msg['Subject'] = subject
    msg.attach(MIMEText(body, 'plain'))

    try:
        if smtp_port == 465:
            server = smtplib.SMTP_SSL(smtp_server, smtp_port)
        else:
            server = smtplib.SMTP(smtp_server, smtp_port)
            if smtp_tls:
                server.starttls()

        if smtp_username and smtp_password:
            server.login(smtp_username, smtp_password)

        server.sendmail(email_from, email_to, msg.as_string())
        server.quit()
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email notification: {e}")
        return False

    logger.info(f"Email notification sent successfully: {subject}")
    return True


def send_failure_notification(
    title: str,
    error_message: str,
    config: Dict[str, Any],
    additional_info: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Send notification for a failed import run.

    Args:
        title: Failure title/type
        error_message: Error description
        config: Notification configuration
        additional_info: Optional additional context

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')

    body_lines = [
        "LDAP Bulk Import Failure Report",
        f"Timestamp: {timestamp}",
        "",
        f"Failure Type: {title}",
        f"Error Message: {error_message}",
        ""
    ]

    if additional_info:
        body_lines.append("Additional Information:")
        for key, value in additional_info.items():
            body_lines.append(f"  {key}: {value}")
        body_lines.append("")

    body_lines.extend([
        "Please check the application logs for more detailed information.",
        "",
        "This is an automated message from LDAP Bulk Import."
    ])

    return send_email(f"LDAP Bulk Import Alert: {title}", '\n'.join(body_lines), config)


def send_directory_unavailable(error_message: str, config: Dict[str, Any], retry_count: int = 0) -> bool:
    """
    Send notification when the directory could not be reached.

    Args:
        error_message: Directory error description
        config: Notification configuration
        retry_count: Number of retries attempted

    Returns:
        True if notification sent successfully
    """
    additional_info = {
        'Component': 'Directory Connection',
        'Retry Attempts': retry_count,
        'Impact': 'Import aborted - no changes applied'
    }
    return send_failure_notification("Directory Unavailable", error_message, config, additional_info)


def send_import_summary(
    session_id: str,
    analysis: Dict[str, Any],
    execution: Dict[str, Any],
    failures: List[str],
    config: Dict[str, Any]
) -> bool:
    """
    Send the summary of a finished import run.

    Sent when ``email_on_success`` is enabled, or when the run had failures
    and ``email_on_failure`` is enabled.

    Args:
        session_id: Import session identifier
        analysis: Analysis summary counts
        execution: Execution result summary
        failures: Messages of failed actions
        config: Notification configuration

    Returns:
        True if notification sent successfully
    """
    has_failures = bool(execution.get('failed'))
    if has_failures and not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False
    if not has_failures and not config.get('email_on_success', False):
        logger.debug("Success email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')

    runtime_seconds = execution.get('duration_seconds', 0)
    if runtime_seconds > 60:
        runtime_str = f"{int(runtime_seconds // 60)}m {runtime_seconds % 60:.1f}s"
    else:
        runtime_str = f"{runtime_seconds:.2f} seconds"

    subject = ("LDAP Bulk Import: Completed with Errors" if has_failures
               else "LDAP Bulk Import: Successful Completion")

    body_lines = [
        "LDAP Bulk Import Summary Report",
        f"Timestamp: {timestamp}",
        f"Session: {session_id}",
        "",
        execution.get('message', ''),
        "",
        "Analysis:",
        f"  Rows: {analysis.get('rows', 0)}",
        f"  Unchanged: {analysis.get('unchanged', 0)}",
        f"  Planning errors: {analysis.get('errors', 0)}",
        "",
        "Execution:",
        f"  Runtime: {runtime_str}",
        f"  Attempted: {execution.get('attempted', 0)}",
        f"  Succeeded: {execution.get('succeeded', 0)}",
        f"  Failed: {execution.get('failed', 0)}",
    ]
    for action_type, count in sorted((execution.get('counts') or {}).items()):
        body_lines.append(f"  {action_type}: {count}")
    body_lines.append("")

    if failures:
        body_lines.append("Failures:")
        for i, failure in enumerate(failures[:MAX_LISTED_FAILURES], 1):
            body_lines.append(f"  {i}. {failure}")
        if len(failures) > MAX_LISTED_FAILURES:
            body_lines.append(f"  ... and {len(failures) - MAX_LISTED_FAILURES} more failures")
        body_lines.append("")

    body_lines.append("This is an automated message from LDAP Bulk Import.")

    return send_email(subject, '\n'.join(body_lines), config)
