#!/usr/bin/env python3
"""
Unit tests for email notifications.
"""

import smtplib
import unittest
from unittest.mock import patch
import sys
import os

# Add parent directory to path to import ldap_import modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_import.notifications import (
    send_email, send_failure_notification, send_directory_unavailable, send_import_summary,
)

EMAIL_CONFIG = {
    'enable_email': True,
    'smtp_server': 'smtp.example.com',
    'smtp_port': 587,
    'smtp_username': 'import@example.com',
    'smtp_password': 'secret',
    'email_to': ['admin@example.com'],
    'email_on_failure': True,
    'email_on_success': False,
}


def sent_body(mock_smtp):
    return mock_smtp.return_value.sendmail.call_args[0][2]


class TestSendEmail(unittest.TestCase):

    @patch('smtplib.SMTP')
    def test_disabled(self, mock_smtp):
        self.assertFalse(send_email('s', 'b', dict(EMAIL_CONFIG, enable_email=False)))
        mock_smtp.assert_not_called()

    @patch('smtplib.SMTP')
    def test_no_recipients(self, mock_smtp):
        self.assertFalse(send_email('s', 'b', dict(EMAIL_CONFIG, email_to=[])))
        mock_smtp.assert_not_called()

    @patch('smtplib.SMTP')
    def test_sends_with_starttls_and_login(self, mock_smtp):
        self.assertTrue(send_email('Subject', 'Body', EMAIL_CONFIG))
        server = mock_smtp.return_value
        server.starttls.assert_called_once()
        server.login.assert_called_once_with('import@example.com', 'secret')
        server.quit.assert_called_once()

    @patch('smtplib.SMTP_SSL')
    def test_implicit_tls_port(self, mock_smtp_ssl):
        self.assertTrue(send_email('Subject', 'Body', dict(EMAIL_CONFIG, smtp_port=465)))
        mock_smtp_ssl.assert_called_once_with('smtp.example.com', 465)

    @patch('smtplib.SMTP')
    def test_smtp_error_returns_false(self, mock_smtp):
        mock_smtp.return_value.sendmail.side_effect = smtplib.SMTPException('rejected')
        self.assertFalse(send_email('Subject', 'Body', EMAIL_CONFIG))


class TestImportNotifications(unittest.TestCase):

    @patch('smtplib.SMTP')
    def test_failure_notification(self, mock_smtp):
        self.assertTrue(send_failure_notification('Configuration Error', 'bad yaml', EMAIL_CONFIG))
        self.assertIn('bad yaml', sent_body(mock_smtp))

    @patch('smtplib.SMTP')
    def test_failure_notification_disabled(self, mock_smtp):
        self.assertFalse(send_failure_notification('x', 'y', dict(EMAIL_CONFIG, email_on_failure=False)))
        mock_smtp.assert_not_called()

    @patch('smtplib.SMTP')
    def test_directory_unavailable(self, mock_smtp):
        self.assertTrue(send_directory_unavailable('bind refused', EMAIL_CONFIG, retry_count=3))
        body = sent_body(mock_smtp)
        self.assertIn('Directory Unavailable', body)
        self.assertIn('Retry Attempts: 3', body)

    @patch('smtplib.SMTP')
    def test_summary_not_sent_on_clean_run_by_default(self, mock_smtp):
        execution = {'failed': 0, 'succeeded': 4, 'attempted': 4, 'duration_seconds': 1.0}
        self.assertFalse(send_import_summary('sess', {'rows': 4}, execution, [], EMAIL_CONFIG))
        mock_smtp.assert_not_called()

    @patch('smtplib.SMTP')
    def test_summary_sent_on_failures(self, mock_smtp):
        execution = {'failed': 12, 'succeeded': 1, 'attempted': 13, 'duration_seconds': 75.0,
                     'message': 'Import completed with 1 successes and 12 errors',
                     'counts': {'create_entity': 1}}
        failures = [f'create_entity u{i}: refused' for i in range(12)]
        self.assertTrue(send_import_summary('sess', {'rows': 13}, execution, failures, EMAIL_CONFIG))

        message = sent_body(mock_smtp)
        self.assertIn('Completed with Errors', message)
        self.assertIn('... and 2 more failures', message)
        self.assertIn('1m 15.0s', message)

    @patch('smtplib.SMTP')
    def test_summary_sent_on_success_when_enabled(self, mock_smtp):
        execution = {'failed': 0, 'succeeded': 1, 'attempted': 1, 'duration_seconds': 0.5}
        config = dict(EMAIL_CONFIG, email_on_success=True)
        self.assertTrue(send_import_summary('sess', {}, execution, [], config))
        self.assertIn('Successful Completion', sent_body(mock_smtp))


if __name__ == '__main__':
    unittest.main()
