#!/usr/bin/env python3
"""
Unit tests for progress reporting.
"""

import unittest
from unittest.mock import Mock
import sys
import os

# Add parent directory to path to import ldap_import modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_import.progress import ProgressReporter, LoggingProgressChannel, STATUS_EXECUTING


class TestProgressReporter(unittest.TestCase):

    def test_push_is_clamped(self):
        channel = Mock()
        reporter = ProgressReporter(channel, 'sess')
        reporter.report(140, STATUS_EXECUTING, 'over')
        reporter.report(-5, STATUS_EXECUTING, 'under')
        channel.push.assert_any_call('sess', 100, STATUS_EXECUTING, 'over')
        channel.push.assert_any_call('sess', 0, STATUS_EXECUTING, 'under')

    def test_channel_failure_logged_not_raised(self):
        channel = Mock()
        channel.push.side_effect = ConnectionError('closed')
        reporter = ProgressReporter(channel, 'sess')
        with self.assertLogs('ldap_import.progress', level='WARNING'):
            reporter.report(10, STATUS_EXECUTING)

    def test_fraction_scaled_into_window(self):
        channel = Mock()
        ProgressReporter(channel, 'sess').report_fraction(1, 4, STATUS_EXECUTING, 'x', 20, 60)
        channel.push.assert_called_once_with('sess', 30, STATUS_EXECUTING, 'x')

    def test_zero_total_counts_as_done(self):
        channel = Mock()
        ProgressReporter(channel, 'sess').report_fraction(0, 0, STATUS_EXECUTING)
        self.assertEqual(channel.push.call_args[0][1], 100)

    def test_no_channel_is_silent(self):
        ProgressReporter().report(50, STATUS_EXECUTING)

    def test_logging_channel(self):
        with self.assertLogs('progress', level='INFO') as logs:
            LoggingProgressChannel().push('sess', 42, STATUS_EXECUTING, 'working')
        self.assertIn('[sess]  42% executing: working', logs.output[0])


if __name__ == '__main__':
    unittest.main()
