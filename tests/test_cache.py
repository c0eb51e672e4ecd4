#!/usr/bin/env python3
"""
Unit tests for the directory state preloader.
"""

import unittest
import threading
import sys
import os

# Add parent directory to path to import ldap_import modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from ldap_import.cache import ConcurrentSet, StatePreloader
from ldap_import.directory.base import DirectoryError
from fakes import FakeDirectory, ROOT, container


class TestConcurrentSet(unittest.TestCase):

    def test_add_if_absent_is_case_insensitive(self):
        items = ConcurrentSet(['OU=A,DC=x'])
        self.assertFalse(items.add_if_absent('ou=a,dc=X'))
        self.assertTrue(items.add_if_absent('OU=B,DC=x'))
        self.assertIn('OU=b,DC=X', items)
        self.assertEqual(len(items), 2)

    def test_only_one_thread_wins(self):
        items = ConcurrentSet()
        winners = []
        lock = threading.Lock()
        barrier = threading.Barrier(16)

        def worker():
            barrier.wait()
            if items.add_if_absent('OU=Shared,DC=x'):
                with lock:
                    winners.append(threading.current_thread().name)

        threads = [threading.Thread(target=worker) for _ in range(16)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(len(winners), 1)


class TestStatePreloader(unittest.TestCase):
    """Test cases for StatePreloader."""

    def setUp(self):
        self.students = container('Students')
        self.directory = FakeDirectory(
            containers=[ROOT, self.students],
            entities=[('jean.dupont', self.students, {'givenName': 'Jean'})],
        )

    def test_one_bulk_call_per_set(self):
        cache = StatePreloader(self.directory).load(
            ['jean.dupont', 'ana.lopez', 'JEAN.DUPONT'],
            [ROOT, self.students, container('Staff')])

        self.assertEqual(self.directory.count('get_entities'), 1)
        self.assertEqual(self.directory.count('get_existing_containers'), 1)
        self.assertEqual(self.directory.count('get_entity'), 0)
        self.assertIsNotNone(cache.get_entity('Jean.Dupont'))
        self.assertIsNone(cache.get_entity('ana.lopez'))
        self.assertTrue(cache.has_container(self.students.upper()))
        self.assertFalse(cache.has_container(container('Staff')))
        self.assertEqual(cache.stats['entity_lookup'], 'bulk')

    def test_fallback_to_single_lookups(self):
        self.directory.fail['get_entities'] = DirectoryError('size limit exceeded')
        self.directory.fail['get_existing_containers'] = DirectoryError('size limit exceeded')

        cache = StatePreloader(self.directory, fallback_workers=2).load(
            ['jean.dupont', 'ana.lopez'], [ROOT, container('Staff')])

        self.assertEqual(self.directory.count('get_entity'), 2)
        self.assertEqual(self.directory.count('container_exists'), 2)
        self.assertIsNotNone(cache.get_entity('jean.dupont'))
        self.assertTrue(cache.has_container(ROOT))
        self.assertEqual(cache.stats['entity_lookup'], 'fallback')
        self.assertEqual(cache.stats['container_lookup'], 'fallback')

    def test_failed_single_lookup_treated_as_missing(self):
        self.directory.fail['get_entities'] = DirectoryError('busy')
        self.directory.fail_for['get_entity'] = {'jean.dupont'}

        cache = StatePreloader(self.directory).load(['jean.dupont'], [])
        self.assertIsNone(cache.get_entity('jean.dupont'))

    def test_empty_input_makes_no_calls(self):
        cache = StatePreloader(self.directory).load([], [])
        self.assertEqual(self.directory.calls, [])
        self.assertEqual(cache.stats['identifiers_requested'], 0)


if __name__ == '__main__':
    unittest.main()
