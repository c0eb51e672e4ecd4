#!/usr/bin/env python3
"""
Unit tests for orphan detection and empty container cleanup.
"""

import unittest
import sys
import os

# Add parent directory to path to import ldap_import modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from ldap_import.directory.base import DirectoryError
from ldap_import.models import ActionType
from ldap_import.orphans import OrphanDetector, EmptyContainerCleanup
from fakes import FakeDirectory, ROOT, container


class TestOrphanDetector(unittest.TestCase):
    """Test cases for OrphanDetector."""

    def setUp(self):
        self.students = container('Students')
        self.directory = FakeDirectory(
            containers=[ROOT, self.students],
            entities=[
                ('a', self.students, {'displayName': 'Alpha'}),
                ('b', self.students),
                ('c', ROOT),
                ('outsider', 'OU=Staff,DC=example,DC=com'),
            ],
        )

    def test_set_difference(self):
        actions, scopes = OrphanDetector(self.directory).detect(['B', 'c', 'd'], ROOT)

        self.assertEqual(len(actions), 1)
        delete = actions[0]
        self.assertEqual(delete.action_type, ActionType.DELETE_ENTITY)
        self.assertEqual(delete.object_key, 'a')
        self.assertEqual(delete.target_path, self.students)
        self.assertEqual(delete.attributes['distinguishedName'], f'CN=Alpha,{self.students}')
        self.assertCountEqual(scopes, [self.students, ROOT])

    def test_entities_outside_root_ignored(self):
        actions, _ = OrphanDetector(self.directory).detect(['a', 'b', 'c'], ROOT)
        self.assertEqual(actions, [])

    def test_listing_failure_yields_single_error(self):
        self.directory.fail['list_entities'] = DirectoryError('server down')
        actions, scopes = OrphanDetector(self.directory).detect(['a'], ROOT)

        self.assertEqual([a.action_type for a in actions], [ActionType.ERROR])
        self.assertEqual(scopes, [])

    def test_missing_root_is_configuration_error(self):
        actions, scopes = OrphanDetector(self.directory).detect(['a'], '')
        self.assertEqual(len(actions), 1)
        self.assertEqual(actions[0].action_type, ActionType.ERROR)
        self.assertIn('root', actions[0].message)
        self.assertEqual(scopes, [])


class TestEmptyContainerCleanup(unittest.TestCase):
    """Test cases for EmptyContainerCleanup."""

    def setUp(self):
        self.students = container('Students')
        self.class_6a = container('6A', 'Students')
        self.directory = FakeDirectory(
            containers=[ROOT, self.students, self.class_6a],
            entities=[('a', self.class_6a), ('b', self.students)],
        )
        self.detector = OrphanDetector(self.directory)
        self.cleanup = EmptyContainerCleanup(self.directory)

    def test_candidates_deepest_first_without_root(self):
        self.assertEqual(EmptyContainerCleanup.candidates([self.class_6a, ROOT], ROOT),
                         [self.class_6a, self.students])

    def test_predicts_cascade_when_all_entities_go(self):
        deletions, scopes = self.detector.detect([], ROOT)
        actions = self.cleanup.plan(scopes, ROOT, deletions)

        self.assertEqual([(a.action_type, a.target_path) for a in actions], [
            (ActionType.DELETE_CONTAINER, self.class_6a),
            (ActionType.DELETE_CONTAINER, self.students),
        ])

    def test_occupied_container_kept(self):
        deletions, scopes = self.detector.detect(['b'], ROOT)
        actions = self.cleanup.plan(scopes, ROOT, deletions)
        self.assertEqual([a.target_path for a in actions], [self.class_6a])

    def test_keep_protects_containers_receiving_new_entities(self):
        deletions, scopes = self.detector.detect([], ROOT)
        actions = self.cleanup.plan(scopes, ROOT, deletions, keep=[self.class_6a, self.students])
        self.assertEqual(actions, [])

    def test_empty_group_removed_before_container(self):
        group_dn = self.directory.add_group('GRP_6A', self.class_6a,
                                            members=[f'CN=a,{self.class_6a}'])
        deletions, scopes = self.detector.detect(['b'], ROOT)
        actions = self.cleanup.plan(scopes, ROOT, deletions)

        self.assertEqual([a.action_type for a in actions],
                         [ActionType.DELETE_GROUP, ActionType.DELETE_CONTAINER])
        self.assertEqual(actions[0].object_key, group_dn)

    def test_group_with_remaining_members_blocks_container(self):
        self.directory.add_group('GRP_6A', self.class_6a, members=[f'CN=b,{self.students}'])
        deletions, scopes = self.detector.detect(['b'], ROOT)
        self.assertEqual(self.cleanup.plan(scopes, ROOT, deletions), [])

    def test_listing_error_skips_candidate(self):
        self.directory.fail_for['list_children'] = {self.class_6a}
        deletions, scopes = self.detector.detect([], ROOT)
        actions = self.cleanup.plan(scopes, ROOT, deletions)
        # 6A unchecked, so Students still holds it
        self.assertEqual(actions, [])

    def test_no_root_plans_nothing(self):
        self.assertEqual(self.cleanup.plan([self.students], ''), [])


if __name__ == '__main__':
    unittest.main()
