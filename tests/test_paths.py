#!/usr/bin/env python3
"""
Unit tests for container path helpers.
"""

import unittest
import sys
import os

# Add parent directory to path to import ldap_import modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_import.paths import (
    split_dn, build_container_path, container_name, parent_path, path_depth,
    is_within, same_path, ancestors_within, missing_levels,
)

ROOT = 'OU=Imports,DC=example,DC=com'


class TestBuildContainerPath(unittest.TestCase):
    """Test cases for raw location to DN conversion."""

    def test_empty_returns_root(self):
        self.assertEqual(build_container_path('', ROOT), ROOT)
        self.assertEqual(build_container_path('   ', ROOT), ROOT)
        self.assertEqual(build_container_path(None, ROOT), ROOT)

    def test_slash_path_is_reversed_and_rooted(self):
        self.assertEqual(build_container_path('Students/6A', ROOT),
                         f'OU=6A,OU=Students,{ROOT}')

    def test_backslash_separator(self):
        self.assertEqual(build_container_path('Staff\\Teachers', ROOT),
                         f'OU=Teachers,OU=Staff,{ROOT}')

    def test_single_segment(self):
        self.assertEqual(build_container_path('Students', ROOT), f'OU=Students,{ROOT}')

    def test_single_ou_component_not_doubled(self):
        self.assertEqual(build_container_path('OU=6A', ROOT), f'OU=6A,{ROOT}')
        self.assertEqual(build_container_path('ou=Students/OU=6A', ROOT), f'OU=6A,OU=Students,{ROOT}')

    def test_fully_qualified_keeps_hierarchy_components_verbatim(self):
        raw = 'OU=6A,OU=Students,DC=example,DC=com'
        self.assertEqual(build_container_path(raw, ROOT), raw)

    def test_fully_qualified_two_segments(self):
        self.assertEqual(build_container_path('OU=6A,OU=Students', ROOT), 'OU=6A,OU=Students')

    def test_fully_qualified_drops_other_components(self):
        raw = 'CN=Someone,OU=6A,DC=example,DC=com'
        self.assertEqual(build_container_path(raw, ROOT), 'OU=6A,DC=example,DC=com')

    def test_idempotent_on_own_output(self):
        once = build_container_path('Students/6A', ROOT)
        self.assertEqual(build_container_path(once, ROOT), once)

    def test_empty_segments_ignored(self):
        self.assertEqual(build_container_path('/Students//6A/', ROOT),
                         f'OU=6A,OU=Students,{ROOT}')


class TestDnHelpers(unittest.TestCase):

    def test_split_dn_honours_escaped_commas(self):
        self.assertEqual(split_dn('CN=Dupont\\, Jean,OU=A,DC=x'),
                         ['CN=Dupont\\, Jean', 'OU=A', 'DC=x'])

    def test_container_name_and_parent(self):
        dn = f'OU=6A,OU=Students,{ROOT}'
        self.assertEqual(container_name(dn), '6A')
        self.assertEqual(parent_path(dn), f'OU=Students,{ROOT}')
        self.assertEqual(path_depth(dn), 5)

    def test_same_path_ignores_case_and_spacing(self):
        self.assertTrue(same_path('OU=A, DC=X', 'ou=a,dc=x'))

    def test_is_within(self):
        self.assertTrue(is_within(f'OU=6A,{ROOT}', ROOT))
        self.assertTrue(is_within(ROOT, ROOT))
        self.assertFalse(is_within('OU=Other,DC=example,DC=com', ROOT))
        self.assertFalse(is_within(f'OU=6A,{ROOT}', ''))

    def test_ancestors_within_is_deepest_first_and_excludes_root(self):
        dn = f'OU=6A,OU=Students,{ROOT}'
        self.assertEqual(ancestors_within(dn, ROOT), [dn, f'OU=Students,{ROOT}'])
        self.assertEqual(ancestors_within(ROOT, ROOT), [])
        self.assertEqual(ancestors_within('OU=Elsewhere,DC=example,DC=com', ROOT), [])

    def test_missing_levels_root_most_first(self):
        existing = {ROOT.casefold()}
        dn = f'OU=6A,OU=Students,{ROOT}'
        self.assertEqual(missing_levels(dn, lambda path: path.casefold() in existing),
                         [f'OU=Students,{ROOT}', dn])

    def test_missing_levels_never_reports_domain_components(self):
        levels = missing_levels(f'OU=A,{ROOT}', lambda path: False)
        self.assertEqual(levels, [ROOT, f'OU=A,{ROOT}'])


if __name__ == '__main__':
    unittest.main()
