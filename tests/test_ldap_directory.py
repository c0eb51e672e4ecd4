#!/usr/bin/env python3
"""
Unit tests for the ldap3 directory backend.

The ldap3 connection is replaced by a scripted stand-in so these tests run
without a directory server.
"""

import unittest
from unittest.mock import Mock, patch
import sys
import os

# Add parent directory to path to import ldap_import modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap3 import SYNC, MODIFY_DELETE, MODIFY_REPLACE
from ldap3.core.exceptions import LDAPSocketOpenError

from ldap_import.directory.base import DirectoryError, DirectoryUnavailable, CONTAINER, GROUP, ENTITY, OTHER
from ldap_import.directory.ldap_directory import (
    LdapDirectory, PAGED_RESULTS_OID, ACCOUNT_DISABLED, ACCOUNT_ENABLED,
)

BASE_CONFIG = {
    'server_url': 'ldaps://dc01.example.com:636',
    'bind_dn': 'CN=svc-import,OU=Service,DC=example,DC=com',
    'bind_password': 'password123',
}

OK = {'result': 0, 'description': 'success', 'message': ''}


def entry(dn, **attributes):
    return {'type': 'searchResEntry', 'dn': dn, 'attributes': attributes}


class ScriptedConnection:
    """Answers searches from a queue of (result, response) pages and records writes."""

    def __init__(self, pages=None):
        self.pages = list(pages or [])
        self.searches = []
        self.writes = []
        self.result = dict(OK)
        self.response = []
        self.next_write_result = None
        self.extend = Mock()

    def search(self, **kwargs):
        self.searches.append(kwargs)
        if self.pages:
            result, response = self.pages.pop(0)
        else:
            result, response = dict(OK), []
        self.result = result
        self.response = response

    def _write(self, *args, **kwargs):
        self.writes.append((args, kwargs))
        self.result = self.next_write_result or dict(OK)

    def add(self, dn, object_class=None, attributes=None):
        self._write('add', dn, object_class=object_class, attributes=attributes)

    def modify(self, dn, changes):
        self._write('modify', dn, changes)

    def delete(self, dn):
        self._write('delete', dn)

    def modify_dn(self, dn, rdn, new_superior=None):
        self._write('modify_dn', dn, rdn, new_superior=new_superior)

    def unbind(self):
        pass


def connected(connection, **overrides):
    directory = LdapDirectory(dict(BASE_CONFIG, **overrides))
    directory.connection = connection
    directory._connected = True
    return directory


class TestConfiguration(unittest.TestCase):

    def test_ssl_detected_from_url(self):
        directory = LdapDirectory(BASE_CONFIG)
        self.assertTrue(directory.use_ssl)
        self.assertFalse(directory.start_tls)
        self.assertIsNotNone(directory._create_tls_config())

    def test_plain_ldap_has_no_tls(self):
        directory = LdapDirectory(dict(BASE_CONFIG, server_url='ldap://dc01.example.com'))
        self.assertFalse(directory.use_ssl)
        self.assertIsNone(directory._create_tls_config())

    def test_write_only_attributes_never_read(self):
        directory = LdapDirectory(BASE_CONFIG, attributes=['employeeID', 'password', 'unicodePwd'])
        self.assertIn('employeeID', directory.attributes)
        self.assertNotIn('password', directory.attributes)
        self.assertNotIn('unicodePwd', directory.attributes)

    def test_search_base_derived_from_bind_dn(self):
        self.assertEqual(LdapDirectory(BASE_CONFIG)._search_base(), 'DC=example,DC=com')

    def test_connection_stats(self):
        stats = LdapDirectory(BASE_CONFIG).get_connection_stats()
        self.assertFalse(stats['connected'])
        self.assertNotIn('bind_password', stats)


class TestConnect(unittest.TestCase):

    @patch('time.sleep')
    @patch('ldap_import.directory.ldap_directory.Server')
    @patch('ldap_import.directory.ldap_directory.Connection')
    def test_bind_failure_becomes_unavailable(self, mock_connection, mock_server, mock_sleep):
        mock_connection.return_value.open.side_effect = LDAPSocketOpenError('unreachable')
        directory = LdapDirectory(BASE_CONFIG, {'max_retries': 2, 'retry_wait_seconds': 0})

        with self.assertRaises(DirectoryUnavailable):
            directory.connect()
        self.assertEqual(mock_connection.call_count, 3)

    @patch('ldap_import.directory.ldap_directory.Server')
    @patch('ldap_import.directory.ldap_directory.Connection')
    def test_successful_bind(self, mock_connection, mock_server):
        conn = mock_connection.return_value
        conn.open.return_value = True
        conn.bind.return_value = True
        directory = LdapDirectory(BASE_CONFIG)

        self.assertTrue(directory.connect())
        self.assertIs(directory.connection, conn)
        self.assertTrue(directory.get_connection_stats()['connected'])
        self.assertEqual(mock_connection.call_args[1]['client_strategy'], SYNC)


class TestSearch(unittest.TestCase):

    def test_paged_results_followed(self):
        first = dict(OK, controls={PAGED_RESULTS_OID: {'value': {'cookie': b'next'}}})
        conn = ScriptedConnection([
            (first, [entry('CN=a,DC=example,DC=com', sAMAccountName='a')]),
            (dict(OK), [entry('CN=b,DC=example,DC=com', sAMAccountName='b'),
                        {'type': 'searchResRef', 'uri': ['ldap://elsewhere']}]),
        ])
        directory = connected(conn)

        entities = directory.list_entities('DC=example,DC=com')
        self.assertEqual([e.identifier for e in entities], ['a', 'b'])
        self.assertEqual(conn.searches[1]['paged_cookie'], b'next')

    def test_missing_base_yields_nothing(self):
        conn = ScriptedConnection([({'result': 32, 'description': 'noSuchObject'}, [])])
        self.assertFalse(connected(conn).container_exists('OU=Gone,DC=example,DC=com'))

    def test_other_result_codes_raise(self):
        conn = ScriptedConnection([({'result': 50, 'description': 'insufficientAccessRights'}, [])])
        with self.assertRaises(DirectoryError):
            connected(conn).list_entities('DC=example,DC=com')

    def test_bulk_lookup_chunked_and_keyed_case_insensitively(self):
        conn = ScriptedConnection([
            (dict(OK), [entry('CN=Jean Dupont,OU=Students,DC=example,DC=com',
                              sAMAccountName=['Jean.Dupont'], givenName=['Jean'])]),
            (dict(OK), []),
        ])
        directory = connected(conn, batch_size=2)

        found = directory.get_entities(['jean.dupont', 'ana.lopez', 'x(y)'])
        self.assertEqual(len(conn.searches), 2)
        self.assertIn('x\\28y\\29', conn.searches[0]['search_filter'] + conn.searches[1]['search_filter'])
        entity = found['jean.dupont']
        self.assertEqual(entity.container, 'OU=Students,DC=example,DC=com')
        self.assertEqual(entity.attributes['GIVENNAME'], 'Jean')


class TestWrites(unittest.TestCase):

    def test_create_entity_without_password_stays_disabled(self):
        conn = ScriptedConnection()
        dn = connected(conn).create_entity('jean.dupont', 'OU=Students,DC=example,DC=com',
                                           {'displayName': 'Jean Dupont', 'mail': ''})

        self.assertEqual(dn, 'CN=Jean Dupont,OU=Students,DC=example,DC=com')
        (_, kwargs), = conn.writes
        attributes = kwargs['attributes']
        self.assertEqual(attributes['userAccountControl'], ACCOUNT_DISABLED)
        self.assertNotIn('mail', attributes)
        conn.extend.microsoft.modify_password.assert_not_called()

    def test_create_entity_with_password_enabled(self):
        conn = ScriptedConnection()
        connected(conn).create_entity('jean.dupont', 'OU=Students,DC=example,DC=com',
                                      {'displayName': 'Jean Dupont', 'Password': 'Welcome1!'})

        add_args, add_kwargs = conn.writes[0]
        self.assertNotIn('Password', add_kwargs['attributes'])
        conn.extend.microsoft.modify_password.assert_called_once_with(
            'CN=Jean Dupont,OU=Students,DC=example,DC=com', 'Welcome1!')
        modify_args, _ = conn.writes[1]
        self.assertEqual(modify_args[2]['userAccountControl'][0][1], [ACCOUNT_ENABLED])

    def test_failed_write_raises(self):
        conn = ScriptedConnection()
        conn.next_write_result = {'result': 53, 'description': 'unwillingToPerform'}
        with self.assertRaises(DirectoryError):
            connected(conn).delete_container('OU=Students,DC=example,DC=com')

    def test_existing_container_tolerated(self):
        conn = ScriptedConnection()
        conn.next_write_result = {'result': 68, 'description': 'entryAlreadyExists'}
        connected(conn).create_container('OU=Students,DC=example,DC=com')

    def test_add_member_reports_existing_membership(self):
        member_page = (dict(OK), [entry('CN=Jean,OU=Students,DC=example,DC=com', sAMAccountName='jean')])
        conn = ScriptedConnection([member_page, member_page])
        directory = connected(conn)
        group = 'CN=GRP,OU=Groups,DC=example,DC=com'

        self.assertTrue(directory.add_member(group, 'jean'))
        conn.next_write_result = {'result': 68, 'description': 'entryAlreadyExists'}
        self.assertFalse(directory.add_member(group, 'jean'))

    def test_update_replaces_changed_and_deletes_cleared(self):
        current = entry('CN=Jean,OU=A,DC=example,DC=com', sAMAccountName=['jean'],
                        mail=['old@example.com'], department=['Math'], title=['Teacher'])
        conn = ScriptedConnection([(dict(OK), [current])])

        changed = connected(conn).update_entity('jean', {
            'MAIL': 'new@example.com', 'department': 'Math', 'title': '', 'password': 'secret'})

        self.assertTrue(changed)
        (args, _), = conn.writes
        self.assertEqual(args[1], 'CN=Jean,OU=A,DC=example,DC=com')
        self.assertEqual(args[2], {'MAIL': [(MODIFY_REPLACE, ['new@example.com'])],
                                   'title': [(MODIFY_DELETE, [])]})

    def test_update_without_changes_writes_nothing(self):
        current = entry('CN=Jean,OU=A,DC=example,DC=com', sAMAccountName=['jean'], department=['Math'])
        conn = ScriptedConnection([(dict(OK), [current])])

        self.assertFalse(connected(conn).update_entity('jean', {'department': 'Math'}))
        self.assertEqual(conn.writes, [])

    def test_move_keeps_rdn(self):
        conn = ScriptedConnection([(dict(OK), [entry('CN=Jean,OU=A,DC=example,DC=com', sAMAccountName='jean')])])
        new_dn = connected(conn).move_entity('jean', 'OU=A,DC=example,DC=com', 'OU=B,DC=example,DC=com')
        self.assertEqual(new_dn, 'CN=Jean,OU=B,DC=example,DC=com')


class TestListChildren(unittest.TestCase):

    def test_children_classified(self):
        base = 'OU=Students,DC=example,DC=com'
        conn = ScriptedConnection([(dict(OK), [
            entry(f'OU=6A,{base}', objectClass=['top', 'organizationalUnit']),
            entry(f'CN=GRP,{base}', objectClass=['top', 'group'], sAMAccountName='GRP'),
            entry(f'CN=Jean,{base}', objectClass=['top', 'person', 'user'], sAMAccountName='jean'),
            entry(f'CN=PC01,{base}', objectClass=['top', 'user', 'computer'], sAMAccountName='PC01$'),
        ])])

        kinds = [child.kind for child in connected(conn).list_children(base)]
        self.assertEqual(kinds, [CONTAINER, GROUP, ENTITY, OTHER])


if __name__ == '__main__':
    unittest.main()
