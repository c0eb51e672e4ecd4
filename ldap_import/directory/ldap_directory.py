"""
LDAP directory backend built on ldap3.

This module connects to an Active Directory style server and implements the
``DirectoryService`` operations used by the import engine: bulk lookups with
OR filters, paged subtree listings and the add/modify/move/delete calls the
executor issues.

A single ldap3 connection is shared by all worker threads; every call takes
the instance lock so requests and their results never interleave.
"""

import logging
import ssl
import threading
from typing import Dict, List, Any, Optional, Iterable, Set

from ldap3 import (
    Server, Connection, Tls, ALL, BASE, LEVEL, SUBTREE, SYNC,
    MODIFY_ADD, MODIFY_DELETE, MODIFY_REPLACE,
)
from ldap3.core.exceptions import LDAPException, LDAPSocketOpenError, LDAPBindError
from ldap3.utils.conv import escape_filter_chars
from ldap3.utils.dn import escape_rdn

from ldap_import.directory.base import (
    DirectoryService, DirectoryChild, DirectoryError, DirectoryUnavailable,
    ENTITY, GROUP, CONTAINER, OTHER,
)
from ldap_import.models import ExistingEntity, AttributeMap
from ldap_import.paths import container_name, parent_path, split_dn
from ldap_import.retry import retry_call, retry_settings, create_retry_callback, MaxRetriesExceeded

logger = logging.getLogger(__name__)

PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'

RESULT_SUCCESS = 0
RESULT_NO_SUCH_OBJECT = 32
RESULT_ALREADY_EXISTS = 68

USER_FILTER = '(&(objectCategory=person)(objectClass=user))'
USER_OBJECT_CLASSES = ['top', 'person', 'organizationalPerson', 'user']

ACCOUNT_ENABLED = 512
ACCOUNT_DISABLED = 514

GROUP_TYPE_GLOBAL_SECURITY = -2147483646
GROUP_TYPE_GLOBAL_DISTRIBUTION = 2

DEFAULT_ENTITY_ATTRIBUTES = [
    'sAMAccountName', 'displayName', 'givenName', 'sn', 'mail',
    'userPrincipalName', 'department', 'title', 'telephoneNumber',
    'description', 'homeDirectory', 'homeDrive',
]

WRITE_ONLY_ATTRIBUTES = frozenset({'password', 'userpassword', 'unicodepwd'})


class LdapDirectory(DirectoryService):
    """
    ldap3 implementation of ``DirectoryService``.

    Args:
        config: ``ldap`` configuration section
        error_config: ``error_handling`` section used for bind retries
        attributes: Entity attributes to read for comparison
    """

    def __init__(self, config: Dict[str, Any], error_config: Optional[Dict[str, Any]] = None,
                 attributes: Optional[Iterable[str]] = None):
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.base_dn = config.get('base_dn', '')

        # SSL/TLS configuration
        use_ssl = config.get('use_ssl')
        self.use_ssl = self.server_url.lower().startswith('ldaps://') if use_ssl is None else use_ssl
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')

        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 30)
        self.page_size = config.get('page_size', 1000)
        self.batch_size = config.get('batch_size', 100)
        self.container_batch_size = config.get('container_batch_size', 50)

        self.retry_options = retry_settings(error_config)

        wanted = list(DEFAULT_ENTITY_ATTRIBUTES)
        for name in attributes or []:
            if name.casefold() not in WRITE_ONLY_ATTRIBUTES and name not in wanted:
                wanted.append(name)
        self.attributes = wanted

        self.server = None
        self.connection = None
        self._connected = False
        self._lock = threading.RLock()

    # Connection handling

    def connect(self) -> bool:
        """
        Bind to the server, retrying transient failures.

        Raises:
            DirectoryUnavailable: If the bind fails after all retries
        """
        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
        except LDAPException as e:
            raise DirectoryUnavailable(f"Failed to create LDAP server: {e}")

        try:
            retry_call(
                self._open_connection,
                exceptions=(LDAPException, DirectoryUnavailable),
                on_retry=create_retry_callback("LDAP bind"),
                **self.retry_options
            )
        except MaxRetriesExceeded as e:
            raise DirectoryUnavailable(f"Failed to connect to LDAP after {e.attempts} attempts: "
                                       f"{e.last_exception}")
        return True

    def _open_connection(self):
        connection = Connection(
            self.server,
            user=self.bind_dn,
            password=self.bind_password,
            auto_bind=False,
            client_strategy=SYNC,
            receive_timeout=self.receive_timeout,
            raise_exceptions=False
        )
        try:
            if not connection.open():
                raise DirectoryUnavailable(f"Failed to open connection: {connection.result}")
            if self.start_tls and not self.use_ssl and not connection.start_tls():
                raise DirectoryUnavailable(f"Failed to start TLS: {connection.result}")
            if not connection.bind():
                raise LDAPBindError(f"Bind failed: {connection.result}")
        except (LDAPSocketOpenError, LDAPBindError, DirectoryUnavailable):
            connection.unbind()
            raise

        self.connection = connection
        self._connected = True
        logger.info(f"Successfully connected and bound to LDAP server {self.server_url}")

    def _create_tls_config(self) -> Optional[Tls]:
        if not (self.use_ssl or self.start_tls):
            return None
        tls_config = {'validate': ssl.CERT_REQUIRED if self.verify_ssl else ssl.CERT_NONE}
        if not self.verify_ssl:
            logger.warning("SSL certificate verification disabled")
        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
        return Tls(**tls_config)

    def close(self):
        """Close LDAP connection."""
        with self._lock:
            if self.connection and self._connected:
                try:
                    self.connection.unbind()
                    logger.debug("LDAP connection closed")
                except LDAPException as e:
                    logger.warning(f"Error closing LDAP connection: {e}")
                finally:
                    self._connected = False
                    self.connection = None

    def _conn(self) -> Connection:
        if not self._connected:
            self.connect()
        return self.connection

    def check_health(self) -> bool:
        try:
            with self._lock:
                conn = self._conn()
                conn.search(search_base='', search_filter='(objectClass=*)',
                            search_scope=BASE, attributes=['namingContexts'])
                return conn.result['result'] == RESULT_SUCCESS
        except (DirectoryError, LDAPException) as e:
            logger.warning(f"Directory health check failed: {e}")
            return False

    # Search helpers

    def _search_base(self) -> str:
        if self.base_dn:
            return self.base_dn
        dc_parts = [part for part in split_dn(self.bind_dn) if part.upper().startswith('DC=')]
        if dc_parts:
            return ','.join(dc_parts)
        if self.server and self.server.info and self.server.info.naming_contexts:
            return self.server.info.naming_contexts[0]
        raise DirectoryError("Cannot determine directory base DN")

    def _search(self, base: str, search_filter: str, scope=SUBTREE,
                attributes: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        """Paged search returning ldap3 response entries; a missing base yields []."""
        entries = []
        cookie = None
        with self._lock:
            conn = self._conn()
            while True:
                try:
                    conn.search(
                        search_base=base,
                        search_filter=search_filter,
                        search_scope=scope,
                        attributes=attributes or [],
                        paged_size=self.page_size,
                        paged_cookie=cookie
                    )
                except LDAPException as e:
                    raise DirectoryError(f"Search under {base} failed: {e}")

                code = conn.result.get('result')
                if code == RESULT_NO_SUCH_OBJECT:
                    return []
                if code != RESULT_SUCCESS:
                    raise DirectoryError(f"Search under {base} failed: {conn.result.get('description')} "
                                         f"{conn.result.get('message', '')}")

                entries.extend(item for item in conn.response or [] if item.get('type') == 'searchResEntry')

                controls = conn.result.get('controls') or {}
                cookie = controls.get(PAGED_RESULTS_OID, {}).get('value', {}).get('cookie')
                if not cookie:
                    break
        return entries

    def _check(self, operation: str, target: str, allow: tuple = ()):
        result = self.connection.result
        code = result.get('result')
        if code == RESULT_SUCCESS or code in allow:
            return code
        raise DirectoryError(f"{operation} failed for {target}: {result.get('description')} "
                             f"{result.get('message', '')}".strip())

    @staticmethod
    def _first(value):
        if isinstance(value, list):
            return value[0] if value else None
        return value

    def _to_entity(self, item: Dict[str, Any]) -> Optional[ExistingEntity]:
        raw = item.get('attributes') or {}
        identifier = self._first(raw.get('sAMAccountName'))
        if not identifier:
            logger.warning(f"Entry has no sAMAccountName: {item.get('dn')}")
            return None
        attributes = AttributeMap()
        for name, value in raw.items():
            value = self._first(value)
            if value not in (None, ''):
                attributes[name] = str(value)
        dn = item['dn']
        return ExistingEntity(identifier=str(identifier), dn=dn,
                              container=parent_path(dn), attributes=attributes)

    def _find_dn(self, identifier: str) -> str:
        entries = self._search(
            self._search_base(),
            f"(&{USER_FILTER}(sAMAccountName={escape_filter_chars(identifier)}))",
            attributes=['sAMAccountName']
        )
        if not entries:
            raise DirectoryError(f"Entity not found: {identifier}")
        return entries[0]['dn']

    # Entities

    def get_entity(self, identifier: str) -> Optional[ExistingEntity]:
        entries = self._search(
            self._search_base(),
            f"(&{USER_FILTER}(sAMAccountName={escape_filter_chars(identifier)}))",
            attributes=self.attributes
        )
        return self._to_entity(entries[0]) if entries else None

    def get_entities(self, identifiers: Iterable[str]) -> Dict[str, ExistingEntity]:
        keys = sorted({i for i in identifiers if i})
        found = {}
        base = self._search_base()
        for start in range(0, len(keys), self.batch_size):
            chunk = keys[start:start + self.batch_size]
            terms = ''.join(f"(sAMAccountName={escape_filter_chars(key)})" for key in chunk)
            for item in self._search(base, f"(&{USER_FILTER}(|{terms}))", attributes=self.attributes):
                entity = self._to_entity(item)
                if entity:
                    found[entity.identifier.casefold()] = entity
        logger.debug(f"Bulk lookup found {len(found)} of {len(keys)} entities")
        return found

    def create_entity(self, identifier: str, container: str, attributes: Dict[str, Any]) -> str:
        values = AttributeMap(attributes)
        password = None
        for secret in ('password', 'unicodePwd', 'userPassword'):
            if secret in values:
                password = values.pop(secret)
        common_name = values.get('displayName') or identifier
        dn = f"CN={escape_rdn(common_name)},{container}"

        payload = {name: value for name, value in values.items() if value not in (None, '')}
        payload['sAMAccountName'] = identifier
        payload['userAccountControl'] = ACCOUNT_DISABLED

        with self._lock:
            conn = self._conn()
            conn.add(dn, object_class=USER_OBJECT_CLASSES, attributes=payload)
            self._check('Create entity', dn)
            if password:
                conn.extend.microsoft.modify_password(dn, password)
                self._check('Set password', dn)
                conn.modify(dn, {'userAccountControl': [(MODIFY_REPLACE, [ACCOUNT_ENABLED])]})
                self._check('Enable account', dn)
        logger.debug(f"Created entity {dn}")
        return dn

    def update_entity(self, identifier: str, attributes: Dict[str, Any]) -> bool:
        wanted = AttributeMap(attributes)
        with self._lock:
            current = self.get_entity(identifier)
            if current is None:
                raise DirectoryError(f"Entity not found: {identifier}")
            changes = {}
            for name, value in wanted.items():
                if name.casefold() in WRITE_ONLY_ATTRIBUTES:
                    continue
                existing = current.attributes.get(name, '')
                new_value = '' if value is None else str(value)
                if existing != new_value:
                    if new_value:
                        changes[name] = [(MODIFY_REPLACE, [new_value])]
                    else:
                        changes[name] = [(MODIFY_DELETE, [])]
            if not changes:
                return False
            self._conn().modify(current.dn, changes)
            self._check('Update entity', current.dn)
        logger.debug(f"Updated {len(changes)} attributes on {identifier}")
        return True

    def delete_entity(self, identifier: str) -> None:
        with self._lock:
            dn = self._find_dn(identifier)
            self._conn().delete(dn)
            self._check('Delete entity', dn)

    def move_entity(self, identifier: str, source: str, destination: str) -> str:
        with self._lock:
            dn = self._find_dn(identifier)
            rdn = split_dn(dn)[0]
            self._conn().modify_dn(dn, rdn, new_superior=destination)
            self._check('Move entity', dn)
        return f"{rdn},{destination}"

    def get_entity_container(self, identifier: str) -> Optional[str]:
        entity = self.get_entity(identifier)
        return entity.container if entity else None

    def list_entities(self, root: str) -> List[ExistingEntity]:
        entities = []
        for item in self._search(root, USER_FILTER, attributes=self.attributes):
            entity = self._to_entity(item)
            if entity:
                entities.append(entity)
        return entities

    # Containers

    def container_exists(self, dn: str) -> bool:
        return bool(self._search(dn, '(objectClass=organizationalUnit)', scope=BASE))

    def get_existing_containers(self, dns: Iterable[str]) -> Set[str]:
        wanted = sorted({dn for dn in dns if dn})
        found = set()
        base = self._search_base()
        for start in range(0, len(wanted), self.container_batch_size):
            chunk = wanted[start:start + self.container_batch_size]
            terms = ''.join(f"(distinguishedName={escape_filter_chars(dn)})" for dn in chunk)
            for item in self._search(base, f"(&(objectClass=organizationalUnit)(|{terms}))"):
                found.add(item['dn'].casefold())
        return found

    def create_container(self, dn: str) -> None:
        with self._lock:
            self._conn().add(dn, object_class=['top', 'organizationalUnit'],
                             attributes={'ou': container_name(dn)})
            self._check('Create container', dn, allow=(RESULT_ALREADY_EXISTS,))

    def delete_container(self, dn: str) -> None:
        with self._lock:
            self._conn().delete(dn)
            self._check('Delete container', dn)

    def list_children(self, dn: str) -> List[DirectoryChild]:
        children = []
        for item in self._search(dn, '(objectClass=*)', scope=LEVEL,
                                 attributes=['objectClass', 'sAMAccountName']):
            classes = {str(c).casefold() for c in item.get('attributes', {}).get('objectClass', [])}
            if 'organizationalunit' in classes:
                kind = CONTAINER
            elif 'group' in classes:
                kind = GROUP
            elif 'user' in classes and 'computer' not in classes:
                kind = ENTITY
            else:
                kind = OTHER
            identifier = self._first(item.get('attributes', {}).get('sAMAccountName')) or ''
            children.append(DirectoryChild(dn=item['dn'], kind=kind, identifier=str(identifier)))
        return children

    def list_containers(self, root: str) -> List[str]:
        return [item['dn'] for item in self._search(root, '(objectClass=organizationalUnit)')
                if item['dn'].casefold() != root.casefold()]

    # Groups

    def group_exists(self, dn: str) -> bool:
        return bool(self._search(dn, '(objectClass=group)', scope=BASE))

    def create_group(self, name: str, container: str, security: bool = True,
                     description: str = '') -> str:
        dn = f"CN={escape_rdn(name)},{container}"
        attributes = {
            'sAMAccountName': name,
            'groupType': GROUP_TYPE_GLOBAL_SECURITY if security else GROUP_TYPE_GLOBAL_DISTRIBUTION,
        }
        if description:
            attributes['description'] = description
        with self._lock:
            self._conn().add(dn, object_class=['top', 'group'], attributes=attributes)
            self._check('Create group', dn)
        return dn

    def delete_group(self, dn: str) -> None:
        with self._lock:
            self._conn().delete(dn)
            self._check('Delete group', dn)

    def add_member(self, group_dn: str, identifier: str) -> bool:
        with self._lock:
            member_dn = self._find_dn(identifier)
            self._conn().modify(group_dn, {'member': [(MODIFY_ADD, [member_dn])]})
            code = self._check('Add member', group_dn, allow=(RESULT_ALREADY_EXISTS,))
        return code == RESULT_SUCCESS

    def list_group_members(self, group_dn: str) -> List[str]:
        entries = self._search(group_dn, '(objectClass=group)', scope=BASE, attributes=['member'])
        if not entries:
            raise DirectoryError(f"Group not found: {group_dn}")
        members = entries[0].get('attributes', {}).get('member') or []
        return list(members) if isinstance(members, list) else [members]

    def get_connection_stats(self) -> Dict[str, Any]:
        return {
            'connected': self._connected,
            'server_url': self.server_url,
            'use_ssl': self.use_ssl,
            'start_tls': self.start_tls,
            'bind_dn': self.bind_dn,
            'base_dn': self.base_dn,
            'page_size': self.page_size,
        }
