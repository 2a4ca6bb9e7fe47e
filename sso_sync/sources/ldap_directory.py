"""
LDAP source directory.

Connects to an LDAP server (Active Directory or any RFC 4519 directory) and
exposes its users, groups and group members through the SourceDirectory interface.
"""

import logging
import ssl
import time
from typing import Any, Dict, List, Optional

from ldap3 import Server, Connection, SUBTREE, BASE, ALL, Tls
from ldap3.core.exceptions import LDAPException, LDAPSocketOpenError, LDAPBindError
from ldap3.utils.conv import escape_filter_chars

from sso_sync.errors import SyncError, TransportError
from sso_sync.models import (
    MEMBER_TYPE_GROUP, MEMBER_TYPE_USER, Member, SourceGroup, SourceUser
)
from sso_sync.sources.base import SourceDirectory

logger = logging.getLogger(__name__)

PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'
ACCOUNT_DISABLED = 0x2
GROUP_OBJECT_CLASSES = {'group', 'groupofnames', 'groupofuniquenames', 'posixgroup'}

USER_ATTRIBUTES = ['mail', 'givenName', 'sn', 'userAccountControl']
GROUP_ATTRIBUTES = ['cn', 'mail']


class LDAPConnectionError(SyncError):
    """Raised when LDAP connection fails."""
    pass


class LDAPQueryError(TransportError):
    """Raised when an LDAP query fails."""
    pass


class LDAPDirectory(SourceDirectory):
    """
    LDAP implementation of the SourceDirectory interface.

    Queries passed to list_users and list_groups are LDAP filter fragments that are
    AND-ed with the configured base filters.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize LDAP directory with configuration.

        Args:
            config: The ``ldap`` configuration section
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.user_base_dn = config.get('user_base_dn', '')
        self.group_base_dn = config.get('group_base_dn', '') or self.user_base_dn
        self.user_filter = config.get('user_filter', '(objectClass=person)')
        self.group_filter = config.get('group_filter', '(objectClass=group)')
        self.deleted_user_filter = config.get('deleted_user_filter', '')

        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.cert_file = config.get('cert_file')
        self.key_file = config.get('key_file')

        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.page_size = config.get('page_size', 1000)

        self.server = None
        self.connection = None
        self._connected = False

    def connect(self, max_retries: int = 3, retry_wait: float = 5) -> bool:
        """
        Establish connection to LDAP server with retry logic.

        Args:
            max_retries: Maximum number of connection attempts
            retry_wait: Seconds to wait between retries

        Returns:
            True if connection successful

        Raises:
            LDAPConnectionError: If connection fails after all retries
        """
        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
        except LDAPConnectionError:
            raise
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create LDAP server: {e}")

        last_exception = None
        for attempt in range(max_retries):
            try:
                self.connection = Connection(
                    self.server,
                    user=self.bind_dn,
                    password=self.bind_password,
                    auto_bind=False,
                    receive_timeout=self.receive_timeout
                )

                if not self.connection.open():
                    raise LDAPSocketOpenError(f"Failed to open connection: {self.connection.result}")

                if self.start_tls and not self.use_ssl:
                    if not self.connection.start_tls():
                        raise LDAPConnectionError(f"Failed to start TLS: {self.connection.result}")
                    logger.debug("StartTLS negotiation successful")

                if not self.connection.bind():
                    raise LDAPBindError(f"Bind failed: {self.connection.result}")

                self._connected = True
                logger.info(f"Successfully connected and bound to LDAP server {self.server_url}")
                return True

            except LDAPException as e:
                last_exception = e
                logger.warning(f"LDAP connection attempt {attempt + 1}/{max_retries} failed: {e}")
                self._drop_connection()
                if attempt < max_retries - 1:
                    time.sleep(retry_wait)
            except LDAPConnectionError as e:
                last_exception = e
                logger.error(f"LDAP connection failed: {e}")
                self._drop_connection()
                break

        error_msg = f"Failed to connect to LDAP after {max_retries} attempts"
        if last_exception:
            error_msg += f": {last_exception}"
        raise LDAPConnectionError(error_msg)

    def _create_tls_config(self) -> Optional[Tls]:
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {'validate': ssl.CERT_REQUIRED if self.verify_ssl else ssl.CERT_NONE}
        if not self.verify_ssl:
            logger.warning("SSL certificate verification disabled")
        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
        if self.cert_file and self.key_file:
            tls_config['local_certificate_file'] = self.cert_file
            tls_config['local_private_key_file'] = self.key_file
            logger.debug("Client certificate configured for mutual TLS")

        try:
            return Tls(**tls_config)
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create TLS configuration: {e}")

    def _drop_connection(self):
        if self.connection:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Error unbinding failed connection: {e}")
            self.connection = None

    def disconnect(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except Exception as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    # SourceDirectory interface

    def list_users(self, query: str = '') -> List[SourceUser]:
        """List users matching the query, leaving out entries marked deleted."""
        not_deleted = f"(!{self._wrap(self.deleted_user_filter)})" if self.deleted_user_filter else ''
        entries = self._paged_search(self.user_base_dn,
                                     self._combine(self.user_filter, query, not_deleted),
                                     USER_ATTRIBUTES)
        return self._to_users(entries)

    def list_deleted_users(self) -> List[SourceUser]:
        if not self.deleted_user_filter:
            logger.debug("No deleted_user_filter configured, skipping deleted users")
            return []
        entries = self._paged_search(self.user_base_dn,
                                     self._combine(self.user_filter, self.deleted_user_filter),
                                     USER_ATTRIBUTES)
        return self._to_users(entries)

    def list_groups(self, query: str = '') -> List[SourceGroup]:
        entries = self._paged_search(self.group_base_dn, self._combine(self.group_filter, query),
                                     GROUP_ATTRIBUTES)
        groups = []
        for entry in entries:
            name = _first(entry, 'cn')
            if not name:
                logger.warning(f"Group entry has no cn: {entry.entry_dn}")
                continue
            groups.append(SourceGroup(
                name=name,
                email=_first(entry, 'mail') or name,
                dn=str(entry.entry_dn),
            ))
        return groups

    def list_group_members(self, group: SourceGroup) -> List[Member]:
        group_entry = self._read_entry(group.dn, ['member'])
        if group_entry is None:
            raise LDAPQueryError(f"Group not found: {group.dn}")

        member_dns = group_entry.member.values if 'member' in group_entry else []
        members = []
        for member_dn in member_dns:
            entry = self._read_entry(member_dn, ['objectClass', 'mail'])
            if entry is None:
                logger.warning(f"Group member not found: group={group.name} dn={member_dn}")
                continue
            object_classes = {value.lower() for value in entry.objectClass.values}
            members.append(Member(
                email=_first(entry, 'mail'),
                type=MEMBER_TYPE_GROUP if object_classes & GROUP_OBJECT_CLASSES else MEMBER_TYPE_USER,
                dn=member_dn,
            ))
        return members

    def email_query(self, email: str) -> str:
        return f"(mail={escape_filter_chars(email)})"

    # Helpers

    @staticmethod
    def _wrap(clause: str) -> str:
        return clause if clause.startswith('(') else f"({clause})"

    @classmethod
    def _combine(cls, base_filter: str, *clauses: str) -> str:
        """AND the non-empty clauses onto the base filter."""
        wrapped = [cls._wrap(clause) for clause in clauses if clause]
        if not wrapped:
            return base_filter
        return f"(&{base_filter}{''.join(wrapped)})"

    def _require_connection(self):
        if not self._connected:
            raise LDAPQueryError("Not connected to LDAP server")

    def _read_entry(self, dn: str, attributes: List[str]):
        """Read a single entry by DN, None when it does not exist."""
        self._require_connection()
        try:
            success = self.connection.search(
                search_base=dn,
                search_filter='(objectClass=*)',
                search_scope=BASE,
                attributes=attributes
            )
        except LDAPException as e:
            if 'noSuchObject' in str(e):
                return None
            raise LDAPQueryError(f"LDAP read failed for {dn}: {e}")
        if not success or not self.connection.entries:
            return None
        return self.connection.entries[0]

    def _paged_search(self, search_base: str, search_filter: str, attributes: List[str]) -> list:
        """Run a subtree search following the paged results control until exhausted."""
        self._require_connection()
        search_base = search_base or self._get_domain_base()
        logger.debug(f"Searching with filter: {search_filter} in base: {search_base}")

        entries = []
        cookie = None
        page_count = 0
        try:
            while True:
                success = self.connection.search(
                    search_base=search_base,
                    search_filter=search_filter,
                    search_scope=SUBTREE,
                    attributes=attributes,
                    paged_size=self.page_size,
                    paged_cookie=cookie
                )
                if not success and self.connection.result.get('description') != 'success':
                    raise LDAPQueryError(f"Search failed: {self.connection.result}")

                page_count += 1
                entries.extend(self.connection.entries)

                cookie = (self.connection.result.get('controls', {})
                          .get(PAGED_RESULTS_OID, {}).get('value', {}).get('cookie'))
                if not cookie:
                    break
        except LDAPException as e:
            raise LDAPQueryError(f"Paginated search failed: {e}")

        logger.debug(f"Retrieved {len(entries)} entries across {page_count} pages")
        return entries

    def _to_users(self, entries) -> List[SourceUser]:
        users = []
        for entry in entries:
            email = _first(entry, 'mail')
            if not email:
                logger.warning(f"User entry has no mail attribute: {entry.entry_dn}")
                continue
            account_control = _first(entry, 'userAccountControl') or 0
            users.append(SourceUser(
                primary_email=email,
                given_name=_first(entry, 'givenName') or '',
                family_name=_first(entry, 'sn') or '',
                suspended=bool(int(account_control) & ACCOUNT_DISABLED),
            ))
        return users

    def _get_domain_base(self) -> str:
        """Derive the domain base DN from the bind DN or the server's naming contexts."""
        dc_parts = [part.strip() for part in self.bind_dn.split(',')
                    if part.strip().upper().startswith('DC=')]
        if dc_parts:
            return ','.join(dc_parts)

        if self.server and self.server.info and self.server.info.naming_contexts:
            return self.server.info.naming_contexts[0]

        raise LDAPQueryError("Cannot determine domain base DN")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()


def _first(entry, attribute: str):
    """Return the first value of an attribute, None when absent."""
    if attribute not in entry:
        return None
    value = entry[attribute].value
    if isinstance(value, list):
        return value[0] if value else None
    return value
