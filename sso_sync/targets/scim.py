"""
SCIM 2.0 target store client.

Talks to a SCIM service provider (for example AWS IAM Identity Center) over plain
HTTP(S) with bearer-token authentication. Transient failures are retried here so
the reconciliation engine sees every call as a single request.
"""

import json
import ssl
import logging
from typing import Any, Dict, List, Optional, Union
from urllib.parse import urlparse, urlencode
from http.client import HTTPException, HTTPSConnection, HTTPConnection

from sso_sync.errors import ConflictError, NotFoundError, TransportError
from sso_sync.models import TargetGroup, TargetUser
from sso_sync.retry import (
    MaxRetriesExceeded, create_retry_callback, is_retryable_error, retry_call, retry_settings
)
from sso_sync.targets.base import TargetStore

logger = logging.getLogger(__name__)

USER_SCHEMA = 'urn:ietf:params:scim:schemas:core:2.0:User'
GROUP_SCHEMA = 'urn:ietf:params:scim:schemas:core:2.0:Group'
PATCH_SCHEMA = 'urn:ietf:params:scim:api:messages:2.0:PatchOp'
SCIM_CONTENT_TYPE = 'application/scim+json'


class SCIMClient(TargetStore):
    """
    SCIM implementation of the TargetStore interface.

    Users are keyed by ``userName`` (the primary email) and groups by ``displayName``.
    """

    def __init__(self, config: Dict[str, Any], error_config: Optional[Dict[str, Any]] = None):
        """
        Initialize SCIM client.

        Args:
            config: The ``scim`` configuration section
            error_config: The ``error_handling`` section, controls transport retries
        """
        self.config = config
        self.endpoint = config['endpoint']
        self.access_token = config['access_token']
        self.verify_ssl = config.get('verify_ssl', True)
        self.page_size = config.get('page_size', 50)
        self.timeout = config.get('timeout', 30)
        self.retry_options = retry_settings(error_config or {})

        self.parsed_url = urlparse(self.endpoint)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        self.connection = None
        self.ssl_context = None
        self.auth_headers = {
            'Authorization': f"Bearer {self.access_token}",
            'Accept': SCIM_CONTENT_TYPE,
        }

        self._setup_ssl_context()

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if self.parsed_url.scheme != 'https':
            return

        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.host}")
            return

        self.ssl_context = ssl.create_default_context()
        truststore_file = self.config.get('truststore_file')
        if truststore_file:
            self._load_truststore(truststore_file)

    def _load_truststore(self, truststore_file: str):
        """Load custom CA certificates from a PEM or PKCS12 truststore."""
        truststore_type = self.config.get('truststore_type', 'PEM').upper()
        truststore_password = self.config.get('truststore_password')

        try:
            if truststore_type == 'PEM':
                self.ssl_context.load_verify_locations(cafile=truststore_file)
            elif truststore_type == 'PKCS12':
                from cryptography.hazmat.primitives import serialization
                from cryptography.hazmat.primitives.serialization import pkcs12

                with open(truststore_file, 'rb') as f:
                    p12_data = f.read()

                _, certificate, additional_certificates = pkcs12.load_key_and_certificates(
                    p12_data, truststore_password.encode() if truststore_password else None
                )
                ca_certs = []
                if certificate:
                    ca_certs.append(certificate.public_bytes(serialization.Encoding.PEM).decode())
                for cert in (additional_certificates or []):
                    ca_certs.append(cert.public_bytes(serialization.Encoding.PEM).decode())
                if ca_certs:
                    self.ssl_context.load_verify_locations(cadata='\n'.join(ca_certs))
            else:
                raise TransportError(f"Unsupported truststore type: {truststore_type}")
            logger.info(f"Loaded {truststore_type} truststore: {truststore_file}")
        except TransportError:
            raise
        except Exception as e:
            logger.error(f"Failed to load truststore {truststore_file}: {e}")
            raise TransportError(f"Truststore loading failed: {e}")

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        if self.connection:
            return self.connection

        if self.parsed_url.scheme == 'https':
            self.connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        else:
            self.connection = HTTPConnection(self.host, timeout=self.timeout)
        return self.connection

    def request(self, method: str, path: str, body: Optional[Dict] = None,
                params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Make a SCIM request, retrying transient failures.

        Args:
            method: HTTP method
            path: Resource path relative to the endpoint, e.g. ``/Users``
            body: JSON body
            params: Query string parameters

        Returns:
            Parsed JSON response, empty dict for empty bodies

        Raises:
            NotFoundError: On HTTP 404
            ConflictError: On HTTP 409
            TransportError: On any other failure
        """
        try:
            return retry_call(
                self._send,
                (method, path, body, params),
                exceptions=(TransportError,),
                should_retry=is_retryable_error,
                on_retry=create_retry_callback(f"SCIM {method} {path}"),
                **self.retry_options
            )
        except MaxRetriesExceeded as e:
            raise TransportError(str(e), getattr(e.last_exception, 'status_code', None)) from e.last_exception

    def _send(self, method: str, path: str, body: Optional[Dict],
              params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        full_path = self.base_path + path
        if params:
            full_path += '?' + urlencode(params)

        headers = dict(self.auth_headers)
        request_body = None
        if body is not None:
            request_body = json.dumps(body)
            headers['Content-Type'] = SCIM_CONTENT_TYPE

        try:
            conn = self._get_connection()
            logger.debug(f"Making {method} request to {self.host}{full_path}")
            conn.request(method, full_path, request_body, headers)
            response = conn.getresponse()
            response_data = response.read().decode('utf-8')
        except (HTTPException, OSError) as e:
            # Drop the connection so the next attempt reconnects
            self.close()
            raise TransportError(f"Connection error to {self.host}: {e}") from e

        logger.debug(f"Response status: {response.status} {response.reason}")

        if response.status == 404:
            raise NotFoundError(f"{method} {path}: not found")
        if response.status == 409:
            raise ConflictError(f"{method} {path}: already exists")
        if response.status >= 400:
            raise TransportError(
                f"HTTP {response.status}: {response.reason} {self._error_detail(response_data)}".rstrip(),
                response.status
            )

        if not response_data:
            return {}
        try:
            return json.loads(response_data)
        except json.JSONDecodeError as e:
            raise TransportError(f"Invalid JSON response from {self.host}: {e}")

    @staticmethod
    def _error_detail(response_data: str) -> str:
        try:
            return json.loads(response_data).get('detail', '')
        except (ValueError, AttributeError):
            return ''

    def _list(self, path: str, filter_expr: Optional[str] = None) -> List[Dict[str, Any]]:
        """Fetch every page of a SCIM list response."""
        resources = []
        start_index = 1
        while True:
            params = {'startIndex': start_index, 'count': self.page_size}
            if filter_expr:
                params['filter'] = filter_expr
            page = self.request('GET', path, params=params)

            page_resources = page.get('Resources', [])
            resources.extend(page_resources)
            total = page.get('totalResults', len(resources))
            if not page_resources or len(resources) >= total:
                break
            start_index += len(page_resources)
        return resources

    # Users

    def find_user_by_email(self, email: str) -> TargetUser:
        resources = self._list('/Users', f'userName eq "{scim_quote(email)}"')
        if not resources:
            raise NotFoundError(f"User not found: {email}")
        return user_from_resource(resources[0])

    def create_user(self, user: TargetUser) -> TargetUser:
        created = self.request('POST', '/Users', body=user_to_resource(user))
        return user_from_resource(created) if created else user

    def update_user(self, user: TargetUser) -> TargetUser:
        if not user.id:
            raise TransportError(f"Cannot update user without id: {user.username}")
        updated = self.request('PUT', f'/Users/{user.id}', body=user_to_resource(user))
        return user_from_resource(updated) if updated else user

    def delete_user(self, user: TargetUser) -> None:
        self.request('DELETE', f'/Users/{user.id}')

    def list_users(self) -> List[TargetUser]:
        return [user_from_resource(resource) for resource in self._list('/Users')]

    # Groups

    def find_group_by_name(self, name: str) -> TargetGroup:
        resources = self._list('/Groups', f'displayName eq "{scim_quote(name)}"')
        if not resources:
            raise NotFoundError(f"Group not found: {name}")
        return group_from_resource(resources[0])

    def create_group(self, group: TargetGroup) -> TargetGroup:
        created = self.request('POST', '/Groups', body={
            'schemas': [GROUP_SCHEMA],
            'displayName': group.display_name,
            'members': [],
        })
        return group_from_resource(created) if created else group

    def delete_group(self, group: TargetGroup) -> None:
        self.request('DELETE', f'/Groups/{group.id}')

    def list_groups(self) -> List[TargetGroup]:
        return [group_from_resource(resource) for resource in self._list('/Groups')]

    # Membership

    def is_member(self, user: TargetUser, group: TargetGroup) -> bool:
        response = self.request('GET', '/Groups', params={
            'filter': f'id eq "{scim_quote(group.id)}" and members eq "{scim_quote(user.id)}"'
        })
        return bool(response.get('Resources')) or response.get('totalResults', 0) > 0

    def add_member(self, user: TargetUser, group: TargetGroup) -> None:
        self._patch_members(group, {'op': 'add', 'path': 'members', 'value': [{'value': user.id}]})

    def remove_member(self, user: TargetUser, group: TargetGroup) -> None:
        self._patch_members(group, {'op': 'remove', 'path': f'members[value eq "{scim_quote(user.id)}"]'})

    def _patch_members(self, group: TargetGroup, operation: Dict[str, Any]):
        self.request('PATCH', f'/Groups/{group.id}', body={
            'schemas': [PATCH_SCHEMA],
            'Operations': [operation],
        })

    def test_connection(self) -> bool:
        """Check that the endpoint answers an authenticated request."""
        try:
            self.request('GET', '/Users', params={'startIndex': 1, 'count': 1})
            return True
        except TransportError as e:
            logger.debug(f"SCIM connection test failed: {e}")
            return False

    def close(self) -> None:
        if self.connection:
            try:
                self.connection.close()
            except Exception as e:
                logger.warning(f"Error closing connection to {self.host}: {e}")
            finally:
                self.connection = None


def scim_quote(value: Any) -> str:
    """Escape a value for use inside a double-quoted SCIM filter string."""
    return str(value).replace('\\', '\\\\').replace('"', '\\"')


def user_to_resource(user: TargetUser) -> Dict[str, Any]:
    """Serialize a user as a full SCIM User resource."""
    return {
        'schemas': [USER_SCHEMA],
        'userName': user.username,
        'name': {
            'givenName': user.given_name,
            'familyName': user.family_name,
        },
        'displayName': f"{user.given_name} {user.family_name}".strip(),
        'active': user.active,
        'emails': [{'value': user.username, 'type': 'work', 'primary': True}],
    }


def user_from_resource(resource: Dict[str, Any]) -> TargetUser:
    name = resource.get('name') or {}
    return TargetUser(
        username=resource.get('userName', ''),
        given_name=name.get('givenName', ''),
        family_name=name.get('familyName', ''),
        active=resource.get('active', True),
        id=resource.get('id'),
    )


def group_from_resource(resource: Dict[str, Any]) -> TargetGroup:
    return TargetGroup(display_name=resource.get('displayName', ''), id=resource.get('id'))
