"""
Directory sessions.

This module manages the connection to a directory server: URL selection,
TLS trust, bind credentials, search scope, count limit, connect timeout and
the advisory pooling hints handed to the transport.
"""

import logging
import os
import ssl
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Union

from cryptography.hazmat.primitives.serialization import Encoding, pkcs12
from ldap3 import BASE, LEVEL, SUBTREE, NONE, Connection, Server, Tls
from ldap3.core.exceptions import LDAPException
from ldap3.core.results import RESULT_SUCCESS

from directory_sync.errors import DirectoryConnectionError, DirectoryError, InvalidQueryError
from directory_sync.logging_setup import security_logger

logger = logging.getLogger(__name__)

DEFAULT_PORT = 389
DEFAULT_SECURE_PORT = 636
DEFAULT_TIMEOUT_MS = 10000
POOL_KEEPALIVE_SECONDS = 3600
UNLIMITED = -1

PKCS12_EXTENSIONS = ('.p12', '.pfx')


class ConnectionMode(Enum):
    READ_ONLY = 'ro'
    READ_WRITE = 'rw'


class SearchScope(Enum):
    """Search depth, valued with the ldap3 scope constants."""
    OBJECT = BASE
    ONE_LEVEL = LEVEL
    SUBTREE = SUBTREE


SCOPE_NAMES = {
    'object': SearchScope.OBJECT,
    'base': SearchScope.OBJECT,
    'one_level': SearchScope.ONE_LEVEL,
    'onelevel': SearchScope.ONE_LEVEL,
    'level': SearchScope.ONE_LEVEL,
    'subtree': SearchScope.SUBTREE,
}


def raise_for_result(connection: Connection, operation: str, allowed: Iterable[int] = (RESULT_SUCCESS,)):
    """
    Turn a non-successful ldap3 result into a DirectoryError.

    Args:
        connection: Connection the operation ran on
        operation: Operation name used in the error message
        allowed: Result codes that are not errors
    """
    result = connection.result or {}
    code = result.get('result', RESULT_SUCCESS)
    if code in allowed:
        return
    description = result.get('description') or 'unknown error'
    message = result.get('message')
    detail = f"{description} ({message})" if message else description
    raise DirectoryError(f"{operation} failed: {detail}")


class DirectorySession:
    """
    Connection manager for a single directory server.

    One underlying connection is established lazily and reused until
    disconnect(). A session is not safe for concurrent use.
    """

    def __init__(self, server: str, port: Optional[int] = None,
                 server_options: Optional[Dict[str, Any]] = None,
                 connection_options: Optional[Dict[str, Any]] = None):
        """
        Initialize a directory session.

        Args:
            server: Server name or address
            port: Server port (389, or 636 once secure, when omitted)
            server_options: Extra keyword arguments for ldap3.Server
            connection_options: Extra keyword arguments for ldap3.Connection
        """
        if not server:
            raise DirectoryError("Directory server name cannot be empty")
        self.server = server
        self.port = port or DEFAULT_PORT
        self.bind_dn = None
        self.bind_password = None

        self.secure = False
        self.trust_store = None
        self._tls = None

        self._scope = SearchScope.SUBTREE
        self._count_limit = UNLIMITED
        self.connect_timeout_ms = DEFAULT_TIMEOUT_MS

        # Linked transport hints, set and removed together
        self.transport_options: Dict[str, Any] = {}

        self.server_options = dict(server_options or {})
        self.connection_options = dict(connection_options or {})

        self._server = None
        self._connection = None

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'DirectorySession':
        """
        Build a session from the 'directory' configuration section.

        Args:
            config: Directory configuration dictionary

        Returns:
            Configured session (not yet connected)
        """
        session = cls(config['host'], config.get('port'),
                      server_options=config.get('server_options'),
                      connection_options=config.get('connection_options'))
        if config.get('bind_dn'):
            session.set_user(config['bind_dn'], config.get('bind_password'))
        if config.get('secure'):
            session.set_secure(config.get('trust_store') or True,
                               trust_store_password=config.get('trust_store_password'))
        session.set_scope(config.get('scope', 'subtree'))
        session.set_count_limit(config.get('count_limit', UNLIMITED))
        session.set_connection_pool(config.get('pooling', False))
        session.set_timeout(config.get('timeout_ms', DEFAULT_TIMEOUT_MS))
        return session

    @property
    def url(self) -> str:
        if self.secure:
            port = DEFAULT_SECURE_PORT if self.port == DEFAULT_PORT else self.port
            return f"ldaps://{self.server}:{port}"
        return f"ldap://{self.server}:{self.port}"

    @property
    def effective_port(self) -> int:
        if self.secure and self.port == DEFAULT_PORT:
            return DEFAULT_SECURE_PORT
        return self.port

    @property
    def scope(self) -> SearchScope:
        return self._scope

    @property
    def count_limit(self) -> int:
        return self._count_limit

    @property
    def connected(self) -> bool:
        return self._connection is not None

    def has_count_limit(self) -> bool:
        return self._count_limit > 0

    def is_secure(self) -> bool:
        return self.secure

    def set_user(self, dn: str, password: Optional[str]):
        """Set the credentials used to bind the session."""
        self.bind_dn = dn
        self.bind_password = password

    def set_port(self, port: int):
        self.port = port
        self._server = None

    def set_secure(self, value: Union[bool, str, os.PathLike], trust_store_password: Optional[str] = None):
        """
        Enable or disable LDAPS.

        Args:
            value: True to trust any server certificate, False to disable TLS,
                   or the path of a trust store (PEM or PKCS#12) to validate against
            trust_store_password: Password of a PKCS#12 trust store
        """
        self._server = None
        if value is True:
            self._tls = self._create_tls_config(None)
            self.secure = True
            self.trust_store = None
            logger.warning(f"SSL certificate verification disabled for {self.server}")
            return
        if not value:
            self._tls = None
            self.secure = False
            self.trust_store = None
            return

        path = os.fspath(value)
        if not os.path.exists(path):
            logger.warning(f"Trust store {path} not found, secure connection disabled for {self.server}")
            self._tls = None
            self.secure = False
            self.trust_store = None
            return
        self._tls = self._create_tls_config(path, trust_store_password)
        self.secure = True
        self.trust_store = path

    def _create_tls_config(self, trust_store: Optional[str], password: Optional[str] = None) -> Tls:
        """
        Create the TLS configuration for LDAPS connections.

        Args:
            trust_store: Trust store path, or None to skip certificate validation
            password: PKCS#12 trust store password

        Returns:
            ldap3 Tls configuration
        """
        tls_config: Dict[str, Any] = {}
        if trust_store is None:
            tls_config['validate'] = ssl.CERT_NONE
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED
            if trust_store.lower().endswith(PKCS12_EXTENSIONS):
                tls_config['ca_certs_data'] = self._load_pkcs12_certificates(trust_store, password)
                logger.debug(f"Using PKCS12 trust store: {trust_store}")
            else:
                tls_config['ca_certs_file'] = trust_store
                logger.debug(f"Using CA certificate file: {trust_store}")
        try:
            return Tls(**tls_config)
        except LDAPException as e:
            raise DirectoryError(f"Failed to create TLS configuration: {e}") from e

    @staticmethod
    def _load_pkcs12_certificates(path: str, password: Optional[str]) -> str:
        """Extract the certificates of a PKCS#12 bundle as PEM text."""
        try:
            with open(path, 'rb') as f:
                data = f.read()
            _, certificate, additional_certificates = pkcs12.load_key_and_certificates(
                data, password.encode() if password else None
            )
        except (OSError, ValueError) as e:
            raise DirectoryError(f"Trust store loading failed: {e}") from e

        certificates = []
        if certificate is not None:
            certificates.append(certificate)
        certificates.extend(additional_certificates or [])
        if not certificates:
            raise DirectoryError(f"Trust store {path} contains no certificates")
        return ''.join(c.public_bytes(Encoding.PEM).decode('ascii') for c in certificates)

    def set_connection_pool(self, status: bool):
        """
        Toggle the transport pooling hints.

        Only the hints are set; no pool is maintained here.
        """
        if status:
            self.transport_options['pool_name'] = f"directory-sync-{self.server}"
            self.transport_options['pool_keepalive'] = POOL_KEEPALIVE_SECONDS
        elif 'pool_name' in self.transport_options:
            self.transport_options.pop('pool_name')
            self.transport_options.pop('pool_keepalive', None)

    @property
    def pooling(self) -> bool:
        return 'pool_name' in self.transport_options

    def set_scope(self, scope: Union[SearchScope, str]):
        """
        Set the search scope.

        Raises:
            InvalidQueryError: If scope is not object, one level or subtree
        """
        if isinstance(scope, SearchScope):
            self._scope = scope
            return
        if isinstance(scope, str):
            key = scope.strip().lower().replace('-', '_')
            if key in SCOPE_NAMES:
                self._scope = SCOPE_NAMES[key]
                return
            for member in SearchScope:
                if scope == member.value:
                    self._scope = member
                    return
        raise InvalidQueryError(f"invalid scope: {scope!r}")

    def set_count_limit(self, limit: int):
        """Set the result count limit; values other than positive ints or UNLIMITED are ignored."""
        if isinstance(limit, int) and not isinstance(limit, bool) and (limit > 0 or limit == UNLIMITED):
            self._count_limit = limit
            return
        logger.warning(f"Ignoring invalid count limit {limit!r}, keeping {self._count_limit}")

    def set_timeout(self, milliseconds: int):
        self.connect_timeout_ms = abs(int(milliseconds))
        self._server = None

    def _get_server(self) -> Server:
        if self._server is None:
            options = {
                'port': self.effective_port,
                'use_ssl': self.secure,
                'tls': self._tls,
                'get_info': NONE,
                'connect_timeout': self.connect_timeout_ms / 1000.0,
            }
            options.update(self.server_options)
            self._server = Server(self.server, **options)
            logger.debug(f"Created LDAP server object for {self.url}")
        return self._server

    def _open(self, user: Optional[str], password: Optional[str], read_only: bool) -> Connection:
        options = {
            'user': user,
            'password': password,
            'read_only': read_only,
            'raise_exceptions': False,
            'receive_timeout': max(1, self.connect_timeout_ms // 1000),
        }
        options.update(self.transport_options)
        options.update(self.connection_options)
        return Connection(self._get_server(), **options)

    def connect(self, mode: ConnectionMode = ConnectionMode.READ_ONLY) -> Connection:
        """
        Return the live connection, opening and binding it if needed.

        Args:
            mode: READ_ONLY or READ_WRITE

        Returns:
            Bound ldap3 connection

        Raises:
            DirectoryConnectionError: If the connection cannot be established
        """
        if self._connection is not None:
            return self._connection

        url = self.url
        connection = None
        try:
            connection = self._open(self.bind_dn, self.bind_password,
                                    read_only=mode is ConnectionMode.READ_ONLY)
            if connection is None:
                raise DirectoryConnectionError("Unknown directory error", url)
            if not connection.bind():
                result = connection.result or {}
                raise DirectoryConnectionError(
                    f"Bind failed: {result.get('description', 'unknown error')}", url)
        except DirectoryConnectionError:
            security_logger.log_authentication_attempt(url, self.bind_dn, False)
            self._discard(connection)
            raise
        except (LDAPException, OSError) as e:
            logger.error(f"Failed to connect to {url}: {e}")
            security_logger.log_authentication_attempt(url, self.bind_dn, False)
            self._discard(connection)
            raise DirectoryConnectionError(str(e), url) from e

        self._connection = connection
        logger.debug(f"Connected to {url} ({mode.name.lower()})")
        return connection

    @staticmethod
    def _discard(connection: Optional[Connection]):
        if connection is None:
            return
        try:
            connection.unbind()
        except LDAPException as e:
            logger.debug(f"Ignoring error while discarding connection: {e}")

    def disconnect(self):
        """Close the connection; does nothing when not connected."""
        if self._connection is None:
            return
        try:
            self._connection.unbind()
            logger.debug(f"Connection to {self.url} closed")
        except LDAPException as e:
            logger.warning(f"Error closing LDAP connection: {e}")
        finally:
            self._connection = None

    def authenticate(self, dn: str, password: str) -> bool:
        """
        Check credentials with a simple bind on a separate connection.

        Raises:
            DirectoryError: If the password is empty or the bind is rejected
        """
        if not password:
            raise DirectoryError("Invalid empty password")
        url = self.url
        connection = None
        try:
            connection = self._open(dn, password, read_only=True)
            if connection is None:
                raise DirectoryConnectionError("Unknown directory error", url)
            success = connection.bind()
        except (LDAPException, OSError) as e:
            security_logger.log_authentication_attempt(url, dn, False)
            raise DirectoryConnectionError(str(e), url) from e
        finally:
            self._discard(connection)

        security_logger.log_authentication_attempt(url, dn, bool(success))
        if not success:
            raise DirectoryError(f"Invalid credentials for {dn}")
        return True

    def get_session_info(self) -> Dict[str, Any]:
        """
        Get session configuration and status.

        Returns:
            Dictionary with session information
        """
        return {
            'url': self.url,
            'connected': self.connected,
            'secure': self.secure,
            'trust_store': self.trust_store,
            'bind_dn': self.bind_dn,
            'scope': self._scope.name,
            'count_limit': self._count_limit,
            'pooling': self.pooling,
            'connect_timeout_ms': self.connect_timeout_ms,
        }

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()
