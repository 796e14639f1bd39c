#!/usr/bin/env python3
"""
Unit tests for directory sessions.
"""

import os
import ssl
import sys
import tempfile
import unittest
from unittest.mock import Mock, patch

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap3.core.exceptions import LDAPSocketOpenError

from directory_sync.errors import DirectoryConnectionError, DirectoryError, InvalidQueryError
from directory_sync.session import (
    POOL_KEEPALIVE_SECONDS, UNLIMITED, ConnectionMode, DirectorySession, SearchScope, raise_for_result,
)


class TestSessionSettings(unittest.TestCase):
    """Test cases for session configuration."""

    def setUp(self):
        self.session = DirectorySession('ldap.example.com')

    def test_default_url(self):
        self.assertEqual(self.session.url, 'ldap://ldap.example.com:389')

    def test_secure_switches_default_port(self):
        self.session.set_secure(True)
        self.assertEqual(self.session.url, 'ldaps://ldap.example.com:636')
        self.assertEqual(self.session.effective_port, 636)

    def test_secure_keeps_custom_port(self):
        session = DirectorySession('ldap.example.com', 3269)
        session.set_secure(True)
        self.assertEqual(session.url, 'ldaps://ldap.example.com:3269')

    def test_empty_server_rejected(self):
        with self.assertRaises(DirectoryError):
            DirectorySession('')

    def test_trust_all_disables_validation(self):
        with self.assertLogs('directory_sync.session', level='WARNING'):
            self.session.set_secure(True)
        self.assertEqual(self.session._tls.validate, ssl.CERT_NONE)

    def test_pem_trust_store(self):
        with tempfile.NamedTemporaryFile(suffix='.pem', delete=False) as f:
            f.write(b'-----BEGIN CERTIFICATE-----\n-----END CERTIFICATE-----\n')
            path = f.name
        try:
            self.session.set_secure(path)
            self.assertTrue(self.session.is_secure())
            self.assertEqual(self.session.trust_store, path)
            self.assertEqual(self.session._tls.validate, ssl.CERT_REQUIRED)
            self.assertEqual(self.session._tls.ca_certs_file, path)
        finally:
            os.unlink(path)

    def test_missing_trust_store_disables_security(self):
        self.session.set_secure(True)
        with self.assertLogs('directory_sync.session', level='WARNING'):
            self.session.set_secure('/nonexistent/truststore.pem')
        self.assertFalse(self.session.is_secure())
        self.assertEqual(self.session.url, 'ldap://ldap.example.com:389')

    def test_connection_pool_hints_are_linked(self):
        self.session.set_connection_pool(True)
        self.assertTrue(self.session.pooling)
        self.assertEqual(self.session.transport_options['pool_keepalive'], POOL_KEEPALIVE_SECONDS)
        self.assertIn('pool_name', self.session.transport_options)

        self.session.set_connection_pool(False)
        self.assertFalse(self.session.pooling)
        self.assertEqual(self.session.transport_options, {})

    def test_scope_by_enum_and_name(self):
        self.assertIs(self.session.scope, SearchScope.SUBTREE)
        self.session.set_scope(SearchScope.OBJECT)
        self.assertIs(self.session.scope, SearchScope.OBJECT)
        self.session.set_scope('one_level')
        self.assertIs(self.session.scope, SearchScope.ONE_LEVEL)
        self.session.set_scope('SUBTREE')
        self.assertIs(self.session.scope, SearchScope.SUBTREE)

    def test_invalid_scope(self):
        with self.assertRaises(InvalidQueryError):
            self.session.set_scope('everything')
        with self.assertRaises(DirectoryError):
            self.session.set_scope(3)

    def test_count_limit(self):
        self.assertEqual(self.session.count_limit, UNLIMITED)
        self.assertFalse(self.session.has_count_limit())

        self.session.set_count_limit(50)
        self.assertTrue(self.session.has_count_limit())
        self.assertEqual(self.session.count_limit, 50)

    def test_invalid_count_limit_is_ignored(self):
        self.session.set_count_limit(10)
        for value in (0, -5, True, '10'):
            with self.subTest(value=value):
                with self.assertLogs('directory_sync.session', level='WARNING'):
                    self.session.set_count_limit(value)
                self.assertEqual(self.session.count_limit, 10)

    def test_timeout_uses_absolute_value(self):
        self.session.set_timeout(-5000)
        self.assertEqual(self.session.connect_timeout_ms, 5000)

    def test_from_config(self):
        session = DirectorySession.from_config({
            'host': 'ad.example.com',
            'port': 389,
            'bind_dn': 'cn=admin,dc=example,dc=com',
            'bind_password': 'secret',
            'scope': 'one_level',
            'count_limit': 100,
            'pooling': True,
            'timeout_ms': 2500,
        })

        self.assertEqual(session.url, 'ldap://ad.example.com:389')
        self.assertEqual(session.bind_dn, 'cn=admin,dc=example,dc=com')
        self.assertIs(session.scope, SearchScope.ONE_LEVEL)
        self.assertEqual(session.count_limit, 100)
        self.assertTrue(session.pooling)
        self.assertEqual(session.connect_timeout_ms, 2500)

    def test_session_info(self):
        info = self.session.get_session_info()
        self.assertEqual(info['url'], 'ldap://ldap.example.com:389')
        self.assertFalse(info['connected'])
        self.assertEqual(info['scope'], 'SUBTREE')


@patch('directory_sync.session.Connection')
@patch('directory_sync.session.Server')
class TestSessionConnection(unittest.TestCase):
    """Test cases for connecting and disconnecting."""

    def setUp(self):
        self.session = DirectorySession('ldap.example.com')
        self.session.set_user('cn=admin,dc=example,dc=com', 'secret')

    def test_connect_binds_and_caches(self, mock_server, mock_connection):
        connection = Mock()
        connection.bind.return_value = True
        mock_connection.return_value = connection

        first = self.session.connect()
        second = self.session.connect(ConnectionMode.READ_WRITE)

        self.assertIs(first, connection)
        self.assertIs(second, connection)
        mock_connection.assert_called_once()
        kwargs = mock_connection.call_args[1]
        self.assertEqual(kwargs['user'], 'cn=admin,dc=example,dc=com')
        self.assertTrue(kwargs['read_only'])
        self.assertFalse(kwargs['raise_exceptions'])

    def test_connect_read_write(self, mock_server, mock_connection):
        mock_connection.return_value.bind.return_value = True
        self.session.connect(ConnectionMode.READ_WRITE)
        self.assertFalse(mock_connection.call_args[1]['read_only'])

    def test_server_options(self, mock_server, mock_connection):
        mock_connection.return_value.bind.return_value = True
        self.session.set_timeout(3000)
        self.session.connect()

        args, kwargs = mock_server.call_args
        self.assertEqual(args[0], 'ldap.example.com')
        self.assertEqual(kwargs['port'], 389)
        self.assertFalse(kwargs['use_ssl'])
        self.assertEqual(kwargs['connect_timeout'], 3.0)

    def test_pool_hints_passed_to_connection(self, mock_server, mock_connection):
        mock_connection.return_value.bind.return_value = True
        self.session.set_connection_pool(True)
        self.session.connect()

        kwargs = mock_connection.call_args[1]
        self.assertEqual(kwargs['pool_keepalive'], POOL_KEEPALIVE_SECONDS)

    def test_bind_failure(self, mock_server, mock_connection):
        connection = mock_connection.return_value
        connection.bind.return_value = False
        connection.result = {'result': 49, 'description': 'invalidCredentials'}

        with self.assertRaises(DirectoryConnectionError) as context:
            self.session.connect()

        self.assertEqual(context.exception.url, 'ldap://ldap.example.com:389')
        self.assertIn('invalidCredentials', str(context.exception))
        self.assertFalse(self.session.connected)
        connection.unbind.assert_called_once()

    def test_transport_error_is_wrapped(self, mock_server, mock_connection):
        mock_connection.return_value.bind.side_effect = LDAPSocketOpenError('unreachable')

        with self.assertRaises(DirectoryConnectionError) as context:
            self.session.connect()

        self.assertIn('ldap://ldap.example.com:389', str(context.exception))

    def test_disconnect(self, mock_server, mock_connection):
        connection = mock_connection.return_value
        connection.bind.return_value = True
        self.session.connect()

        self.session.disconnect()
        self.session.disconnect()

        connection.unbind.assert_called_once()
        self.assertFalse(self.session.connected)

    def test_context_manager_disconnects(self, mock_server, mock_connection):
        connection = mock_connection.return_value
        connection.bind.return_value = True

        with self.session as session:
            session.connect()

        connection.unbind.assert_called_once()

    def test_authenticate(self, mock_server, mock_connection):
        mock_connection.return_value.bind.return_value = True

        self.assertTrue(self.session.authenticate('uid=jdoe,dc=example,dc=com', 'pw'))
        kwargs = mock_connection.call_args[1]
        self.assertEqual(kwargs['user'], 'uid=jdoe,dc=example,dc=com')
        self.assertEqual(kwargs['password'], 'pw')
        mock_connection.return_value.unbind.assert_called_once()

    def test_authenticate_rejected(self, mock_server, mock_connection):
        mock_connection.return_value.bind.return_value = False

        with self.assertRaises(DirectoryError):
            self.session.authenticate('uid=jdoe,dc=example,dc=com', 'wrong')

    def test_authenticate_empty_password(self, mock_server, mock_connection):
        with self.assertRaises(DirectoryError):
            self.session.authenticate('uid=jdoe,dc=example,dc=com', '')
        mock_connection.assert_not_called()


class TestRaiseForResult(unittest.TestCase):
    """Test cases for result code conversion."""

    def test_success_passes(self):
        connection = Mock(result={'result': 0, 'description': 'success'})
        raise_for_result(connection, 'Search')

    def test_allowed_codes(self):
        connection = Mock(result={'result': 4, 'description': 'sizeLimitExceeded'})
        raise_for_result(connection, 'Search', allowed=(0, 4))

    def test_failure_raises(self):
        connection = Mock(result={'result': 50, 'description': 'insufficientAccessRights',
                                  'message': 'no write access'})
        with self.assertRaises(DirectoryError) as context:
            raise_for_result(connection, 'Update')
        self.assertIn('insufficientAccessRights', str(context.exception))
        self.assertIn('no write access', str(context.exception))


if __name__ == '__main__':
    unittest.main()
