#!/usr/bin/env python3
"""
Unit tests for directory dialects and the shared attribute diff.
"""

import os
import sys
import unittest

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap3 import MODIFY_ADD, MODIFY_DELETE, MODIFY_REPLACE

from directory_sync.dialects import (
    ActiveDirectoryDialect, ChangeType, Dialect, GenericDialect, get_dialect,
)
from directory_sync.dialects.active_directory import (
    DEFAULT_GROUP_TYPE, DEFAULT_USER_ACCOUNT_CONTROL, encode_password_value,
)
from directory_sync.dialects.base import diff_attributes, to_modify_changes, values_equal
from directory_sync.errors import DirectoryError, PasswordEncodingError
from directory_sync.identity import IdentityRecord


def make_record(dn, **attributes):
    record = IdentityRecord(dn)
    for name, value in attributes.items():
        record.set_attribute(name, value)
    return record


class TestGetDialect(unittest.TestCase):
    """Test cases for dialect selection."""

    def test_by_enum(self):
        self.assertIsInstance(get_dialect(Dialect.GENERIC), GenericDialect)
        self.assertIsInstance(get_dialect(Dialect.ACTIVE_DIRECTORY), ActiveDirectoryDialect)

    def test_by_name(self):
        self.assertIsInstance(get_dialect('msad'), ActiveDirectoryDialect)
        self.assertIsInstance(get_dialect('Active-Directory'), ActiveDirectoryDialect)
        self.assertIsInstance(get_dialect(None), GenericDialect)

    def test_instance_passes_through(self):
        dialect = GenericDialect()
        self.assertIs(get_dialect(dialect), dialect)

    def test_unknown_name(self):
        with self.assertRaises(DirectoryError):
            get_dialect('novell')


class TestAttributeDiff(unittest.TestCase):
    """Test cases for the shared diff."""

    def test_equal_value_yields_no_change(self):
        self.assertEqual(diff_attributes({'mail': ['a@x.com']}, {'mail': ['a@x.com']}), {})

    def test_different_value_yields_one_replace(self):
        changes = diff_attributes({'mail': ['a@x.com']}, {'mail': ['b@x.com']})

        self.assertEqual(list(changes), ['mail'])
        self.assertIs(changes['mail'].type, ChangeType.REPLACE)
        self.assertEqual(changes['mail'].values, ['b@x.com'])

    def test_missing_live_attribute_is_added(self):
        changes = diff_attributes({}, {'title': ['Engineer']})
        self.assertIs(changes['title'].type, ChangeType.ADD)

    def test_undesired_live_attribute_is_removed(self):
        changes = diff_attributes({'description': ['old']}, {})
        self.assertIs(changes['description'].type, ChangeType.REMOVE)
        self.assertEqual(changes['description'].values, [])

    def test_live_names_are_normalized(self):
        self.assertEqual(diff_attributes({'Mail': ['a@x.com']}, {'mail': ['a@x.com']}), {})

    def test_comparison_ignores_case_and_order(self):
        self.assertTrue(values_equal(['A@X.com'], ['a@x.com']))
        self.assertTrue(values_equal(['x', 'Y'], ['y', 'X']))
        self.assertFalse(values_equal(['x'], ['x', 'y']))
        self.assertTrue(values_equal(['1000'], [1000]))
        self.assertTrue(values_equal([b'\x01'], [b'\x01']))

    def test_modify_payload(self):
        changes = diff_attributes({'mail': ['a'], 'title': ['t']}, {'mail': ['b'], 'cn': ['c']})
        payload = to_modify_changes(changes)

        self.assertEqual(payload, {
            'mail': [(MODIFY_REPLACE, ['b'])],
            'title': [(MODIFY_DELETE, [])],
            'cn': [(MODIFY_ADD, ['c'])],
        })

    def test_record_references_become_dns(self):
        manager = IdentityRecord('cn=boss,dc=example,dc=com')
        changes = diff_attributes({}, {'manager': [manager]})

        self.assertEqual(to_modify_changes(changes)['manager'], [(MODIFY_ADD, ['cn=boss,dc=example,dc=com'])])


class TestGenericDialect(unittest.TestCase):
    """Test cases for the generic dialect."""

    def setUp(self):
        self.dialect = GenericDialect()

    def test_encode_add_copies_attributes(self):
        record = make_record('cn=john,dc=example,dc=com', objectClass=['top', 'person'], cn='john',
                             userPassword='secret', modifyTimestamp='20240101000000Z')

        attributes, password = self.dialect.encode_add(record)

        self.assertEqual(attributes, {
            'objectclass': ['top', 'person'],
            'cn': ['john'],
            'userpassword': ['secret'],
        })
        self.assertIsNone(password)

    def test_update_ignores_modify_timestamp(self):
        record = IdentityRecord.materialize('cn=john', {'cn': 'john', 'modifyTimestamp': '20240101000000Z'})

        changes, password = self.dialect.encode_update({'cn': ['john']}, record)

        self.assertEqual(changes, {})
        self.assertIsNone(password)

    def test_encode_password(self):
        changes = get_dialect('generic').encode_password('Secret1')

        self.assertEqual(changes, {'userPassword': [(MODIFY_REPLACE, [b'Secret1'])]})
        self.assertTrue(self.dialect.is_password_attribute('userPassword'))

    def test_encode_password_errors_are_directory_errors(self):
        with self.assertRaises(PasswordEncodingError):
            self.dialect.encode_password('')
        with self.assertRaises(DirectoryError):
            self.dialect.encode_password(12345)

    def test_update_ignores_live_operational_attributes(self):
        record = make_record('cn=john', cn='john')
        live = {'cn': ['john'], 'entryDN': ['cn=john'], 'createTimestamp': ['20240101000000Z']}

        changes, _ = self.dialect.encode_update(live, record)

        self.assertEqual(changes, {})

    def test_update_is_idempotent(self):
        record = make_record('cn=john', cn='john', mail='a@x.com', memberOf=['g1', 'g2'])
        changes, _ = self.dialect.encode_update({'cn': ['john']}, record)
        self.assertEqual(set(changes), {'mail', 'memberof'})

        live = {'cn': ['john'], 'mail': ['a@x.com'], 'memberOf': ['g2', 'g1']}
        changes, _ = self.dialect.encode_update(live, record)
        self.assertEqual(changes, {})


class TestActiveDirectoryDialect(unittest.TestCase):
    """Test cases for the Active Directory dialect."""

    def setUp(self):
        self.dialect = ActiveDirectoryDialect()

    def test_password_encoding(self):
        self.assertEqual(encode_password_value('Secret1'), '"Secret1"'.encode('utf-16-le'))
        self.assertEqual(encode_password_value('Secret1')[:4], b'"\x00S\x00')

    def test_password_encoding_rejects_unencodable(self):
        with self.assertRaises(PasswordEncodingError):
            encode_password_value('bad\ud800')
        with self.assertRaises(PasswordEncodingError):
            encode_password_value(12345)

    def test_encode_add_user(self):
        record = make_record('cn=john,ou=people,dc=example,dc=com', objectClass=['top', 'user'],
                             sAMAccountName='jdoe', description='', unicodePwd='Secret1')

        attributes, password = self.dialect.encode_add(record)

        self.assertNotIn('unicodepwd', attributes)
        self.assertNotIn('description', attributes)
        self.assertEqual(attributes['useraccountcontrol'], [str(DEFAULT_USER_ACCOUNT_CONTROL)])
        self.assertEqual(attributes['useraccountcontrol'], ['66080'])
        self.assertEqual(password, {'unicodePwd': [(MODIFY_REPLACE, ['"Secret1"'.encode('utf-16-le')])]})

    def test_encode_add_keeps_supplied_account_control(self):
        record = make_record('cn=john', objectClass='user', userAccountControl='514')
        attributes, password = self.dialect.encode_add(record)

        self.assertEqual(attributes['useraccountcontrol'], ['514'])
        self.assertIsNone(password)

    def test_encode_add_group(self):
        record = make_record('cn=staff,ou=groups,dc=example,dc=com', objectClass=['top', 'group'])
        attributes, _ = self.dialect.encode_add(record)

        self.assertEqual(attributes['grouptype'], [str(DEFAULT_GROUP_TYPE)])
        self.assertEqual(DEFAULT_GROUP_TYPE, -2147483646)

    def test_encode_add_user_password_fallback_and_expiry(self):
        record = make_record('cn=john', objectClass='user', userPassword='Secret1', pwdLastSet='0')
        attributes, password = self.dialect.encode_add(record)

        self.assertNotIn('userpassword', attributes)
        self.assertNotIn('pwdlastset', attributes)
        self.assertEqual(password['pwdLastSet'], [(MODIFY_REPLACE, ['0'])])
        self.assertIn('unicodePwd', password)

    def test_encode_add_keeps_password_last_set_without_password(self):
        record = make_record('cn=john', objectClass='user', pwdLastSet='-1')
        attributes, password = self.dialect.encode_add(record)

        self.assertEqual(attributes['pwdlastset'], ['-1'])
        self.assertIsNone(password)

    def test_encode_add_keeps_password_last_set_not_folded(self):
        record = make_record('cn=john', objectClass='user', unicodePwd='Secret1', pwdLastSet='-1')
        attributes, password = self.dialect.encode_add(record)

        self.assertEqual(attributes['pwdlastset'], ['-1'])
        self.assertNotIn('pwdLastSet', password)

    def test_update_restricted_to_syncable_attributes(self):
        record = make_record('cn=john', objectClass='user', mail='b@x.com', cn='john')
        live = {'objectClass': ['top', 'user'], 'mail': ['a@x.com'], 'whenCreated': ['20240101000000.0Z'],
                'title': ['Engineer']}

        changes, password = self.dialect.encode_update(live, record)

        self.assertEqual(set(changes), {'mail', 'title'})
        self.assertIs(changes['mail'].type, ChangeType.REPLACE)
        self.assertIs(changes['title'].type, ChangeType.REMOVE)
        self.assertIsNone(password)

    def test_update_telephone_number_first_value_only(self):
        record = make_record('cn=john', telephoneNumber=['111', '222'])
        changes, _ = self.dialect.encode_update({}, record)

        self.assertEqual(changes['telephonenumber'].values, ['111'])

        changes, _ = self.dialect.encode_update({'telephoneNumber': ['111']}, record)
        self.assertEqual(changes, {})

    def test_update_empty_value_becomes_space(self):
        record = make_record('cn=john', description='')
        changes, _ = self.dialect.encode_update({'description': ['old']}, record)

        self.assertEqual(changes['description'].values, [' '])

    def test_update_password_separate(self):
        record = make_record('cn=john', mail='a@x.com', unicodePwd='Secret1')
        changes, password = self.dialect.encode_update({'mail': ['a@x.com']}, record)

        self.assertEqual(changes, {})
        self.assertEqual(password, {'unicodePwd': [(MODIFY_REPLACE, ['"Secret1"'.encode('utf-16-le')])]})


if __name__ == '__main__':
    unittest.main()
