"""
Microsoft Active Directory dialect.

Active Directory only accepts writes to a known set of user attributes,
rejects empty strings and takes passwords through unicodePwd as a
quote-wrapped UTF-16LE value, set in a modify of its own.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ldap3 import MODIFY_REPLACE

from directory_sync.dialects.base import (
    Change, DirectoryDialect, ModifyChanges, as_list, desired_state, diff_attributes, wire_values,
)
from directory_sync.errors import PasswordEncodingError
from directory_sync.identity import IdentityRecord, normalize_name

logger = logging.getLogger(__name__)

# userAccountControl flags
UF_ACCOUNTDISABLE = 0x2
UF_PASSWD_NOTREQD = 0x20
UF_PASSWD_CANT_CHANGE = 0x40
UF_NORMAL_ACCOUNT = 0x200
UF_DONT_EXPIRE_PASSWD = 0x10000
UF_PASSWORD_EXPIRED = 0x800000

DEFAULT_USER_ACCOUNT_CONTROL = UF_NORMAL_ACCOUNT | UF_PASSWD_NOTREQD | UF_DONT_EXPIRE_PASSWD

# groupType flags
GROUP_TYPE_GLOBAL_GROUP = 0x2
GROUP_TYPE_SECURITY_ENABLED = 0x80000000


def to_signed_32(value: int) -> int:
    """Interpret an unsigned 32-bit value the way the directory stores it."""
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


DEFAULT_GROUP_TYPE = to_signed_32(GROUP_TYPE_SECURITY_ENABLED | GROUP_TYPE_GLOBAL_GROUP)

SYNCABLE_ATTRIBUTES = frozenset([
    'givenname', 'sn', 'samaccountname', 'description', 'title', 'postalcode',
    'street', 'streetaddress', 'mail', 'l', 'st', 'c', 'physicaldeliveryofficename',
    'telephonenumber', 'facsimiletelephonenumber', 'otherfacsimiletelephonenumber',
    'mobile', 'pager', 'otherpager', 'iphone', 'otheriphone', 'company', 'department',
    'homedirectory', 'homedrive', 'profilepath', 'scriptpath', 'homephone', 'comment',
    'manager', 'employeeid', 'employeetype', 'useraccountcontrol',
    'homemdb', 'homemta', 'legacyexchangedn', 'mailnickname', 'mdbusedefaults',
    'msexchhomeservername', 'msexchversion', 'msexchmailboxguid',
    'msexchrecipientdisplaytype', 'msexchrecipienttypedetails',
    'msexchhidefromaddresslists', 'msexchpoliciesincluded', 'msexchpoliciesexcluded',
    'proxyaddresses', 'pwdlastset', 'lockouttime', 'homepostaladdress',
] + [f'extensionattribute{i}' for i in range(1, 25)])

# Attributes limited to their first value
SINGLE_VALUE_ATTRIBUTES = frozenset(['telephonenumber'])

PASSWORD_ATTRIBUTE = 'unicodePwd'
PASSWORD_LAST_SET_ATTRIBUTE = 'pwdlastset'
EMPTY_VALUE = ' '


def encode_password_value(password: str) -> bytes:
    """
    Encode a clear-text password for unicodePwd.

    Raises:
        PasswordEncodingError: If the password cannot be encoded
    """
    if isinstance(password, bytes):
        try:
            password = password.decode('utf-8')
        except UnicodeDecodeError as e:
            raise PasswordEncodingError(f"cannot set user password - {e}") from e
    if not isinstance(password, str):
        raise PasswordEncodingError(f"cannot set user password - unsupported type {type(password).__name__}")
    try:
        return f'"{password}"'.encode('utf-16-le')
    except UnicodeEncodeError as e:
        raise PasswordEncodingError(f"cannot set user password - {e}") from e


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value in ('', 'null'))


class ActiveDirectoryDialect(DirectoryDialect):
    """Active Directory encoding rules."""

    name = 'active_directory'
    password_attributes = frozenset(['unicodepwd', 'userpassword'])

    def is_syncable(self, attribute: str) -> bool:
        return normalize_name(attribute) in SYNCABLE_ATTRIBUTES

    def transform_values(self, attribute: str, values: Iterable[Any]) -> List[Any]:
        values = [EMPTY_VALUE if _is_empty(v) else v for v in values]
        if normalize_name(attribute) in SINGLE_VALUE_ATTRIBUTES:
            return values[:1]
        return values

    def encode_password(self, password: str, expire: bool = False) -> ModifyChanges:
        changes: ModifyChanges = {PASSWORD_ATTRIBUTE: [(MODIFY_REPLACE, [encode_password_value(password)])]}
        if expire:
            changes['pwdLastSet'] = [(MODIFY_REPLACE, ['0'])]
        return changes

    def _password_of(self, attributes: Dict[str, List[Any]]) -> Optional[Any]:
        for name in ('unicodepwd', 'userpassword'):
            values = as_list(attributes.get(name))
            if values and not _is_empty(values[0]):
                return values[0]
        return None

    def encode_add(self, record: IdentityRecord) -> Tuple[Dict[str, List[Any]], Optional[ModifyChanges]]:
        source = desired_state(record)
        password = self._password_of(source)
        last_set = as_list(source.get(PASSWORD_LAST_SET_ATTRIBUTE))
        expire = bool(last_set) and str(last_set[0]) == '0'

        attributes: Dict[str, List[Any]] = {}
        for name, values in source.items():
            if name in self.password_attributes:
                continue
            # folded into the password modify
            if name == PASSWORD_LAST_SET_ATTRIBUTE and password is not None and expire:
                continue
            kept = [v for v in as_list(values) if not (v is None or v == '')]
            if kept:
                attributes[name] = wire_values(kept)

        object_classes = [str(v).lower() for v in attributes.get('objectclass', [])]
        if 'user' in object_classes and 'useraccountcontrol' not in attributes:
            attributes['useraccountcontrol'] = [str(DEFAULT_USER_ACCOUNT_CONTROL)]
        elif 'group' in object_classes and 'grouptype' not in attributes:
            attributes['grouptype'] = [str(DEFAULT_GROUP_TYPE)]

        if password is None:
            return attributes, None
        return attributes, self.encode_password(password, expire=expire)

    def encode_update(self, live: Dict[str, Any],
                      record: IdentityRecord) -> Tuple[Dict[str, Change], Optional[ModifyChanges]]:
        source = desired_state(record)
        password = self._password_of(source)

        desired = {}
        for name, values in source.items():
            if self.is_syncable(name):
                desired[name] = self.transform_values(name, as_list(values))
        syncable_live = {name: values for name, values in live.items() if self.is_syncable(name)}

        changes = diff_attributes(syncable_live, desired)
        password_changes = self.encode_password(password) if password is not None else None
        return changes, password_changes
