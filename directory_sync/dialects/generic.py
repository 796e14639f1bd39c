"""
Standards-based LDAPv3 dialect.
"""

from typing import Any, Dict, List, Optional, Tuple

from ldap3 import MODIFY_REPLACE

from directory_sync.dialects.base import (
    OPERATIONAL_ATTRIBUTES, DirectoryDialect, ModifyChanges, as_list, wire_values,
)
from directory_sync.errors import PasswordEncodingError
from directory_sync.identity import IdentityRecord

PASSWORD_ATTRIBUTE = 'userPassword'


class GenericDialect(DirectoryDialect):
    """Copies attributes one to one; passwords are ordinary attributes."""

    name = 'generic'
    password_attributes = frozenset(['userpassword'])

    def encode_add(self, record: IdentityRecord) -> Tuple[Dict[str, List[Any]], Optional[ModifyChanges]]:
        attributes = {}
        for name, values in record.attributes.items():
            if name in OPERATIONAL_ATTRIBUTES:
                continue
            values = [v for v in as_list(values) if v is not None]
            if values:
                attributes[name] = wire_values(values)
        return attributes, None

    def encode_password(self, password: str, expire: bool = False) -> ModifyChanges:
        """Replace userPassword with the clear-text value; expire has no LDAPv3 equivalent."""
        if isinstance(password, bytes):
            value = password
        elif isinstance(password, str):
            value = password.encode('utf-8')
        else:
            raise PasswordEncodingError(
                f"cannot set user password - unsupported type {type(password).__name__}")
        if not value:
            raise PasswordEncodingError("cannot set user password - empty password")
        return {PASSWORD_ATTRIBUTE: [(MODIFY_REPLACE, [value])]}
