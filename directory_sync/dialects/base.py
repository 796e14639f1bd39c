"""
Base dialect interface and the shared attribute diff.

A dialect turns identity records into ldap3 add attributes and modify
changes for one family of directory servers. All dialects share the same
diff algorithm and only differ in how attributes and passwords are encoded.
"""

import logging
from abc import ABC, abstractmethod
from collections import Counter
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Tuple

from ldap3 import MODIFY_ADD, MODIFY_DELETE, MODIFY_REPLACE

from directory_sync.identity import (
    LAST_MODIFIED_ATTRIBUTE, IdentityRecord, format_generalized_time, normalize_name,
)

logger = logging.getLogger(__name__)

# ldap3 modify payload: {attribute: [(operation, [values])]}
ModifyChanges = Dict[str, List[Tuple[str, List[Any]]]]

# Maintained by the server, never diffed (normalized names)
OPERATIONAL_ATTRIBUTES = frozenset([
    LAST_MODIFIED_ATTRIBUTE, 'createtimestamp', 'creatorsname', 'modifiersname',
    'entrydn', 'entryuuid', 'entrycsn', 'structuralobjectclass', 'subschemasubentry',
    'hassubordinates',
])


class ChangeType(Enum):
    """Modification kinds, valued with the ldap3 modify operations."""
    ADD = MODIFY_ADD
    REPLACE = MODIFY_REPLACE
    REMOVE = MODIFY_DELETE


class Change(NamedTuple):
    type: ChangeType
    values: List[Any]


def _comparable(value: Any) -> Any:
    if isinstance(value, IdentityRecord):
        value = value.id
    if isinstance(value, datetime):
        return format_generalized_time(value)
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, int):
        return str(value)
    if isinstance(value, bytearray):
        return bytes(value)
    if isinstance(value, str):
        return value.lower()
    return value


def as_list(values: Any) -> List[Any]:
    if values is None:
        return []
    if isinstance(values, (list, tuple, set)):
        return list(values)
    return [values]


def values_equal(live: Any, desired: Any) -> bool:
    """
    Compare two attribute value lists.

    Order is ignored and strings compare case-insensitively, whether the
    attribute holds one value or several.
    """
    live_values = as_list(live)
    desired_values = as_list(desired)
    if len(live_values) != len(desired_values):
        return False
    return Counter(_comparable(v) for v in live_values) == Counter(_comparable(v) for v in desired_values)


def desired_state(record: IdentityRecord) -> Dict[str, List[Any]]:
    """Attributes a record asks for, without server-maintained attributes."""
    return {name: values for name, values in record.attributes.items()
            if name not in OPERATIONAL_ATTRIBUTES}


def diff_attributes(live: Dict[str, Any], desired: Dict[str, List[Any]]) -> Dict[str, Change]:
    """
    Compute the modifications turning live attributes into the desired ones.

    Live attributes also present in the desired state are replaced when their
    values differ, live attributes missing from it are removed and desired
    attributes with no live counterpart are added.

    Args:
        live: Attributes currently stored on the entry
        desired: Attributes the entry should have (normalized names)

    Returns:
        Mapping of attribute name to Change, empty when nothing differs
    """
    pending = {normalize_name(name): values for name, values in desired.items()}
    changes: Dict[str, Change] = {}
    for name, live_values in live.items():
        key = normalize_name(name)
        if key in OPERATIONAL_ATTRIBUTES:
            continue
        if key in pending:
            wanted = pending.pop(key)
            if not values_equal(live_values, wanted):
                changes[key] = Change(ChangeType.REPLACE, as_list(wanted))
        else:
            changes[key] = Change(ChangeType.REMOVE, [])
    for key, wanted in pending.items():
        changes[key] = Change(ChangeType.ADD, as_list(wanted))
    return changes


def wire_values(values: Iterable[Any]) -> List[Any]:
    """Values as sent to the server: record references become DNs, timestamps GeneralizedTime."""
    rendered = []
    for value in values:
        if isinstance(value, IdentityRecord):
            value = value.id
        elif isinstance(value, datetime):
            value = format_generalized_time(value)
        rendered.append(value)
    return rendered


def to_modify_changes(changes: Dict[str, Change]) -> ModifyChanges:
    """Render changes as the payload expected by ldap3 Connection.modify()."""
    return {name: [(change.type.value, wire_values(change.values))] for name, change in changes.items()}


class DirectoryDialect(ABC):
    """
    Abstract base class for directory dialects.

    Subclasses implement encode_add() and may narrow the update through
    is_syncable() and transform_values().
    """

    name = 'base'
    password_attributes: frozenset = frozenset()

    def is_syncable(self, attribute: str) -> bool:
        return True

    def is_password_attribute(self, attribute: str) -> bool:
        return normalize_name(attribute) in self.password_attributes

    def transform_values(self, attribute: str, values: Iterable[Any]) -> List[Any]:
        return list(values)

    @abstractmethod
    def encode_add(self, record: IdentityRecord) -> Tuple[Dict[str, List[Any]], Optional[ModifyChanges]]:
        """
        Encode a record for an add operation.

        Args:
            record: Record to create

        Returns:
            Tuple of (attributes for ldap3 add, password modify to issue after the add or None)
        """

    @abstractmethod
    def encode_password(self, password: str, expire: bool = False) -> ModifyChanges:
        """
        Encode a password change.

        Args:
            password: Clear-text password
            expire: Ask the directory to force a change at next logon, where supported

        Returns:
            ldap3 modify payload setting the password

        Raises:
            PasswordEncodingError: If the dialect cannot encode the password
        """

    def encode_update(self, live: Dict[str, Any],
                      record: IdentityRecord) -> Tuple[Dict[str, Change], Optional[ModifyChanges]]:
        """
        Encode the update of an entry towards a record's state.

        Args:
            live: Attributes currently stored on the entry
            record: Desired state

        Returns:
            Tuple of (changes for one modify request, separate password modify or None)
        """
        changes = diff_attributes(live, desired_state(record))
        return changes, None

    def __repr__(self):
        return f"{type(self).__name__}()"
