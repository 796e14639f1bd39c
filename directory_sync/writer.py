"""
Writing entries to the directory.

EntryWriter creates, synchronizes, renames and removes entries. The encoding
of attributes and passwords comes from a dialect; the diff used to update an
entry is the same for all dialects.
"""

import logging
from typing import Any, Dict, List, Union

from ldap3 import LEVEL, MODIFY_ADD, MODIFY_DELETE, MODIFY_REPLACE, NO_ATTRIBUTES, Connection
from ldap3.core.exceptions import LDAPException

from directory_sync.dialects import Dialect, get_dialect
from directory_sync.dialects.base import (
    Change, DirectoryDialect, ModifyChanges, as_list, to_modify_changes, values_equal, wire_values,
)
from directory_sync.errors import (
    AttributeNotFoundError, DirectoryError, EntryNotFoundError, PasswordEncodingError,
)
from directory_sync.filter_compiler import MATCH_ALL_FILTER, split_rdn
from directory_sync.identity import IdentityRecord, normalize_name
from directory_sync.logging_setup import security_logger
from directory_sync.reader import read_live_attributes, run_search
from directory_sync.session import ConnectionMode, DirectorySession, raise_for_result

logger = logging.getLogger(__name__)


def _validate_dn(dn: str):
    if not dn or not str(dn).strip():
        raise DirectoryError("invalid entry DN")


def _validate_attribute(attribute: str):
    if not attribute or not str(attribute).strip():
        raise DirectoryError("invalid attribute name")


def _find_values(live: Dict[str, List[Any]], attribute: str) -> List[Any]:
    key = normalize_name(attribute)
    for name, values in live.items():
        if normalize_name(name) == key:
            return values
    return []


class EntryWriter:
    """
    Write access to directory entries.

    Every call opens a read-write session and closes it afterwards.
    """

    def __init__(self, session: DirectorySession,
                 dialect: Union[Dialect, str, DirectoryDialect] = Dialect.GENERIC):
        """
        Initialize the writer.

        Args:
            session: Session used for every call
            dialect: Dialect enum member, name or instance
        """
        self.session = session
        self.dialect = get_dialect(dialect)

    def _connect(self) -> Connection:
        return self.session.connect(ConnectionMode.READ_WRITE)

    def _audit(self, operation: str, dn: str, success: bool, details: str = ""):
        security_logger.log_entry_operation(operation, dn, success, details)

    def _modify(self, connection: Connection, dn: str, changes: ModifyChanges, operation: str):
        logger.debug(f"{operation} on {dn}: {sorted(changes)}")
        try:
            connection.modify(dn, changes)
        except LDAPException as e:
            raise DirectoryError(f"{operation} failed: {e}") from e
        raise_for_result(connection, operation)

    def _delete(self, connection: Connection, dn: str):
        try:
            connection.delete(dn)
        except LDAPException as e:
            raise DirectoryError(f"Delete failed: {e}") from e
        raise_for_result(connection, 'Delete')

    def _set_password(self, connection: Connection, dn: str, changes: ModifyChanges):
        """Apply a password modify; the entry is deleted if the server rejects it."""
        try:
            self._modify(connection, dn, changes, 'Password change')
        except DirectoryError as e:
            logger.error(f"Password change rejected for {dn}, removing entry: {e}")
            try:
                self._delete(connection, dn)
                self._audit('delete', dn, True, 'password change rejected')
            except DirectoryError as cleanup_error:
                logger.error(f"Failed to remove {dn} after password failure: {cleanup_error}")
            raise PasswordEncodingError(f"cannot set user password - {e}") from e

    def add_entry(self, record: IdentityRecord):
        """
        Create an entry from a record.

        Raises:
            DirectoryError: If the add is rejected
            PasswordEncodingError: If the password could not be set
        """
        if record is None:
            raise DirectoryError("invalid entry")
        _validate_dn(record.id)
        attributes, password_changes = self.dialect.encode_add(record)

        connection = self._connect()
        try:
            try:
                connection.add(record.id, attributes=attributes)
            except LDAPException as e:
                raise DirectoryError(f"Add failed: {e}") from e
            raise_for_result(connection, 'Add')
            if password_changes:
                self._set_password(connection, record.id, password_changes)
        except DirectoryError as e:
            logger.error(f"Failed to add entry {record.id}: {e}")
            self._audit('add', record.id, False)
            raise
        finally:
            self.session.disconnect()
        self._audit('add', record.id, True)

    def update_entry(self, record: IdentityRecord) -> Dict[str, Change]:
        """
        Bring an entry in line with a record.

        The live attributes are read and only the differences are sent, in a
        single modify request. Passwords are set in a request of their own.

        Args:
            record: Desired state of the entry

        Returns:
            Changes issued, keyed by attribute name (empty when nothing differs)

        Raises:
            EntryNotFoundError: If the entry does not exist
        """
        if record is None:
            raise DirectoryError("invalid entry")
        _validate_dn(record.id)
        dn = record.id

        connection = self._connect()
        try:
            live = read_live_attributes(connection, dn)
            if live is None:
                raise EntryNotFoundError(f"entry [{dn}] not found")
            changes, password_changes = self.dialect.encode_update(live, record)
            if password_changes:
                self._set_password(connection, dn, password_changes)
            if changes:
                self._modify(connection, dn, to_modify_changes(changes), 'Update')
        except DirectoryError as e:
            logger.error(f"Failed to update entry {dn}: {e}")
            self._audit('update', dn, False)
            raise
        finally:
            self.session.disconnect()

        if changes:
            summary = ', '.join(f"{change.type.name} {name}" for name, change in sorted(changes.items()))
            self._audit('update', dn, True, summary)
        else:
            logger.debug(f"Entry {dn} already up to date")
        return changes

    def remove_entry(self, dn: str):
        _validate_dn(dn)
        connection = self._connect()
        try:
            self._delete(connection, dn)
        except DirectoryError:
            self._audit('delete', dn, False)
            raise
        finally:
            self.session.disconnect()
        self._audit('delete', dn, True)

    def _remove_subtree(self, connection: Connection, dn: str) -> int:
        removed = 0
        children = run_search(connection, dn, MATCH_ALL_FILTER, LEVEL, attributes=[NO_ATTRIBUTES])
        for child_dn, _ in children:
            if child_dn.lower() == dn.lower():
                continue
            removed += self._remove_subtree(connection, child_dn)
        self._delete(connection, dn)
        return removed + 1

    def remove_tree(self, dn: str) -> int:
        """
        Remove an entry and everything below it, children first.

        Returns:
            Number of entries removed
        """
        _validate_dn(dn)
        connection = self._connect()
        try:
            removed = self._remove_subtree(connection, dn)
        except DirectoryError:
            self._audit('delete tree', dn, False)
            raise
        finally:
            self.session.disconnect()
        self._audit('delete tree', dn, True, f"{removed} entries")
        return removed

    def rename_entry(self, old_dn: str, new_dn: str):
        """Rename or move an entry."""
        _validate_dn(old_dn)
        _validate_dn(new_dn)
        new_rdn = split_rdn(new_dn)
        new_parent = new_dn[len(new_rdn):].lstrip(' ,')
        old_parent = old_dn[len(split_rdn(old_dn)):].lstrip(' ,')
        new_superior = new_parent if new_parent.lower() != old_parent.lower() else None

        connection = self._connect()
        try:
            try:
                connection.modify_dn(old_dn, new_rdn, new_superior=new_superior)
            except LDAPException as e:
                raise DirectoryError(f"Rename failed: {e}") from e
            raise_for_result(connection, 'Rename')
        except DirectoryError:
            self._audit('rename', old_dn, False)
            raise
        finally:
            self.session.disconnect()
        self._audit('rename', old_dn, True, f"to {new_dn}")

    def _attribute_operation(self, operation: str, dn: str, attribute: str, modify):
        connection = self._connect()
        try:
            changed = modify(connection)
        except DirectoryError:
            self._audit(operation, dn, False, attribute)
            raise
        finally:
            self.session.disconnect()
        if changed:
            self._audit(operation, dn, True, attribute)
        return changed

    def add_entry_attribute(self, dn: str, attribute: str, value: Any) -> bool:
        """
        Add values to an attribute unless they are already there.

        Returns:
            True if a modification was sent
        """
        _validate_dn(dn)
        _validate_attribute(attribute)
        if value is None:
            raise DirectoryError("invalid attribute value")
        values = as_list(value)

        def modify(connection):
            live = read_live_attributes(connection, dn, [attribute])
            if live is None:
                raise EntryNotFoundError(f"entry [{dn}] not found")
            current = _find_values(live, attribute)
            missing = [v for v in values if not any(values_equal(c, v) for c in current)]
            if not missing:
                return False
            if not current:
                change = [(MODIFY_ADD, wire_values(missing))]
            else:
                change = [(MODIFY_REPLACE, wire_values(current + missing))]
            self._modify(connection, dn, {attribute: change}, 'Add attribute')
            return True

        return self._attribute_operation('add attribute', dn, attribute, modify)

    def add_entry_attribute_without_check(self, dn: str, attribute: str, value: Any):
        _validate_dn(dn)
        _validate_attribute(attribute)
        if value is None:
            raise DirectoryError("invalid attribute value")

        def modify(connection):
            self._modify(connection, dn, {attribute: [(MODIFY_ADD, wire_values(as_list(value)))]},
                         'Add attribute')
            return True

        self._attribute_operation('add attribute', dn, attribute, modify)

    def update_entry_attribute(self, dn: str, attribute: str, value: Any):
        """Replace the values of an attribute; an empty list removes it."""
        _validate_dn(dn)
        _validate_attribute(attribute)
        if value is None:
            raise DirectoryError("invalid attribute value")
        values = as_list(value)

        def modify(connection):
            if values:
                change = [(MODIFY_REPLACE, wire_values(values))]
            else:
                change = [(MODIFY_DELETE, [])]
            self._modify(connection, dn, {attribute: change}, 'Update attribute')
            return True

        self._attribute_operation('update attribute', dn, attribute, modify)

    def remove_entry_attribute_value(self, dn: str, attribute: str, value: Any):
        """
        Remove one value from an attribute, keeping the others.

        Raises:
            AttributeNotFoundError: If the entry has no such attribute
        """
        _validate_dn(dn)
        _validate_attribute(attribute)
        if value is None:
            raise DirectoryError("invalid attribute value")

        def modify(connection):
            live = read_live_attributes(connection, dn, [attribute])
            if live is None:
                raise EntryNotFoundError(f"entry [{dn}] not found")
            if not _find_values(live, attribute):
                raise AttributeNotFoundError(f"attribute [{attribute}] not found in entry")
            self._modify(connection, dn, {attribute: [(MODIFY_DELETE, wire_values([value]))]},
                         'Remove attribute value')
            return True

        self._attribute_operation('remove attribute value', dn, attribute, modify)
