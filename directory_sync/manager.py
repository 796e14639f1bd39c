"""
Identity management facade.

DirectoryIdentityManager wires a session, a reader and a writer from
configuration and translates application attribute names to directory
attribute names on the way in and back on the way out.
"""

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from directory_sync.dialects import get_dialect
from directory_sync.errors import DirectoryError
from directory_sync.filter_compiler import build_value_filter
from directory_sync.identity import AttributeMap, IdentityRecord, normalize_name
from directory_sync.query import Condition, Query
from directory_sync.reader import EntryReader
from directory_sync.session import DirectorySession
from directory_sync.writer import EntryWriter

logger = logging.getLogger(__name__)


class DirectoryIdentityManager:
    """
    Facade over one directory.

    Owns one session, one reader and one writer, a dialect and the attribute
    map used to translate record attribute names.
    """

    def __init__(self, config: Dict[str, Any], session: Optional[DirectorySession] = None):
        """
        Initialize the manager.

        Args:
            config: Loaded configuration (with a 'directory' section) or the
                    'directory' section itself
            session: Session to use instead of one built from configuration
        """
        directory = config.get('directory', config)
        if not directory.get('host') and session is None:
            raise DirectoryError("invalid directory configuration: missing host")
        if not directory.get('base_dn'):
            raise DirectoryError("invalid directory configuration: missing base_dn")

        self.base_dn = directory['base_dn']
        self.dialect = get_dialect(directory.get('dialect'))
        self.user_id_attribute = directory.get('user_id_attribute') or (
            'sAMAccountName' if self.dialect.name == 'active_directory' else 'uid')

        self.attribute_map = AttributeMap.for_dialect(self.dialect.name)
        for attribute, directory_attribute in (directory.get('attribute_map') or {}).items():
            self.attribute_map.set(attribute, directory_attribute)

        self.session = session or DirectorySession.from_config(directory)
        self.reader = EntryReader(self.session, self.base_dn)
        self.writer = EntryWriter(self.session, self.dialect)
        logger.info(f"Directory identity manager ready for {self.session.url} ({self.dialect.name})")

    def _directory_name(self, attribute: str) -> str:
        return self.attribute_map.get_write_map().get(normalize_name(attribute), attribute)

    def _to_directory_query(self, query: Query) -> Query:
        translated = Query(query.combinator)
        for item in query.conditions:
            if isinstance(item, Condition):
                translated.add_condition(self._directory_name(item.key), item.value, item.type)
            else:
                translated.add_query(self._to_directory_query(item))
        return translated

    def _from_directory(self, records: Iterable[IdentityRecord]) -> List[IdentityRecord]:
        return [self.attribute_map.from_directory(record) for record in records]

    def add_identity(self, record: IdentityRecord):
        self.writer.add_entry(self.attribute_map.to_directory(record))

    def update_identity(self, record: IdentityRecord) -> Dict[str, Any]:
        """Synchronize an identity; returns the changes sent to the directory."""
        return self.writer.update_entry(self.attribute_map.to_directory(record))

    def get_identity(self, dn: str, ignore_attributes: Optional[Iterable[str]] = None,
                     attribute_matches: Optional[Dict[str, str]] = None) -> Optional[IdentityRecord]:
        ignored = [self._directory_name(name) for name in (ignore_attributes or [])]
        matches = {self._directory_name(k): v for k, v in (attribute_matches or {}).items()}
        record = self.reader.get_entry(dn, ignored, matches)
        if record is None:
            return None
        return self.attribute_map.from_directory(record)

    def get_identity_attribute(self, dn: str, attribute: str) -> List[Any]:
        return self.reader.get_entry_attribute(dn, self._directory_name(attribute))

    def search_identities(self, query: Query, base_dn: Optional[str] = None) -> List[IdentityRecord]:
        return self._from_directory(self.reader.search(self._to_directory_query(query), base_dn))

    def search_identity_names(self, query: Query, limit: Optional[int] = None) -> List[str]:
        return self.reader.search_names(self._to_directory_query(query), limit)

    def sorted_search(self, query: Query, attribute: str,
                      collation_key: Optional[Callable[[str], Any]] = None) -> List[IdentityRecord]:
        records = self.reader.sorted_search(self._to_directory_query(query),
                                            self._directory_name(attribute),
                                            collation_key=collation_key)
        return self._from_directory(records)

    def remove_identity(self, dn: str):
        self.writer.remove_entry(dn)

    def remove_tree(self, dn: str) -> int:
        return self.writer.remove_tree(dn)

    def rename_identity(self, old_dn: str, new_dn: str):
        self.writer.rename_entry(old_dn, new_dn)

    def add_identity_attribute(self, dn: str, attribute: str, value: Any) -> bool:
        return self.writer.add_entry_attribute(dn, self._directory_name(attribute), value)

    def add_identity_attribute_without_check(self, dn: str, attribute: str, value: Any):
        self.writer.add_entry_attribute_without_check(dn, self._directory_name(attribute), value)

    def update_identity_attribute(self, dn: str, attribute: str, value: Any):
        self.writer.update_entry_attribute(dn, self._directory_name(attribute), value)

    def remove_identity_attribute_value(self, dn: str, attribute: str, value: Any):
        self.writer.remove_entry_attribute_value(dn, self._directory_name(attribute), value)

    def check_identity(self, dn: str) -> bool:
        return self.reader.check_entry(dn)

    def check_identity_attribute(self, dn: str, attribute: str, value: Any) -> bool:
        return self.reader.check_entry_attribute(dn, self._directory_name(attribute), value)

    def check_search(self, query: Query) -> bool:
        return self.reader.check_search(self._to_directory_query(query))

    def authenticate(self, user: str, password: str) -> str:
        """
        Authenticate a user by identifier and password.

        The user's entry is looked up by the configured user id attribute and
        a simple bind is attempted as that entry.

        Returns:
            DN of the authenticated user

        Raises:
            DirectoryError: If the user is unknown or the credentials are rejected
        """
        if not user:
            raise DirectoryError("invalid user")
        if not password:
            raise DirectoryError("Invalid empty password")
        # wildcards in the user name match literally
        names = self.reader.find_names(build_value_filter(self.user_id_attribute, user), limit=1)
        if not names:
            raise DirectoryError("user not found")
        dn = names[0]
        self.session.authenticate(dn, password)
        logger.info(f"User {user} authenticated as {dn}")
        return dn

    def close(self):
        self.session.disconnect()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
