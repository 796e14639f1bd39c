"""
Reading entries from the directory.

EntryReader runs point lookups, searches and existence checks. Every public
call opens the session and closes it again on every exit path.
"""

import locale
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ldap3 import ALL_ATTRIBUTES, BASE, LEVEL, NO_ATTRIBUTES, Connection
from ldap3.core.exceptions import LDAPException
from ldap3.core.results import RESULT_NO_SUCH_OBJECT, RESULT_SIZE_LIMIT_EXCEEDED, RESULT_SUCCESS
from pyasn1.codec.ber import encoder
from pyasn1.type import namedtype, tag, univ

from directory_sync.errors import AttributeNotFoundError, DirectoryError, EntryNotFoundError
from directory_sync.filter_compiler import (
    MATCH_ALL_FILTER, build_value_filter, compile_filter, has_branches, resolve_branches,
)
from directory_sync.identity import IdentityRecord, RecordKind, normalize_name
from directory_sync.query import Query
from directory_sync.session import DirectorySession, raise_for_result

logger = logging.getLogger(__name__)

SERVER_SIDE_SORT_OID = '1.2.840.113556.1.4.473'
LAST_MODIFIED_REQUEST = 'modifyTimestamp'
SORT_KEY_MARKER = '0'
CHECK_SEARCH_LIMIT = 2

SEARCH_RESULTS_OK = (RESULT_SUCCESS, RESULT_SIZE_LIMIT_EXCEEDED)
LOOKUP_RESULTS_OK = (RESULT_SUCCESS, RESULT_NO_SUCH_OBJECT)

GROUP_CLASSES = frozenset(['group', 'groupofnames', 'groupofuniquenames', 'posixgroup'])
USER_CLASSES = frozenset(['user', 'person', 'organizationalperson', 'inetorgperson', 'posixaccount'])


class SortKey(univ.Sequence):
    """RFC 2891 SortKey."""
    componentType = namedtype.NamedTypes(
        namedtype.NamedType('attributeType', univ.OctetString()),
        namedtype.OptionalNamedType('orderingRule', univ.OctetString().subtype(
            implicitTag=tag.Tag(tag.tagClassContext, tag.tagFormatSimple, 0))),
        namedtype.DefaultedNamedType('reverseOrder', univ.Boolean(False).subtype(
            implicitTag=tag.Tag(tag.tagClassContext, tag.tagFormatSimple, 1))),
    )


class SortKeyList(univ.SequenceOf):
    componentType = SortKey()


def server_side_sort_control(attribute: str, reverse: bool = False,
                             criticality: bool = False) -> Tuple[str, bool, bytes]:
    """
    Build the server-side sort request control for one attribute.

    Returns:
        (oid, criticality, value) tuple accepted by ldap3 search controls
    """
    key = SortKey()
    key['attributeType'] = attribute
    if reverse:
        key['reverseOrder'] = True
    keys = SortKeyList()
    keys.setComponentByPosition(0, key)
    return SERVER_SIDE_SORT_OID, criticality, encoder.encode(keys)


def record_kind(attributes: Dict[str, Any]) -> RecordKind:
    """Tell users and groups apart by their object classes."""
    classes = set()
    for name, values in attributes.items():
        if normalize_name(name) == 'objectclass':
            classes.update(str(v).lower() for v in _as_values(values))
    if classes & GROUP_CLASSES:
        return RecordKind.GROUP
    if classes & USER_CLASSES:
        return RecordKind.USER
    return RecordKind.ENTRY


def _as_values(values: Any) -> List[Any]:
    if values is None:
        return []
    if isinstance(values, (list, tuple)):
        return list(values)
    return [values]


def run_search(connection: Connection, base: str, search_filter: str, scope: str,
               attributes: Optional[List[str]] = None, size_limit: int = 0,
               controls: Optional[list] = None,
               allowed: Iterable[int] = SEARCH_RESULTS_OK) -> List[Tuple[str, Dict[str, Any]]]:
    """
    Run a search and return (dn, attributes) for each entry.

    Raises:
        DirectoryError: If ldap3 raises or the server returns a non-allowed result
    """
    logger.debug(f"Searching with filter: {search_filter} in base: {base} (scope {scope})")
    try:
        connection.search(base, search_filter, search_scope=scope, attributes=attributes,
                          size_limit=size_limit, controls=controls)
    except LDAPException as e:
        raise DirectoryError(f"Search failed: {e}") from e
    raise_for_result(connection, 'Search', allowed=allowed)
    entries = []
    for item in connection.response or []:
        if item.get('type') != 'searchResEntry':
            continue
        entries.append((item.get('dn') or base, dict(item.get('attributes') or {})))
    return entries


def read_live_attributes(connection: Connection, dn: str,
                         attributes: Optional[List[str]] = None) -> Optional[Dict[str, List[Any]]]:
    """
    Fetch the attributes stored on an entry.

    Returns:
        Mapping of attribute name to values (empty attributes dropped), or
        None when the entry does not exist
    """
    entries = run_search(connection, dn, MATCH_ALL_FILTER, BASE, attributes=attributes or [ALL_ATTRIBUTES],
                         allowed=LOOKUP_RESULTS_OK)
    if not entries:
        return None
    live = {}
    for name, values in entries[0][1].items():
        values = _as_values(values)
        if values:
            live[name] = values
    return live


def disambiguate_sort_keys(records: List[IdentityRecord], attribute: str) -> List[Tuple[str, IdentityRecord]]:
    """
    Pair each record with a unique sort key.

    The key is the first value of the attribute; later records that collide
    with an earlier key get SORT_KEY_MARKER appended until the key is unique.
    Records themselves are not modified.
    """
    seen = set()
    keyed = []
    for record in records:
        key = record.get_first_string(attribute) or ''
        while key in seen:
            key += SORT_KEY_MARKER
        seen.add(key)
        keyed.append((key, record))
    return keyed


class EntryReader:
    """
    Read access to the entries below a base DN.
    """

    def __init__(self, session: DirectorySession, base_dn: str):
        """
        Initialize the reader.

        Args:
            session: Session used for every call
            base_dn: Default root for searches
        """
        self.session = session
        self.base_dn = base_dn

    def _size_limit(self) -> int:
        return self.session.count_limit if self.session.has_count_limit() else 0

    def _materialize(self, dn: str, attributes: Dict[str, Any]) -> IdentityRecord:
        return IdentityRecord.materialize(dn, attributes, kind=record_kind(attributes))

    def _resolve_root(self, connection: Connection, query: Query, base_dn: Optional[str]) -> str:
        root = self.base_dn if base_dn is None else base_dn
        if not has_branches(query):
            return root

        def search_one_level(search_root: str, search_filter: str) -> List[str]:
            return [dn for dn, _ in run_search(connection, search_root, search_filter, LEVEL,
                                               attributes=[NO_ATTRIBUTES])]

        return resolve_branches(query, root, search_one_level)

    def get_entry(self, dn: str, ignore_attributes: Optional[Iterable[str]] = None,
                  attribute_matches: Optional[Dict[str, str]] = None) -> Optional[IdentityRecord]:
        """
        Read an entry.

        Args:
            dn: Entry DN
            ignore_attributes: Attribute names to leave out of the record
            attribute_matches: Per attribute substring; only values containing it are kept

        Returns:
            The entry, or None if it does not exist
        """
        ignored = {normalize_name(name) for name in (ignore_attributes or [])}
        matches = {normalize_name(k): v for k, v in (attribute_matches or {}).items()}
        connection = self.session.connect()
        try:
            live = read_live_attributes(connection, dn, [ALL_ATTRIBUTES, LAST_MODIFIED_REQUEST])
        finally:
            self.session.disconnect()
        if live is None:
            logger.debug(f"Entry not found: {dn}")
            return None

        attributes = {}
        for name, values in live.items():
            key = normalize_name(name)
            if key in ignored:
                continue
            if key in matches:
                needle = matches[key]
                values = [v for v in values if needle is not None and needle in str(v)]
            attributes[name] = values
        return self._materialize(dn, attributes)

    def get_entry_attribute(self, dn: str, attribute: str) -> List[Any]:
        """
        Read the values of one attribute.

        Raises:
            EntryNotFoundError: If the entry does not exist
            AttributeNotFoundError: If the entry has no such attribute
        """
        connection = self.session.connect()
        try:
            live = read_live_attributes(connection, dn, [attribute])
        finally:
            self.session.disconnect()
        if live is None:
            raise EntryNotFoundError(f"entry [{dn}] not found")
        for name, values in live.items():
            if normalize_name(name) == normalize_name(attribute):
                return values
        raise AttributeNotFoundError(f"attribute [{attribute}] not found in entry")

    def search(self, query: Query, base_dn: Optional[str] = None) -> List[IdentityRecord]:
        """
        Search for entries matching a query.

        Args:
            query: Query to run
            base_dn: Search root (the reader's base DN when omitted)

        Returns:
            One record per matching entry, keyed by its full DN
        """
        return self._search_records(query, base_dn)

    def _search_records(self, query: Query, base_dn: Optional[str],
                        controls: Optional[list] = None) -> List[IdentityRecord]:
        connection = self.session.connect()
        try:
            root = self._resolve_root(connection, query, base_dn)
            search_filter = compile_filter(query)
            entries = run_search(connection, root, search_filter, self.session.scope.value,
                                 attributes=[ALL_ATTRIBUTES, LAST_MODIFIED_REQUEST],
                                 size_limit=self._size_limit(), controls=controls)
        finally:
            self.session.disconnect()
        logger.debug(f"Search {search_filter} returned {len(entries)} entries")
        return [self._materialize(dn, attributes) for dn, attributes in entries]

    def search_names(self, query: Query, limit: Optional[int] = None,
                     base_dn: Optional[str] = None) -> List[str]:
        """
        Search for the DNs of entries matching a query.

        Args:
            query: Query to run
            limit: Maximum number of results (the session count limit when omitted)
            base_dn: Search root (the reader's base DN when omitted)
        """
        size_limit = limit if limit and limit > 0 else self._size_limit()
        connection = self.session.connect()
        try:
            root = self._resolve_root(connection, query, base_dn)
            entries = run_search(connection, root, compile_filter(query), self.session.scope.value,
                                 attributes=[NO_ATTRIBUTES], size_limit=size_limit)
        finally:
            self.session.disconnect()
        return [dn for dn, _ in entries]

    def find_names(self, search_filter: str, limit: Optional[int] = None,
                   base_dn: Optional[str] = None) -> List[str]:
        """
        Search for the DNs of entries matching a filter string, used as given.

        Args:
            search_filter: Complete, already escaped search filter
            limit: Maximum number of results (the session count limit when omitted)
            base_dn: Search root (the reader's base DN when omitted)
        """
        size_limit = limit if limit and limit > 0 else self._size_limit()
        root = self.base_dn if base_dn is None else base_dn
        connection = self.session.connect()
        try:
            entries = run_search(connection, root, search_filter, self.session.scope.value,
                                 attributes=[NO_ATTRIBUTES], size_limit=size_limit)
        finally:
            self.session.disconnect()
        return [dn for dn, _ in entries]

    def sorted_search(self, query: Query, attribute: str, base_dn: Optional[str] = None,
                      collation_key: Optional[Callable[[str], Any]] = None) -> List[IdentityRecord]:
        """
        Search for entries ordered by an attribute.

        The server is asked to sort the results; the client then orders them
        by a locale-aware key, so records sharing a value keep their relative
        order.

        Args:
            query: Query to run
            attribute: Attribute to order by
            base_dn: Search root (the reader's base DN when omitted)
            collation_key: Key function for the ordering (locale.strxfrm by default)
        """
        records = self._search_records(query, base_dn, controls=[server_side_sort_control(attribute)])
        collate = collation_key or locale.strxfrm
        keyed = disambiguate_sort_keys(records, attribute)
        keyed.sort(key=lambda pair: collate(pair[0]))
        return [record for _, record in keyed]

    def check_entry(self, dn: str) -> bool:
        connection = self.session.connect()
        try:
            return read_live_attributes(connection, dn, [NO_ATTRIBUTES]) is not None
        finally:
            self.session.disconnect()

    def check_entry_attribute(self, dn: str, attribute: str, value: Any) -> bool:
        """
        Check whether an entry's attribute holds a value (or any of a list of values).
        """
        if value is None:
            raise DirectoryError("invalid attribute value")
        search_filter = build_value_filter(attribute, value)
        connection = self.session.connect()
        try:
            entries = run_search(connection, dn, search_filter, BASE, attributes=[NO_ATTRIBUTES],
                                 allowed=LOOKUP_RESULTS_OK)
        finally:
            self.session.disconnect()
        return len(entries) > 0

    def check_search(self, query: Query, base_dn: Optional[str] = None) -> bool:
        """Check whether a query matches at least one entry."""
        connection = self.session.connect()
        try:
            root = self._resolve_root(connection, query, base_dn)
            entries = run_search(connection, root, compile_filter(query), self.session.scope.value,
                                 attributes=[NO_ATTRIBUTES], size_limit=CHECK_SEARCH_LIMIT)
        finally:
            self.session.disconnect()
        return len(entries) > 0
