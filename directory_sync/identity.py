"""
Identity records exchanged with the directory.

An IdentityRecord is a case-insensitive, multi-valued attribute bag keyed by
a distinguished name. Values are strings, byte sequences, timestamps or
references to other records; ValueKind names which one a value is.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

GENERALIZED_TIME_FORMAT = '%Y%m%d%H%M%SZ'
LAST_MODIFIED_ATTRIBUTE = 'modifytimestamp'


class ValueKind(Enum):
    """Kinds of values an attribute can hold."""
    STRING = 'string'
    BYTES = 'bytes'
    TIMESTAMP = 'timestamp'
    RECORD = 'record'


class RecordKind(Enum):
    """What a record stands for on the directory."""
    ENTRY = 'entry'
    USER = 'user'
    GROUP = 'group'


def value_kind(value: Any) -> ValueKind:
    """Return the kind of a stored attribute value."""
    if isinstance(value, IdentityRecord):
        return ValueKind.RECORD
    if isinstance(value, (bytes, bytearray)):
        return ValueKind.BYTES
    if isinstance(value, datetime):
        return ValueKind.TIMESTAMP
    return ValueKind.STRING


def _normalize_value(value: Any) -> Any:
    # Integers and booleans travel as their LDAP string syntax
    if isinstance(value, bool):
        return 'TRUE' if value else 'FALSE'
    if isinstance(value, int):
        return str(value)
    if isinstance(value, bytearray):
        return bytes(value)
    return value


def normalize_name(name: str) -> str:
    """Normalize an attribute name the way records store it."""
    return name.strip().lower()


def format_generalized_time(date: datetime) -> str:
    """Format a datetime as an LDAP GeneralizedTime string in UTC."""
    if date.tzinfo is not None:
        date = date.astimezone(timezone.utc)
    return date.strftime(GENERALIZED_TIME_FORMAT)


def parse_generalized_time(value: str) -> datetime:
    """
    Parse an LDAP GeneralizedTime string.

    Args:
        value: String such as '20240131120000Z' (fractional seconds allowed)

    Returns:
        Timezone-aware datetime in UTC

    Raises:
        ValueError: If the string is not a GeneralizedTime value
    """
    text = value.strip()
    if '.' in text:
        text = text.split('.', 1)[0] + 'Z'
    try:
        parsed = datetime.strptime(text, GENERALIZED_TIME_FORMAT)
    except ValueError:
        raise ValueError(f"Cannot parse the date format, should be (YYYYmmddHHMMSSZ): {value}")
    return parsed.replace(tzinfo=timezone.utc)


class IdentityRecord:
    """
    Directory entry representation.

    Attribute names are normalized (trimmed, lower-case) and every attribute is
    stored as a non-empty list of values, even when it holds a single value.
    Not thread-safe.
    """

    def __init__(self, id: Optional[str] = None, kind: RecordKind = RecordKind.ENTRY):
        self._id = id
        self._frozen = False
        self.kind = kind
        self._attributes: Dict[str, List[Any]] = {}

    @classmethod
    def materialize(cls, id: str, attributes: Optional[Dict[str, Iterable[Any]]] = None,
                    kind: RecordKind = RecordKind.ENTRY) -> 'IdentityRecord':
        """Build a record read from the directory; its identifier can no longer change."""
        record = cls(id, kind=kind)
        for name, values in (attributes or {}).items():
            record.set_attribute(name, values)
        record._frozen = True
        return record

    @property
    def id(self) -> Optional[str]:
        return self._id

    @id.setter
    def id(self, value: str):
        if self._frozen:
            raise AttributeError(f"Identifier of materialized record {self._id} cannot change")
        self._id = value

    def set_attribute(self, name: str, value: Any):
        """
        Set the values of an attribute, replacing what was there.

        Args:
            name: Attribute name (normalized before storing)
            value: A single value, or a list/tuple of values; an empty list
                   removes the attribute
        """
        if name is None or value is None:
            return
        if isinstance(value, (list, tuple, set)):
            values = [_normalize_value(v) for v in value if v is not None]
        else:
            values = [_normalize_value(value)]
        if not values:
            self._attributes.pop(normalize_name(name), None)
            return
        self._attributes[normalize_name(name)] = values

    def get_attribute(self, name: str) -> Optional[List[Any]]:
        if name is None:
            return None
        return self._attributes.get(normalize_name(name))

    def get_first_value(self, name: str, default: Any = None) -> Any:
        values = self.get_attribute(name)
        if not values:
            return default
        return values[0]

    def get_first_string(self, name: str) -> Optional[str]:
        value = self.get_first_value(name)
        if value is None:
            return None
        if isinstance(value, bytes):
            return value.decode('utf-8', errors='replace')
        return str(value)

    def has_attribute(self, name: str) -> bool:
        if name is None:
            return False
        return normalize_name(name) in self._attributes

    def has_attribute_value(self, name: str, value: Any) -> bool:
        """
        Check whether an attribute holds a value.

        Exact membership is tried first; string values then match case-insensitively.
        """
        values = self.get_attribute(name)
        if not values or value is None:
            return False
        value = _normalize_value(value)
        if value in values:
            return True
        if isinstance(value, str):
            folded = value.lower()
            return any(isinstance(v, str) and v.lower() == folded for v in values)
        return False

    def remove_attribute(self, name: str):
        if name is None:
            return
        self._attributes.pop(normalize_name(name), None)

    def attribute_names(self) -> List[str]:
        return list(self._attributes.keys())

    @property
    def attributes(self) -> Dict[str, List[Any]]:
        """Copy of the attribute mapping."""
        return {name: list(values) for name, values in self._attributes.items()}

    @property
    def last_modified(self) -> Optional[datetime]:
        """Last modification time reported by the directory, if it was read."""
        value = self.get_first_value(LAST_MODIFIED_ATTRIBUTE)
        if value is None:
            return None
        if isinstance(value, datetime):
            return value
        if isinstance(value, bytes):
            value = value.decode('ascii', errors='replace')
        try:
            return parse_generalized_time(str(value))
        except ValueError as e:
            logger.debug(f"Ignoring unparsable {LAST_MODIFIED_ATTRIBUTE} on {self._id}: {e}")
            return None

    def __eq__(self, other):
        if not isinstance(other, IdentityRecord):
            return NotImplemented
        return self._id == other._id

    def __hash__(self):
        return hash(self._id)

    def __repr__(self):
        return f"IdentityRecord({self._id!r}, kind={self.kind.value})"

    def __str__(self):
        lines = [f"EntryID: {self._id}"]
        for name in sorted(self._attributes):
            rendered = []
            for value in self._attributes[name]:
                kind = value_kind(value)
                if kind is ValueKind.RECORD:
                    rendered.append(str(value.id))
                elif kind is ValueKind.BYTES:
                    rendered.append(f"<{len(value)} bytes>")
                elif kind is ValueKind.TIMESTAMP:
                    rendered.append(format_generalized_time(value))
                else:
                    rendered.append(str(value))
            lines.append(f"{name}: {','.join(rendered)}")
        return '\n'.join(lines) + '\n'


class AttributeMap:
    """
    Translation between application attribute names and directory attribute names.

    Built once from configuration and handed to the manager that uses it.
    """

    # Application attribute -> Active Directory attribute
    ACTIVE_DIRECTORY_DEFAULTS = {
        'uid': 'sAMAccountName',
        'streetAddress': 'street',
    }

    def __init__(self, mapping: Optional[Dict[str, str]] = None):
        self._mapping: Dict[str, str] = {}
        for attribute, directory_attribute in (mapping or {}).items():
            self.set(attribute, directory_attribute)

    @classmethod
    def for_dialect(cls, dialect: str) -> 'AttributeMap':
        """Default map for a dialect name ('generic' or 'active_directory')."""
        if str(dialect).lower() in ('active_directory', 'activedirectory', 'ad', 'msad'):
            return cls(cls.ACTIVE_DIRECTORY_DEFAULTS)
        return cls()

    def set(self, attribute: str, directory_attribute: str):
        if not attribute or not directory_attribute:
            return
        self._mapping[normalize_name(attribute)] = normalize_name(directory_attribute)

    def get_write_map(self) -> Dict[str, str]:
        return dict(self._mapping)

    def get_read_map(self) -> Dict[str, str]:
        return {v: k for k, v in self._mapping.items()}

    def _rename(self, record: IdentityRecord, names: Dict[str, str]) -> IdentityRecord:
        renamed = IdentityRecord(record.id, kind=record.kind)
        for name, values in record.attributes.items():
            renamed.set_attribute(names.get(name, name), values)
        return renamed

    def to_directory(self, record: IdentityRecord) -> IdentityRecord:
        """Copy of the record using directory attribute names."""
        return self._rename(record, self._mapping)

    def from_directory(self, record: IdentityRecord) -> IdentityRecord:
        """Copy of the record using application attribute names."""
        renamed = self._rename(record, self.get_read_map())
        renamed._frozen = record._frozen
        return renamed

    def __len__(self):
        return len(self._mapping)
