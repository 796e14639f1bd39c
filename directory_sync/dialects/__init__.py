"""
Directory dialects.

Each dialect encodes records for one family of directory servers; writers
select one through the Dialect enum.
"""

from enum import Enum
from typing import Union

from directory_sync.dialects.active_directory import ActiveDirectoryDialect
from directory_sync.dialects.base import Change, ChangeType, DirectoryDialect
from directory_sync.dialects.generic import GenericDialect
from directory_sync.errors import DirectoryError


class Dialect(Enum):
    GENERIC = 'generic'
    ACTIVE_DIRECTORY = 'active_directory'


DIALECT_ALIASES = {
    'generic': Dialect.GENERIC,
    'ldapv3': Dialect.GENERIC,
    'active_directory': Dialect.ACTIVE_DIRECTORY,
    'activedirectory': Dialect.ACTIVE_DIRECTORY,
    'ad': Dialect.ACTIVE_DIRECTORY,
    'msad': Dialect.ACTIVE_DIRECTORY,
}

_DIALECTS = {
    Dialect.GENERIC: GenericDialect,
    Dialect.ACTIVE_DIRECTORY: ActiveDirectoryDialect,
}


def get_dialect(dialect: Union[Dialect, str, DirectoryDialect, None] = None) -> DirectoryDialect:
    """
    Return the dialect strategy for an enum member or name.

    Args:
        dialect: Dialect member, name or instance (GENERIC when omitted)

    Raises:
        DirectoryError: If the name is unknown
    """
    if isinstance(dialect, DirectoryDialect):
        return dialect
    if dialect is None:
        dialect = Dialect.GENERIC
    if isinstance(dialect, str):
        key = dialect.strip().lower().replace('-', '_')
        if key not in DIALECT_ALIASES:
            raise DirectoryError(f"Unknown directory dialect: {dialect}")
        dialect = DIALECT_ALIASES[key]
    if not isinstance(dialect, Dialect):
        raise DirectoryError(f"Unknown directory dialect: {dialect!r}")
    return _DIALECTS[dialect]()


__all__ = [
    'ActiveDirectoryDialect', 'Change', 'ChangeType', 'Dialect', 'DirectoryDialect',
    'GenericDialect', 'get_dialect',
]
