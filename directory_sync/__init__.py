"""
Directory Sync - Synchronize identity records with LDAP and Active Directory servers.

This package provides a client library to read, search, create, update and delete
directory entries without hand-writing search filters or attribute encodings.
"""

from directory_sync.errors import DirectoryError
from directory_sync.identity import IdentityRecord, RecordKind
from directory_sync.query import Query, Condition, ConditionType, Combinator
from directory_sync.session import DirectorySession, ConnectionMode, SearchScope, UNLIMITED
from directory_sync.reader import EntryReader
from directory_sync.writer import EntryWriter
from directory_sync.dialects import Dialect, get_dialect

__version__ = "1.0.0"
__author__ = "Directory Sync Team"
