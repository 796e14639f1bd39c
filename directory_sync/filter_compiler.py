"""
Compilation of structured queries into LDAP search filters.

Compilation happens in two passes. resolve_branches() runs the one-level
lookups required by BRANCH conditions and returns the search root they
select; compile_filter() is then a pure function of the query.
"""

import logging
import re
from typing import Any, Callable, Iterable, List, Union

from ldap3.utils.conv import escape_bytes, escape_filter_chars

from directory_sync.errors import InvalidQueryError
from directory_sync.query import Combinator, Condition, ConditionType, Query

logger = logging.getLogger(__name__)

# attribute:matchingrule: form of extensible match keys
EXTENSIBLE_KEY_PATTERN = re.compile(r'^[A-Za-z0-9]+:[A-Za-z0-9]+:$')

MATCH_ALL_FILTER = '(objectClass=*)'

NEGATED_TYPES = (ConditionType.NOT_EXACT, ConditionType.NOT_CONTAINS)

OPERATORS = {
    ConditionType.APPROXIMATE: '~=',
    ConditionType.GREATER: '>=',
    ConditionType.LOWER: '<=',
}

# (search_root, filter) -> DNs of the one-level matches
OneLevelSearch = Callable[[str, str], List[str]]


def escape_value(value: Any, keep_wildcards: bool = True) -> str:
    """
    Escape a value for use inside a filter.

    Args:
        value: Value to escape (converted with str())
        keep_wildcards: Leave '*' unescaped so it keeps its substring meaning

    Returns:
        Escaped value
    """
    escaped = escape_filter_chars(str(value))
    if keep_wildcards:
        escaped = escaped.replace('\\2a', '*')
    return escaped


def validate_key(key: str) -> str:
    """Reject attribute keys that could inject filter syntax."""
    key = str(key).strip()
    if not key:
        raise InvalidQueryError("Empty attribute name in query condition")
    if ':' in key:
        if not EXTENSIBLE_KEY_PATTERN.match(key):
            raise InvalidQueryError(f"Invalid query condition: {key}")
    elif any(c in key for c in '()=*\\!&|~<>'):
        raise InvalidQueryError(f"Invalid query condition: {key}")
    return key


def compile_condition(condition: Condition) -> str:
    """Render a single non-BRANCH condition."""
    if condition.is_branch:
        raise InvalidQueryError(f"BRANCH condition on {condition.key} has no filter rendering")

    key = validate_key(condition.key)
    value = escape_value(condition.value)
    condition_type = condition.type

    if condition_type is ConditionType.STARTS_WITH:
        if not value.endswith('*'):
            value = value + '*'
    elif condition_type is ConditionType.ENDS_WITH:
        if not value.startswith('*'):
            value = '*' + value
    elif condition_type in (ConditionType.CONTAINS, ConditionType.NOT_CONTAINS):
        if not value.startswith('*'):
            value = '*' + value
        if not value.endswith('*'):
            value = value + '*'

    leaf = f"({key}{OPERATORS.get(condition_type, '=')}{value})"
    if condition_type in NEGATED_TYPES:
        return f"(!{leaf})"
    return leaf


def _wrap(query: Query, body: str) -> str:
    if query.total_conditions() > 1:
        operator = '|' if query.combinator is Combinator.OR else '&'
        return f"({operator}{body})"
    return body


def _compile_nested(query: Query) -> str:
    parts = []
    for item in query.conditions:
        if isinstance(item, Query):
            parts.append(_compile_nested(item))
        elif item.is_branch:
            raise InvalidQueryError(
                f"BRANCH condition on {item.key} is only valid at the top level of a query")
        else:
            parts.append(compile_condition(item))
    return _wrap(query, ''.join(parts))


def compile_filter(query: Query) -> str:
    """
    Compile a query into a search filter string.

    Top-level BRANCH conditions are skipped: they only move the search root
    (see resolve_branches). A query with nothing left to render matches all
    entries.
    """
    parts = []
    for item in query.conditions:
        if isinstance(item, Query):
            parts.append(_compile_nested(item))
        elif not item.is_branch:
            parts.append(compile_condition(item))
    body = ''.join(parts)
    if not body:
        return MATCH_ALL_FILTER
    filter_string = _wrap(query, body)
    logger.debug(f"Compiled query filter: {filter_string}")
    return filter_string


def split_rdn(dn: str) -> str:
    """Return the first relative distinguished name of a DN."""
    escaped = False
    for index, char in enumerate(dn):
        if escaped:
            escaped = False
        elif char == '\\':
            escaped = True
        elif char == ',':
            return dn[:index].strip()
    return dn.strip()


def relative_name(dn: str, root: str) -> str:
    """Name of an entry relative to a search root."""
    suffix = ',' + root
    if root and len(dn) > len(suffix) and dn.lower().endswith(suffix.lower()):
        return dn[:-len(suffix)]
    return split_rdn(dn)


def has_branches(query: Query) -> bool:
    return any(isinstance(item, Condition) and item.is_branch for item in query.conditions)


def resolve_branches(query: Query, base_dn: str, search_one_level: OneLevelSearch) -> str:
    """
    Resolve BRANCH conditions into a new search root.

    Each top-level BRANCH condition triggers a one-level search for
    (attr=value) under the current root; every match's relative name is
    prepended to the root.

    Args:
        query: Query to resolve
        base_dn: Root the search starts from
        search_one_level: Callable running a one-level search and returning matching DNs

    Returns:
        The search root selected by the BRANCH conditions
    """
    root = base_dn
    for item in query.conditions:
        if not isinstance(item, Condition) or not item.is_branch:
            continue
        search_root = root
        branch_filter = compile_condition(Condition(ConditionType.EXACT, item.key, item.value))
        for dn in search_one_level(search_root, branch_filter):
            name = relative_name(dn, search_root)
            root = f"{name},{root}" if root else name
        logger.debug(f"Branch {branch_filter} moved search root to {root}")
    return root


def build_value_filter(attribute: str, value: Union[Any, Iterable[Any]]) -> str:
    """
    Build a filter matching an attribute against one or several exact values.

    A list of values produces an OR of equality tests. Wildcards are escaped.
    """
    attribute = validate_key(attribute)
    if isinstance(value, (list, tuple, set)):
        values = list(value)
    else:
        values = [value]
    if not values:
        raise InvalidQueryError(f"No values to check for attribute {attribute}")
    parts = []
    for item in values:
        if isinstance(item, (bytes, bytearray)):
            rendered = escape_bytes(bytes(item))
        else:
            rendered = escape_value(item, keep_wildcards=False)
        parts.append(f"({attribute}={rendered})")
    if len(parts) == 1:
        return parts[0]
    return '(|' + ''.join(parts) + ')'
