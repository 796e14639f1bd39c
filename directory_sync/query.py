"""
Structured directory queries.

A Query is an ordered list of conditions and nested queries joined by a
combinator. The filter compiler turns it into the textual search filter the
directory protocol expects.
"""

from enum import Enum
from typing import Any, NamedTuple, Tuple, Union

from directory_sync.errors import InvalidQueryError


class Combinator(Enum):
    AND = 'and'
    OR = 'or'


class ConditionType(Enum):
    EXACT = 'exact'
    STARTS_WITH = 'starts_with'
    ENDS_WITH = 'ends_with'
    CONTAINS = 'contains'
    NOT_EXACT = 'not_exact'
    NOT_CONTAINS = 'not_contains'
    BRANCH = 'branch'
    APPROXIMATE = 'approximate'
    GREATER = 'greater'
    LOWER = 'lower'


class Condition(NamedTuple):
    type: ConditionType
    key: str
    value: Any

    @property
    def is_branch(self) -> bool:
        return self.type is ConditionType.BRANCH


QueryItem = Union[Condition, 'Query']


class Query:
    """
    Ordered sequence of conditions and sub-queries.

    Items can be consumed once through has_more_conditions()/next_condition()
    (or by iterating the query); the conditions property gives a view that
    does not move the cursor.
    """

    def __init__(self, combinator: Combinator = Combinator.AND):
        if not isinstance(combinator, Combinator):
            raise InvalidQueryError(f"Query combinator must be AND or OR, got {combinator!r}")
        self.combinator = combinator
        self._items = []
        self._offset = 0

    def add_condition(self, key: str, value: Any,
                      condition_type: ConditionType = ConditionType.EXACT) -> 'Query':
        """
        Add a condition on an attribute.

        Args:
            key: Attribute name
            value: Value to match
            condition_type: How the value is matched (EXACT by default)

        Returns:
            The query, so calls can be chained
        """
        if not isinstance(condition_type, ConditionType):
            raise InvalidQueryError(f"Unknown condition type: {condition_type!r}")
        if not key:
            raise InvalidQueryError("Condition attribute name cannot be empty")
        self._items.append(Condition(condition_type, key, value))
        return self

    def add_query(self, query: 'Query') -> 'Query':
        """Add a nested query, compiled with its own combinator."""
        if not isinstance(query, Query):
            raise InvalidQueryError(f"Expected a Query, got {type(query).__name__}")
        self._items.append(query)
        return self

    def has_more_conditions(self) -> bool:
        return self._offset < len(self._items)

    def next_condition(self) -> QueryItem:
        if not self.has_more_conditions():
            raise IndexError("No more conditions in query")
        item = self._items[self._offset]
        self._offset += 1
        return item

    def __iter__(self):
        while self.has_more_conditions():
            yield self.next_condition()

    @property
    def conditions(self) -> Tuple[QueryItem, ...]:
        return tuple(self._items)

    def total_conditions(self) -> int:
        """Number of items, not counting BRANCH conditions."""
        return sum(1 for item in self._items
                   if not (isinstance(item, Condition) and item.is_branch))

    def __len__(self):
        return len(self._items)

    def __repr__(self):
        return f"Query({self.combinator.name}, {list(self._items)!r})"
