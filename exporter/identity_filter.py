"""
identity_filter.py - Allow-list gate for tracked identities.

An empty filter places no restriction. A non-empty filter admits exact
members only. Widening the filter never backfills epochs that were already
scraped; newly included identities appear from the next epoch transition.
"""

from typing import FrozenSet, Iterable, List, TypeVar

T = TypeVar("T")


class IdentityFilter:
    """Immutable set of included identities."""

    __slots__ = ("_members",)

    def __init__(self, identities: Iterable[str] = ()):
        self._members: FrozenSet[str] = frozenset(i.strip() for i in identities if i.strip())

    @property
    def members(self) -> FrozenSet[str]:
        return self._members

    @property
    def is_restricted(self) -> bool:
        return bool(self._members)

    def is_included(self, identity: str) -> bool:
        return not self._members or identity in self._members

    def select(self, items: Iterable[T], key) -> List[T]:
        """Keep the items whose key(item) identity is included."""
        return [item for item in items if self.is_included(key(item))]

    def __len__(self) -> int:
        return len(self._members)

    def __eq__(self, other) -> bool:
        return isinstance(other, IdentityFilter) and other._members == self._members

    def __hash__(self) -> int:
        return hash(self._members)

    def __repr__(self) -> str:
        if not self._members:
            return "IdentityFilter(<all>)"
        return f"IdentityFilter({len(self._members)} identities)"
