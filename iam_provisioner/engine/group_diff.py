"""
Set-difference helpers for group membership.

Pure functions with no side effects. Elements only need to be hashable;
ordering of the outputs follows the inputs.
"""

from typing import Hashable, Iterable, List, Sequence, Tuple, TypeVar

T = TypeVar("T", bound=Hashable)


def contains(items: Iterable[T], value: T) -> bool:
    """Return True if ``value`` is one of ``items``."""
    return any(item == value for item in items)


def _unique(items: Iterable[T]) -> List[T]:
    seen = set()
    result = []
    for item in items:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result


def get_difference(desired: Sequence[T], current: Sequence[T]) -> Tuple[List[T], List[T]]:
    """
    Compute what must be added and removed to turn ``current`` into ``desired``.

    Args:
        desired: Elements that should be present
        current: Elements that are present

    Returns:
        ``(wanted, unwanted)`` where ``wanted`` holds the elements of
        ``desired`` missing from ``current`` and ``unwanted`` holds the
        elements of ``current`` absent from ``desired``. Each keeps the
        relative order of its input; duplicates collapse to their first
        occurrence.
    """
    desired_set = set(desired)
    current_set = set(current)

    wanted = [item for item in _unique(desired) if item not in current_set]
    unwanted = [item for item in _unique(current) if item not in desired_set]

    return wanted, unwanted


def group_diff(desired_groups: Sequence[str], current_groups: Sequence[str]) -> Tuple[List[str], List[str]]:
    """Groups to join and groups to leave for an account."""
    return get_difference(list(desired_groups or []), list(current_groups or []))
