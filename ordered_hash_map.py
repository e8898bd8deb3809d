"""Ordered mapping used for every collection of the project database.

Keys are unique and looked up through a plain dict, while a separate list
keeps the display order. The order list is always a permutation of the live
keys. Every operation addressing a missing key is a silent no-op, because
callers may race with a concurrent deletion.
"""

from __future__ import annotations

from typing import (
    Any,
    Callable,
    Dict,
    Generic,
    Hashable,
    Iterator,
    List,
    Optional,
    Tuple,
    TypeVar,
)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class OrderedHashMap(Generic[K, V]):
    """A dict with an independently movable iteration order."""

    def __init__(self) -> None:
        self._values: Dict[K, V] = {}
        self._order: List[K] = []

    # ---------- lookup ----------
    def __len__(self) -> int:
        return len(self._order)

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __iter__(self) -> Iterator[K]:
        return iter(self._order)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, OrderedHashMap):
            return NotImplemented
        return self._order == other._order and self._values == other._values

    def __repr__(self) -> str:
        entries = ", ".join(f"{key!r}: {value!r}" for key, value in self.items())
        return f"OrderedHashMap({{{entries}}})"

    def is_empty(self) -> bool:
        return not self._order

    def contains_key(self, key: K) -> bool:
        return key in self._values

    def get(self, key: K) -> Optional[V]:
        return self._values.get(key)

    def get_order(self, key: K) -> Optional[int]:
        """Return the position of ``key`` in the order, or None if absent."""
        for index, other_key in enumerate(self._order):
            if other_key == key:
                return index
        return None

    def get_key_at_order(self, order: int) -> Optional[K]:
        if 0 <= order < len(self._order):
            return self._order[order]
        return None

    def get_at_order(self, order: int) -> Optional[V]:
        key = self.get_key_at_order(order)
        if key is None:
            return None
        return self._values.get(key)

    def keys(self) -> Iterator[K]:
        return iter(self._order)

    def values(self) -> Iterator[V]:
        return (self._values[key] for key in self._order)

    def items(self) -> Iterator[Tuple[K, V]]:
        """Iterate ``(key, value)`` pairs following the order sequence."""
        return ((key, self._values[key]) for key in self._order)

    # ---------- insertion / removal ----------
    def insert(self, key: K, value: V) -> None:
        if key not in self._values:
            self._order.append(key)
        self._values[key] = value

    def insert_at_top(self, key: K, value: V) -> None:
        if key in self._values:
            self._order.remove(key)
        self._order.insert(0, key)
        self._values[key] = value

    def remove(self, key: K) -> Optional[V]:
        if key not in self._values:
            return None
        self._order.remove(key)
        return self._values.pop(key)

    def clear(self) -> None:
        self._order.clear()
        self._values.clear()

    def append(self, other: "OrderedHashMap[K, V]") -> None:
        """Move every entry of ``other`` behind the entries of ``self``.

        ``other`` is left empty. A key present in both maps takes the value
        and the position it had in ``other``.
        """
        for key in other._order:
            if key in self._values:
                self._order.remove(key)
            self._order.append(key)
            self._values[key] = other._values[key]
        other.clear()

    # ---------- reordering ----------
    def move_up(self, key: K) -> None:
        index = self.get_order(key)
        if index is not None and index != 0:
            self._swap(index, index - 1)

    def move_down(self, key: K) -> None:
        index = self.get_order(key)
        if index is not None and index != len(self._order) - 1:
            self._swap(index, index + 1)

    def move_to(self, key: K, order: int) -> None:
        """Move ``key`` to position ``order``; past the end means last.

        A negative ``order`` or a missing key leaves the map unchanged.
        """
        old_order = self.get_order(key)
        if old_order is None or order < 0:
            return
        del self._order[old_order]
        self._order.insert(order, key)

    def move_to_end(self, key: K) -> None:
        order = self.get_order(key)
        if order is None:
            return
        for i in range(order, len(self._order) - 1):
            self._swap(i, i + 1)

    def move_before_other(self, key: K, other_key: K) -> None:
        """Move ``key`` so that ``get_order(key) == get_order(other_key) - 1``.

        Only the elements between the two positions shift by one slot, the
        relative order of everything else is kept.
        """
        order = self.get_order(key)
        other_order = self.get_order(other_key)
        if order is None or other_order is None:
            return
        self.move_before_other_with_order(order, other_order)

    def move_before_other_with_order(self, order: int, other_order: int) -> None:
        if order == other_order - 1:
            return
        if order < other_order:
            for i in range(order, other_order - 1):
                self._swap(i, i + 1)
        else:
            for i in reversed(range(other_order, order)):
                self._swap(i, i + 1)

    def swap_order(self, key_a: K, key_b: K) -> None:
        order_a = self.get_order(key_a)
        order_b = self.get_order(key_b)
        if order_a is not None and order_b is not None:
            self._swap(order_a, order_b)

    def _swap(self, a: int, b: int) -> None:
        self._order[a], self._order[b] = self._order[b], self._order[a]

    # ---------- serialization ----------
    def to_dict(self, encode_value: Callable[[V], Any]) -> Dict[K, Any]:
        """Serialize to a plain dict whose insertion order is the map order."""
        return {key: encode_value(value) for key, value in self.items()}

    @classmethod
    def from_dict(
        cls,
        data: Dict[K, Any],
        decode_value: Callable[[Any], V],
    ) -> "OrderedHashMap[K, V]":
        ordered_hash_map: OrderedHashMap[K, V] = cls()
        for key, value in data.items():
            ordered_hash_map.insert(key, decode_value(value))
        return ordered_hash_map


__all__ = ["OrderedHashMap"]
