"""
Measure sets: the identity of an allocation node.

A measure set is an ordered, deduplicated, immutable collection of integer
measure ids. Two measure sets with the same members are equal and hash the
same regardless of the order the ids were supplied in.
"""

from typing import Iterable, Iterator, Union


class MeasureSet:
    """
    Immutable sorted set of measure ids.

    Examples
    --------
    >>> ms = MeasureSet([3, 1, 2, 1])
    >>> str(ms)
    '1, 2, 3'
    >>> MeasureSet([1, 2]).issubset(ms)
    True
    """

    __slots__ = ("_measures",)

    def __init__(self, measures: Iterable[int] = ()):
        object.__setattr__(self, "_measures", tuple(sorted({int(m) for m in measures})))

    def __setattr__(self, name, value):
        raise AttributeError("MeasureSet is immutable")

    @classmethod
    def parse(cls, value: Union[str, Iterable[int], "MeasureSet"]) -> "MeasureSet":
        """Build a measure set from its string form ("1, 2, 3") or any iterable of ids."""
        if isinstance(value, MeasureSet):
            return value
        if isinstance(value, str):
            parts = [p.strip() for p in value.split(",")]
            return cls(int(p) for p in parts if p)
        return cls(value)

    @staticmethod
    def set_product(groups: Iterable[Iterable[int]]) -> list["MeasureSet"]:
        """
        Every non-empty measure set taking at most one measure from each group.

        Measures in the same group are alternatives and never combine. With
        one measure per group this is the power set. Results are returned
        smallest first, then in measure order.
        """
        products = [MeasureSet()]
        for group in groups:
            members = sorted({int(m) for m in group})
            products += [p.union(MeasureSet([m])) for p in products for m in members]
        return sorted((p for p in products if len(p)), key=lambda ms: (len(ms), ms.measures))

    @property
    def measures(self) -> tuple[int, ...]:
        return self._measures

    def issubset(self, other: "MeasureSet") -> bool:
        return set(self._measures).issubset(other._measures)

    def union(self, other: "MeasureSet") -> "MeasureSet":
        return MeasureSet(self._measures + other._measures)

    def to_list(self) -> list[int]:
        return list(self._measures)

    def __iter__(self) -> Iterator[int]:
        return iter(self._measures)

    def __len__(self) -> int:
        return len(self._measures)

    def __contains__(self, measure: object) -> bool:
        return measure in self._measures

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MeasureSet):
            return NotImplemented
        return self._measures == other._measures

    def __hash__(self) -> int:
        return hash(("MeasureSet", self._measures))

    def __lt__(self, other: "MeasureSet") -> bool:
        # Element-wise, then the shorter set first
        for mine, theirs in zip(self._measures, other._measures):
            if mine != theirs:
                return mine < theirs
        return len(self._measures) < len(other._measures)

    def __le__(self, other: "MeasureSet") -> bool:
        return self == other or self < other

    def __gt__(self, other: "MeasureSet") -> bool:
        return other < self

    def __ge__(self, other: "MeasureSet") -> bool:
        return self == other or other < self

    def __str__(self) -> str:
        return ", ".join(str(m) for m in self._measures)

    def __repr__(self) -> str:
        return f"MeasureSet([{str(self)}])"
