"""Iteration specs: how a fused kernel walks a tensor's flat memory."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Fragment:
    """A contiguous run of one logical dimension in flat memory.

    ``subfragments`` lists the logical pieces merged into this fragment,
    innermost first; their product is the number of elements actually
    iterated (``slice_limit - slice_start``).
    """
    stride: int
    count: int
    slice_start: int = 0
    slice_limit: int | None = None
    subfragments: tuple[int, ...] = ()

    def __post_init__(self):
        if self.slice_limit is None:
            object.__setattr__(self, "slice_limit", self.count)
        if not self.subfragments:
            object.__setattr__(self, "subfragments", (self.slice_limit - self.slice_start,))
        if not 0 <= self.slice_start <= self.slice_limit:
            raise ValueError(f"Invalid slice [{self.slice_start}, {self.slice_limit}) of {self.count}")

    @property
    def sliced_count(self) -> int:
        return self.slice_limit - self.slice_start

    @property
    def is_sliced(self) -> bool:
        return self.count != self.sliced_count

    def __str__(self) -> str:
        subs = ",".join(str(s) for s in self.subfragments)
        return f"{{stride={self.stride}, count={self.count}, slice=[{self.slice_start},{self.slice_limit}), subs=[{subs}]}}"


class TensorIterationSpec:
    """Per anchor dimension, the fragments of one tensor ordered minor to major.

    A dimension without an entry means the tensor does not vary along it.
    """

    def __init__(self, dims: dict[int, tuple[Fragment, ...]] | None = None):
        self._dims: dict[int, tuple[Fragment, ...]] = dict(dims or {})

    def __getitem__(self, dimension: int) -> tuple[Fragment, ...] | None:
        return self._dims.get(dimension)

    def dimensions(self) -> list[int]:
        return sorted(self._dims)

    def is_physically_equivalent(self, other: TensorIterationSpec) -> bool:
        """Same memory walk; subfragments only record logical structure."""
        if set(self._dims) != set(other._dims):
            return False
        for dim, frags in self._dims.items():
            theirs = other._dims[dim]
            if len(frags) != len(theirs):
                return False
            for a, b in zip(frags, theirs):
                if (a.stride, a.count, a.slice_start, a.slice_limit) != (b.stride, b.count, b.slice_start, b.slice_limit):
                    return False
        return True

    def __eq__(self, other) -> bool:
        if not isinstance(other, TensorIterationSpec):
            return NotImplemented
        return self._dims == other._dims

    def __hash__(self):
        return hash(tuple(sorted(self._dims.items())))

    def __repr__(self) -> str:
        parts = [f"{d}: [{', '.join(str(f) for f in frags)}]" for d, frags in sorted(self._dims.items())]
        return "TensorIterationSpec{" + "; ".join(parts) + "}"
