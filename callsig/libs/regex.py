"""
Regular expressions over an arbitrary alphabet.

A signature is a ``RegularExpression`` whose terminals are calls (or, after
mapping, readable type names). Four variants exist:

    Terminal(value)                 one alphabet symbol
    Concatenate(members)            ordered sequence, ``EMPTY`` when no members
    Or(alternatives)                unordered union, ``NOTHING`` when no alternatives
    Repeat(expression, min, max)    bounded or unbounded (``max is None``) repetition

All variants are immutable and compare structurally, so they can be used as
set members and dict keys. Use ``concat``/``union`` to build composites: they
flatten nesting of the same kind and collapse to the canonical ``EMPTY`` and
``NOTHING`` values.
"""

from dataclasses import dataclass, replace
from typing import Any, Callable, FrozenSet, Iterable, Optional, Tuple


class RegularExpression:
    """Base class of the four regex variants."""

    __slots__ = ()

    def map(self, leaf_mapper: Callable[[Any], "RegularExpression"]) -> "RegularExpression":
        raise NotImplementedError

    def repeat(self, min: int, max: Optional[int]) -> "Repeat":
        return Repeat(self, min, max)

    def zero_or_more(self) -> "Repeat":
        if isinstance(self, Repeat) and self.min == 0 and self.max is None:
            return self
        return Repeat(self, 0, None)

    def __str__(self) -> str:
        return to_string(self)


@dataclass(frozen=True)
class Terminal(RegularExpression):
    value: Any

    def map(self, leaf_mapper):
        return leaf_mapper(self.value)


@dataclass(frozen=True)
class Concatenate(RegularExpression):
    members: Tuple[RegularExpression, ...]

    def map(self, leaf_mapper):
        return concat(*(m.map(leaf_mapper) for m in self.members))


@dataclass(frozen=True)
class Or(RegularExpression):
    alternatives: FrozenSet[RegularExpression]

    def map(self, leaf_mapper):
        return union(*(a.map(leaf_mapper) for a in self.alternatives))


@dataclass(frozen=True)
class Repeat(RegularExpression):
    expression: RegularExpression
    min: int
    max: Optional[int]

    def __post_init__(self):
        if self.min < 0:
            raise ValueError(f"min={self.min} < 0")
        if self.max is not None and self.max < self.min:
            raise ValueError(f"max={self.max} < min={self.min}")

    @property
    def suffix(self) -> str:
        if self.min == self.max:
            return f"{{{self.min}}}"
        if self.max is None:
            if self.min == 0:
                return "*"
            if self.min == 1:
                return "+"
            return f"{{{self.min},}}"
        if self.min == 0 and self.max == 1:
            return "?"
        return f"{{{self.min},{self.max}}}"

    def with_bounds(self, min: int, max: Optional[int]) -> "Repeat":
        return replace(self, min=min, max=max)

    def map(self, leaf_mapper):
        return Repeat(self.expression.map(leaf_mapper), self.min, self.max)


EMPTY = Concatenate(())
NOTHING = Or(frozenset())


def _join(items: Iterable[RegularExpression], kind: type) -> list:
    joined = []
    for item in items:
        if isinstance(item, kind):
            joined.extend(item.members if kind is Concatenate else item.alternatives)
        else:
            joined.append(item)
    return joined


def concat(*items: RegularExpression) -> RegularExpression:
    """Concatenate ``items``, flattening nested concatenations."""
    members = _join(items, Concatenate)
    if not members:
        return EMPTY
    if len(members) == 1:
        return members[0]
    return Concatenate(tuple(members))


def union(*items: RegularExpression) -> RegularExpression:
    """Union of ``items``, flattening nested unions."""
    alternatives = frozenset(_join(items, Or))
    if not alternatives:
        return NOTHING
    if len(alternatives) == 1:
        return next(iter(alternatives))
    return Or(alternatives)


def matches_empty(expression: RegularExpression) -> bool:
    """Whether ``expression`` matches the zero-length word."""
    if isinstance(expression, Terminal):
        return False
    if isinstance(expression, Concatenate):
        return all(matches_empty(m) for m in expression.members)
    if isinstance(expression, Or):
        return any(matches_empty(a) for a in expression.alternatives)
    if isinstance(expression, Repeat):
        return expression.min == 0 or matches_empty(expression.expression)
    raise AssertionError(f"unhandled regex variant {expression!r}")


# Precedence levels used by the renderer.
_LEVEL_TOP = 0
_LEVEL_UNION = 1
_LEVEL_CONCAT = 2
_LEVEL_REPEAT = 3
_LEVEL_TERMINAL = 4


def _level(expression: RegularExpression) -> int:
    if isinstance(expression, Or):
        return _LEVEL_UNION
    if isinstance(expression, Concatenate):
        return _LEVEL_CONCAT
    if isinstance(expression, Repeat):
        return _LEVEL_REPEAT
    if isinstance(expression, Terminal):
        return _LEVEL_TERMINAL
    raise AssertionError(f"unhandled regex variant {expression!r}")


def to_string(expression: RegularExpression) -> str:
    """
    Render ``expression`` in infix form.

    ``EMPTY`` renders as the empty string and ``NOTHING`` as ``∅``. Union
    alternatives are sorted by their rendering so the output is stable.
    """
    if expression == NOTHING:
        return "∅"
    return _render(expression, _LEVEL_TOP)


def _render(expression: RegularExpression, parent_level: int) -> str:
    if expression == NOTHING:
        return "∅"
    level = _level(expression)
    if isinstance(expression, Concatenate):
        text = " ".join(_render(m, level) for m in expression.members)
    elif isinstance(expression, Or):
        text = " | ".join(sorted(_render(a, level) for a in expression.alternatives))
    elif isinstance(expression, Repeat):
        text = _render(expression.expression, level) + expression.suffix
    else:
        text = str(expression.value)
    if parent_level > level and expression != EMPTY:
        return f"({text})"
    return text
