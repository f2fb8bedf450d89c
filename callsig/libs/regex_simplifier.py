"""
Algebraic simplification of ``RegularExpression`` trees.

The simplifier works bottom-up with one incremental builder per operator.
Each builder flattens nested expressions of its own kind and tries to merge a
new member with its neighbours as it is inserted:

    x x* x          ->  x{2,}
    (x y)* x y      ->  (x y)+
    x y | x z       ->  x (y | z)
    x? | x+         ->  x*
    ε | x           ->  x?

The result over-approximates: it accepts every word of the input, but some
union merges also admit words the input rejected, e.g. ``(ε | a) b a | a | b``
becomes ``a | a? b a?``, which accepts ``a b``. Nor is this a complete
decision procedure for regular-language equivalence. Some unions
that are obviously reducible by hand are left as they are, for example
``x y | x? y x | y`` does not become ``x? y x?``.
"""

import logging
from collections import deque
from typing import List, Optional, Set, Tuple

from callsig.libs.regex import (
    EMPTY,
    NOTHING,
    Concatenate,
    Or,
    RegularExpression,
    Repeat,
    Terminal,
    concat,
    matches_empty,
    union,
)

logger = logging.getLogger(__name__)

# Upper bound on full re-simplification passes in simplify().
_MAX_PASSES = 16


def _replaced(members: Tuple[RegularExpression, ...], index: int, value: RegularExpression):
    return members[:index] + (value,) + members[index + 1:]


def _bump(repeat: Repeat, by: int = 1) -> Repeat:
    return repeat.with_bounds(repeat.min + by, None if repeat.max is None else repeat.max + by)


def _drop_one(repeat: Repeat) -> Repeat:
    return repeat.with_bounds(repeat.min - 1, None if repeat.max is None else repeat.max - 1)


class _ConcatBuilder:
    def __init__(self):
        self.items: List[RegularExpression] = []

    def add(self, expression: RegularExpression, tail: bool = True):
        if isinstance(expression, Concatenate):
            self._add_all(expression.members, tail)
            return
        here = _simplify(expression)
        if isinstance(here, Concatenate):
            self._add_all(here.members, tail)
            return

        if tail:
            self.items.append(here)
            while len(self.items) >= 2 and self._merge_at_tail():
                pass
        else:
            self.items.insert(0, here)
            while len(self.items) >= 2 and self._merge_at_head():
                pass

    def _add_all(self, members, tail: bool):
        for member in (members if tail else reversed(members)):
            self.add(member, tail)

    def _merge_at_tail(self) -> bool:
        items = self.items
        merged = _try_merge_pair(items[-2], items[-1])
        if merged is not None:
            items[-2:] = [merged]
            return True
        # x y (x y)*
        last = items[-1]
        if _is_sequence_repeat(last):
            members = last.expression.members
            n = len(members)
            if len(items) > n and tuple(items[-1 - n:-1]) == members:
                items[-1 - n:] = [_bump(last)]
                return True
        # (x y)* x y
        for start in range(len(items) - 3, -1, -1):
            candidate = items[start]
            if _is_sequence_repeat(candidate) and len(candidate.expression.members) == len(items) - 1 - start:
                if tuple(items[start + 1:]) == candidate.expression.members:
                    items[start:] = [_bump(candidate)]
                    return True
        return False

    def _merge_at_head(self) -> bool:
        items = self.items
        merged = _try_merge_pair(items[0], items[1])
        if merged is not None:
            items[:2] = [merged]
            return True
        first = items[0]
        if _is_sequence_repeat(first):
            members = first.expression.members
            n = len(members)
            if len(items) > n and tuple(items[1:1 + n]) == members:
                items[:1 + n] = [_bump(first)]
                return True
        for end in range(2, len(items)):
            candidate = items[end]
            if _is_sequence_repeat(candidate) and len(candidate.expression.members) == end:
                if tuple(items[:end]) == candidate.expression.members:
                    items[:end + 1] = [_bump(candidate)]
                    return True
        return False

    def build(self) -> RegularExpression:
        if not self.items:
            return EMPTY
        if len(self.items) == 1:
            return self.items[0]
        return Concatenate(tuple(self.items))


def _is_sequence_repeat(expression: RegularExpression) -> bool:
    return (isinstance(expression, Repeat)
            and isinstance(expression.expression, Concatenate)
            and len(expression.expression.members) >= 2)


def _try_merge_symmetrical(left: RegularExpression, right: RegularExpression) -> Optional[Repeat]:
    if isinstance(left, Repeat):
        if left.expression == right:
            return _bump(left)
        if isinstance(right, Repeat) and right.expression == left.expression:
            high = None if left.max is None or right.max is None else left.max + right.max
            return left.with_bounds(left.min + right.min, high)
    return None


def _try_merge_pair(left: RegularExpression, right: RegularExpression) -> Optional[Repeat]:
    merged = _try_merge_symmetrical(left, right)
    if merged is not None:
        return merged
    merged = _try_merge_symmetrical(right, left)
    if merged is not None:
        return merged
    if left == right:
        return left.repeat(2, 2)
    return None


class _OrBuilder:
    def __init__(self):
        self.items: Set[RegularExpression] = set()

    def add(self, expression: RegularExpression):
        if isinstance(expression, Or):
            for alternative in expression.alternatives:
                self.add(alternative)
            return
        here = _simplify(expression)
        if isinstance(here, Or):
            for alternative in here.alternatives:
                self.add(alternative)
            return
        self.items.add(here)

    def build(self) -> RegularExpression:
        if len(self.items) == 1:
            return next(iter(self.items))
        prefix = self._extract_common(prefix=True)
        suffix = self._extract_common(prefix=False)

        ordered = list(self.items)
        queue = deque()
        for ai, a in enumerate(ordered):
            for b in ordered[ai + 1:]:
                queue.appendleft((a, b))
        while queue:
            a, b = queue.popleft()
            merged = self._try_merge(a, b)
            if merged is None:
                continue
            self.items.discard(a)
            self.items.discard(b)
            queue = deque(pair for pair in queue
                          if pair[0] != a and pair[1] != a and pair[0] != b and pair[1] != b)
            queue.extend((item, merged) for item in self.items)
            self.items.add(merged)

        # ε | x -> x?
        if len(self.items) == 2 and EMPTY in self.items:
            self.items.discard(EMPTY)
            remaining = self.items.pop()
            self.items.add(remaining.repeat(0, 1))

        if not self.items:
            return NOTHING
        if prefix == EMPTY and suffix == EMPTY:
            return union(*self.items)
        if len(self.items) == 1:
            return _simplify(concat(prefix, next(iter(self.items)), suffix))
        return concat(prefix, Or(frozenset(self.items)), suffix)

    def _try_merge_unidirectional(self, left: RegularExpression,
                                  right: RegularExpression) -> Optional[RegularExpression]:
        if left == right:
            return left
        if right == EMPTY:
            if matches_empty(left):
                return left
            if isinstance(left, Repeat) and left.min == 1:
                return left.with_bounds(0, left.max)
            return _simplify(left.repeat(0, 1))
        if isinstance(left, Concatenate):
            non_empty = [(i, m) for i, m in enumerate(left.members) if not matches_empty(m)]
            if len(non_empty) == 1:
                index, member = non_empty[0]
                merged = self._try_merge_unidirectional(member, right)
                if merged is not None:
                    return Concatenate(_replaced(left.members, index, merged))
            if len(non_empty) == 2:
                (ai, a), (bi, b) = non_empty
                if b == right:
                    optional = self._try_merge(a, EMPTY)
                    if optional is not None:
                        return Concatenate(_replaced(left.members, ai, optional))
                if a == right:
                    optional = self._try_merge(b, EMPTY)
                    if optional is not None:
                        return Concatenate(_replaced(left.members, bi, optional))
            if isinstance(right, Concatenate):
                if [m for _, m in non_empty] == list(right.members):
                    return left
                if len(non_empty) == len(right.members) + 1:
                    candidate = None
                    possible = True
                    for i, member in enumerate(right.members):
                        if candidate is None:
                            if non_empty[i][1] == member:
                                continue
                            candidate = non_empty[i]
                        if non_empty[i + 1][1] != member:
                            possible = False
                            break
                    if possible:
                        if candidate is None:
                            candidate = non_empty[-1]
                        index, member = candidate
                        return Concatenate(_replaced(left.members, index, _simplify(member.repeat(0, 1))))
        if isinstance(left, Repeat):
            if left.expression == right:
                if left.min == 2:
                    return left.with_bounds(1, left.max)
                if left.min <= 1:
                    return left
            if isinstance(right, Repeat) and right.expression == left.expression:
                return _unify_ranges(left, right)
        return None

    def _try_merge(self, a: RegularExpression, b: RegularExpression) -> Optional[RegularExpression]:
        merged = self._try_merge_unidirectional(a, b)
        if merged is not None:
            return merged
        return self._try_merge_unidirectional(b, a)

    def _extract_common(self, prefix: bool) -> RegularExpression:
        """Factor a common leading (or trailing) sequence out of every alternative."""

        def directional(first: RegularExpression, second: RegularExpression) -> RegularExpression:
            return concat(first, second) if prefix else concat(second, first)

        fix = _ConcatBuilder()
        while self.items:
            ordered = list(self.items)
            selected = _select_start(ordered[0], prefix)
            if selected is None:
                break
            suggested, first_tail = selected
            new_items = {first_tail}

            def pop(expression: RegularExpression) -> Optional[RegularExpression]:
                nonlocal suggested, new_items
                if expression == suggested:
                    return EMPTY
                if isinstance(expression, Repeat) and expression.min > 0:
                    popped = pop(expression.expression)
                    return None if popped is None else directional(popped, _drop_one(expression))
                if isinstance(expression, Concatenate):
                    if not expression.members:
                        return None
                    if prefix:
                        head, rest = expression.members[0], Concatenate(expression.members[1:])
                    else:
                        head, rest = expression.members[-1], Concatenate(expression.members[:-1])
                    popped = pop(head)
                    return None if popped is None else directional(popped, rest)
                if (isinstance(suggested, Repeat) and suggested.min > 0
                        and suggested.expression == expression):
                    # unroll one repetition out of the suggested prefix
                    moved = _drop_one(suggested)
                    new_items = {directional(moved, item) for item in new_items}
                    suggested = expression
                    return EMPTY
                return None

            complete = True
            for item in ordered[1:]:
                popped = pop(item)
                if popped is None:
                    complete = False
                    break
                new_items.add(popped)
            if not complete:
                break
            fix.add(suggested, tail=prefix)
            self.items = set()
            for item in new_items:
                self.add(item)
        return fix.build()


def _select_start(first: RegularExpression, prefix: bool):
    if isinstance(first, Concatenate):
        members = first.members
        if not members:
            return None
        selected = _select_start(members[0] if prefix else members[-1], prefix)
        if selected is None:
            return None
        head, tail = selected
        if prefix:
            return head, concat(tail, Concatenate(members[1:]))
        return head, concat(Concatenate(members[:-1]), tail)
    return first, EMPTY


def _unify_ranges(a: Repeat, b: Repeat) -> Optional[Repeat]:
    """x{a,b} | x{c,d} -> x{min,max} when the two ranges overlap or touch."""
    low, high = (a, b) if a.min <= b.min else (b, a)
    if low.max is not None and high.min > low.max + 1:
        return None
    top = None if low.max is None or high.max is None else max(low.max, high.max)
    return low.with_bounds(low.min, top)


def _simplify_repeat(repeat: Repeat) -> RegularExpression:
    if repeat.max == 0:
        return EMPTY
    simple = _simplify(repeat.expression)
    if repeat.min == 1 and repeat.max == 1:
        return simple
    if simple == EMPTY:
        return simple
    if simple == NOTHING:
        return EMPTY if repeat.min == 0 else NOTHING
    if isinstance(simple, Repeat):
        min1, max1 = repeat.min, repeat.max
        min2, max2 = simple.min, simple.max
        if min1 <= 1 and min2 <= 1 and (max1 is None or max2 is None):
            return Repeat(simple.expression, min1 * min2, None)
        if min1 == max1 and min2 == max2:
            return Repeat(simple.expression, min1 * min2, min1 * min2)
    return Repeat(simple, repeat.min, repeat.max)


def _simplify(expression: RegularExpression) -> RegularExpression:
    if isinstance(expression, Terminal):
        return expression
    if isinstance(expression, Concatenate):
        builder = _ConcatBuilder()
        builder.add(expression)
        return builder.build()
    if isinstance(expression, Or):
        builder = _OrBuilder()
        builder.add(expression)
        return builder.build()
    if isinstance(expression, Repeat):
        return _simplify_repeat(expression)
    raise AssertionError(f"unhandled regex variant {expression!r}")


def simplify(expression: RegularExpression) -> RegularExpression:
    """Reduce ``expression`` until another pass no longer changes it."""
    current = expression
    for _ in range(_MAX_PASSES):
        simplified = _simplify(current)
        if simplified == current:
            return simplified
        current = simplified
    logger.debug("Simplification did not settle after %d passes: %s", _MAX_PASSES, current)
    return current
