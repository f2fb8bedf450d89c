"""
Finite automata with regex-labelled edges, and their reduction to a single
regular expression by state elimination.

States are plain integer handles into an ``Automaton`` arena. The function
graph builder allocates one state per visited instruction and replaces a
state's outgoing edges wholesale whenever the instruction is revisited.
"""

from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional, Sequence, Set

from callsig.libs.regex import EMPTY, NOTHING, RegularExpression, Terminal, concat, union


class Automaton:
    def __init__(self):
        self._next_handle = 0
        self.accepting: Set[int] = set()
        self.edges: Dict[int, Dict[int, RegularExpression]] = {}

    def add_state(self, accepting: bool = False) -> int:
        handle = self._next_handle
        self._next_handle += 1
        self.edges[handle] = {}
        if accepting:
            self.accepting.add(handle)
        return handle

    def set_accepting(self, state: int, accepting: bool = True):
        if accepting:
            self.accepting.add(state)
        else:
            self.accepting.discard(state)

    def add_edge(self, source: int, target: int, label: RegularExpression):
        """Add an edge, unioning with an existing edge between the same states."""
        existing = self.edges[source].get(target)
        self.edges[source][target] = label if existing is None else union(existing, label)

    def clear_edges(self, state: int):
        self.edges[state] = {}

    def reachable_from(self, start: int) -> List[int]:
        seen = {start}
        order = [start]
        stack = [start]
        while stack:
            state = stack.pop()
            for target in self.edges[state]:
                if target not in seen:
                    seen.add(target)
                    order.append(target)
                    stack.append(target)
        return order

    def accepts(self, start: int, word: Sequence[Any]) -> bool:
        """
        Whether the automaton accepts ``word``. Only terminal and ``EMPTY``
        edge labels are supported; meant for checking small automata in tests.
        """
        current = self._empty_closure({start})
        for symbol in word:
            following = set()
            for state in current:
                for target, label in self.edges[state].items():
                    if isinstance(label, Terminal) and label.value == symbol:
                        following.add(target)
            current = self._empty_closure(following)
        return bool(current & self.accepting)

    def _empty_closure(self, states: Iterable[int]) -> Set[int]:
        closure = set(states)
        stack = list(closure)
        while stack:
            state = stack.pop()
            for target, label in self.edges[state].items():
                if label == EMPTY and target not in closure:
                    closure.add(target)
                    stack.append(target)
        return closure

    def to_regex(self, start: int,
                 select: Optional[Callable[[List[int]], int]] = None) -> RegularExpression:
        """
        Convert the sub-automaton reachable from ``start`` into a regular
        expression by state elimination. The automaton itself is not modified.

        ``select`` picks the next state to eliminate from the list of
        candidates; the resulting expression is language-equivalent for any
        choice.
        """
        states = self.reachable_from(start)
        edges = {s: dict(self.edges[s]) for s in states}
        accepting = {s for s in states if s in self.accepting}

        # accepting states must not have outgoing edges
        extra = self._next_handle
        edges[extra] = {}
        for state in states:
            if state in accepting and edges[state]:
                edges[state][extra] = EMPTY
                accepting.discard(state)
        accepting.add(extra)
        remaining = set(states)
        remaining.add(extra)

        def eliminate(state: int):
            remaining.discard(state)
            outgoing = edges.pop(state)
            loop = outgoing.pop(state, None)
            loop = EMPTY if loop is None else loop.zero_or_more()
            for source in remaining:
                incoming = edges[source].pop(state, None)
                if incoming is None:
                    continue
                for target, tail in outgoing.items():
                    added = concat(incoming, loop, tail)
                    old = edges[source].get(target, NOTHING)
                    edges[source][target] = union(added, old)

        while True:
            candidates = [s for s in remaining if s != start and s not in accepting]
            if not candidates:
                break
            eliminate(candidates[0] if select is None else select(candidates))

        start_edges = edges[start]
        start_loop = start_edges.get(start)
        start_loop = EMPTY if start_loop is None else start_loop.zero_or_more()
        if start in accepting:
            assert not start_edges, "accepting start state kept outgoing edges"
            return start_loop
        return union(*(concat(start_loop, start_edges[s]) for s in accepting if s in start_edges))


class AutomatonBuilder:
    """
    Builds an automaton from arbitrary hashable state keys::

        builder = AutomatonBuilder()
        builder.on(1, "a", 2)
        builder.accept(2)
        automaton, start = builder.build(1)
    """

    def __init__(self):
        self.automaton = Automaton()
        self._states: Dict[Hashable, int] = {}

    def state(self, key: Hashable) -> int:
        if key not in self._states:
            self._states[key] = self.automaton.add_state()
        return self._states[key]

    def on(self, source: Hashable, label: Any, target: Hashable) -> "AutomatonBuilder":
        if not isinstance(label, RegularExpression):
            label = Terminal(label)
        self.automaton.add_edge(self.state(source), self.state(target), label)
        return self

    def accept(self, key: Hashable) -> "AutomatonBuilder":
        self.automaton.set_accepting(self.state(key))
        return self

    def build(self, start: Hashable):
        return self.automaton, self.state(start)
