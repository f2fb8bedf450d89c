"""
Builds the call automaton of a function.

Every instruction reachable from the entry point becomes an automaton state.
Edges are empty, except for calls that are not inlined: those are labelled
with a ``Call`` terminal. Calls that are inlined are built by a nested
``FunctionVisitor`` whose returns are wired to the instruction after the call.

Register states are propagated along edges and merged by intersection when a
position is reached again; a narrowed state re-enqueues the instruction, so
the walk terminates once every state stops shrinking.
"""

import collections
import enum
import logging
from typing import Callable, Deque, Dict, Iterable, Optional, Tuple

from callsig.backends.models import Instruction, Symbol
from callsig.config import get_config
from callsig.core.automaton import Automaton
from callsig.core.binary_info import BinaryInfo
from callsig.core.call import DYNAMIC, StaticCall
from callsig.core.instruction_parser import (
    RETURN,
    CallTransition,
    Destination,
    Jump,
    Known,
    compute_transitions,
)
from callsig.core.position import Position
from callsig.libs.esil_interpreter import EsilState
from callsig.libs.regex import EMPTY, RegularExpression, Terminal

logger = logging.getLogger(__name__)

DEFAULT_NO_RETURN_SYMBOLS = ("imp.__assert_rtn",)


class DecodeError(Exception):
    """The backend returned something that is not a decodable instruction."""


class InstructionCache:
    """Decoded instructions by position, shared by all visitors of one build."""

    def __init__(self, backend, attempts: Optional[int] = None):
        self.backend = backend
        if attempts is None:
            attempts = get_config().get("graph", {}).get("decode_retries", 3)
        self.attempts = max(1, attempts)
        self._cache: Dict[Position, Instruction] = {}

    def get(self, position: Position, call_trace: Callable[[], str]) -> Instruction:
        insn = self._cache.get(position)
        if insn is None:
            insn = self._decode(position, call_trace)
            self._cache[position] = insn
        return insn

    def _decode(self, position: Position, call_trace: Callable[[], str]) -> Instruction:
        attempt = 0
        while True:
            try:
                return self.backend.disassemble(position.address, position.architecture)
            except OSError as e:
                attempt += 1
                if attempt >= self.attempts:
                    raise
                logger.warning(f"Disassembling {position} failed ({e}), retrying")
            except ValueError as e:
                raise DecodeError(f"Failed to disassemble instruction at {position} "
                                  f"(call trace {call_trace()})") from e


class _VisitorState(enum.Enum):
    BUILDING = "building"
    COMPLETE = "complete"


class FunctionGraphBuilder:
    def __init__(self, backend, info: BinaryInfo, enter_call: Callable[[StaticCall], bool],
                 no_return_symbols: Optional[Iterable[str]] = None,
                 cache: Optional[InstructionCache] = None):
        self.backend = backend
        self.info = info
        self.enter_call = enter_call
        if no_return_symbols is None:
            no_return_symbols = get_config().get("graph", {}).get("no_return_symbols", DEFAULT_NO_RETURN_SYMBOLS)
        self.no_return_symbols = frozenset(no_return_symbols)
        self.cache = cache or InstructionCache(backend)
        self.automaton = Automaton()

    def is_no_return(self, symbol: Symbol) -> bool:
        return symbol.name in self.no_return_symbols

    def state_of(self, node: Optional["InstructionNode"]) -> int:
        """Automaton state of ``node``; returning from the outermost function accepts."""
        if node is None:
            return self.automaton.add_state(accepting=True)
        return node.automaton_state

    def build(self, position: Position) -> Tuple[Automaton, int]:
        visitor = FunctionVisitor(self, position, parent=None, return_point_factory=lambda: None)
        node = visitor.get_node(position, EsilState.UNKNOWN)
        visitor.build()
        return self.automaton, node.automaton_state


_UNRESOLVED = object()


class FunctionVisitor:
    """The instructions of one entered function, inlined calls included."""

    def __init__(self, builder: FunctionGraphBuilder, start: Position, parent: Optional["FunctionVisitor"],
                 return_point_factory: Callable[[], Optional["InstructionNode"]]):
        self.builder = builder
        self.start = start
        self.parent = parent
        self.member_nodes: Dict[Position, InstructionNode] = {}
        self.visit_queue: Deque[InstructionNode] = collections.deque()
        self.state = _VisitorState.BUILDING
        self._return_point_factory = return_point_factory
        self._return_point = _UNRESOLVED
        self._call_trace: Optional[str] = None

    @property
    def return_point(self) -> Optional["InstructionNode"]:
        if self._return_point is _UNRESOLVED:
            self._return_point = self._return_point_factory()
        return self._return_point

    @property
    def call_trace(self) -> str:
        if self._call_trace is None:
            prefix = "" if self.parent is None else self.parent.call_trace + "->"
            symbol = self.builder.info.symbol_at_address(self.start.address)
            self._call_trace = prefix + (symbol.name if symbol else str(self.start))
        return self._call_trace

    def check_state(self, expected: _VisitorState):
        if self.state != expected:
            raise RuntimeError(f"In state {self.state.value} but expected state {expected.value}")

    def get_node(self, position: Position, in_state: EsilState) -> "InstructionNode":
        present = self.member_nodes.get(position)
        if present is not None:
            present.merge_in_state(in_state)
            return present
        node = InstructionNode(self, position, in_state)
        self.member_nodes[position] = node
        return node

    def try_recurse_into(self, position: Position, state: EsilState) -> Optional["InstructionNode"]:
        """The node at ``position`` in this function or any function on the call trace."""
        visitor = self
        while visitor is not None:
            node = visitor.member_nodes.get(position)
            if node is not None:
                node.merge_in_state(state)
                return node
            visitor = visitor.parent
        return None

    def build(self):
        self.check_state(_VisitorState.BUILDING)
        while self.visit_queue:
            self.visit_queue.popleft().visit()
        self.state = _VisitorState.COMPLETE


class InstructionNode:
    def __init__(self, visitor: FunctionVisitor, position: Position, in_state: EsilState):
        self.visitor = visitor
        self.position = position
        self.automaton_state = visitor.builder.automaton.add_state()
        self.in_state = in_state.without_register(position.architecture.program_counter)
        self._in_queue = False
        self.enqueue()

    def __repr__(self):
        return f"InstructionNode({self.position})"

    def enqueue(self):
        self.visitor.check_state(_VisitorState.BUILDING)
        if not self._in_queue:
            self._in_queue = True
            self.visitor.visit_queue.append(self)

    def merge_in_state(self, in_state: EsilState):
        self.visitor.check_state(_VisitorState.BUILDING)
        merged = EsilState.intersection(self.in_state, in_state)
        if merged != self.in_state:
            logger.debug(f"{self.position} needs to be revisited")
            self.in_state = merged
            self.enqueue()

    def _jump_or_call(self, is_call: bool, state: EsilState, target: Destination,
                      return_to: Callable[[], Optional["InstructionNode"]]
                      ) -> Optional[Tuple[int, RegularExpression]]:
        builder = self.visitor.builder
        if not isinstance(target, Known):
            return builder.state_of(return_to()), Terminal(DYNAMIC)

        jump_position = target.position
        recursion = self.visitor.try_recurse_into(jump_position, state)
        if recursion is not None:
            # recursive call, tail call or loop back to a visited instruction
            return recursion.automaton_state, EMPTY

        symbol = builder.info.symbol_at_address(jump_position.address)
        if symbol is not None:
            if builder.is_no_return(symbol):
                return None
            call = StaticCall(symbol, state)
            if not builder.enter_call(call):
                logger.debug(f"Registering static call to {symbol.name} at {self.position}")
                return builder.state_of(return_to()), Terminal(call)

        jump_insn = builder.cache.get(jump_position, lambda: self.visitor.call_trace)
        if jump_insn.is_illegal():
            logger.debug(f"Jump target {jump_position} is illegal, marking as dynamic")
            return builder.state_of(return_to()), Terminal(DYNAMIC)

        if is_call:
            logger.debug(f"Entering call to {symbol.name if symbol else jump_position} at {self.position}")
            callee = FunctionVisitor(builder, jump_position, self.visitor, return_to)
            entry = callee.get_node(jump_position, state)
            callee.build()
            return entry.automaton_state, EMPTY

        return self.visitor.get_node(jump_position, state).automaton_state, EMPTY

    def visit(self):
        self._in_queue = False
        builder = self.visitor.builder
        insn = builder.cache.get(self.position, lambda: self.visitor.call_trace)
        transitions = compute_transitions(builder.backend, builder.info, self.position, insn, self.in_state)

        automaton = builder.automaton
        automaton.clear_edges(self.automaton_state)
        for transition in transitions:
            if transition is RETURN:
                edge = builder.state_of(self.visitor.return_point), EMPTY
            elif isinstance(transition, CallTransition):
                return_position = transition.return_position.position
                edge = self._jump_or_call(
                    True, transition.state, transition.target,
                    lambda: self.visitor.get_node(return_position, EsilState.UNKNOWN))
            elif isinstance(transition, Jump):
                edge = self._jump_or_call(False, transition.state, transition.target,
                                          lambda: self.visitor.return_point)
            else:
                raise AssertionError(f"unhandled transition {transition!r}")
            if edge is not None:
                automaton.add_edge(self.automaton_state, edge[0], edge[1])


def build_function_graph(backend, info: BinaryInfo, enter_call: Callable[[StaticCall], bool],
                         position: Position, **kwargs) -> Tuple[Automaton, int]:
    """Build the call automaton of the function at ``position``; returns it with its start state."""
    return FunctionGraphBuilder(backend, info, enter_call, **kwargs).build(position)
