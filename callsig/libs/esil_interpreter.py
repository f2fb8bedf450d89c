"""
Abstract interpretation of ESIL programs over a partial register map.

The interpreter only tracks values that are known statically. A register
missing from an ``EsilState`` holds an unknown value; anything computed from
an unknown value is unknown as well, and is dropped from the state rather than
left stale.
"""

import logging
from typing import Dict, Iterable, Iterator, List, Mapping, Optional

from callsig.libs.esil import (
    BINARY_OPS,
    COMPARISON_OPS,
    COMPOUND_ASSIGN_OPS,
    UNARY_ASSIGN_OPS,
    UNARY_OPS,
    UNIMPLEMENTED_OPS,
    Conditional,
    EsilError,
    Label,
    Load,
    Op,
    Register,
    Store,
    Value,
    parse_esil,
)

logger = logging.getLogger(__name__)


class EsilState(Mapping[str, int]):
    """Immutable, hashable map of register name to statically known value."""

    __slots__ = ("_registers", "_hash")

    UNKNOWN: "EsilState"

    def __init__(self, registers: Optional[Mapping[str, int]] = None):
        self._registers: Dict[str, int] = dict(registers or {})
        self._hash = None

    def __getitem__(self, register: str) -> int:
        return self._registers[register]

    def __iter__(self) -> Iterator[str]:
        return iter(self._registers)

    def __len__(self) -> int:
        return len(self._registers)

    def __eq__(self, other):
        if not isinstance(other, EsilState):
            return NotImplemented
        return self._registers == other._registers

    def __hash__(self):
        if self._hash is None:
            self._hash = hash(frozenset(self._registers.items()))
        return self._hash

    def __repr__(self):
        inner = ", ".join(f"{k}=0x{v:x}" for k, v in sorted(self._registers.items()))
        return f"EsilState({inner})"

    def with_register(self, register: str, value: int) -> "EsilState":
        registers = dict(self._registers)
        registers[register] = value
        return EsilState(registers)

    def without_register(self, register: str) -> "EsilState":
        if register not in self._registers:
            return self
        registers = dict(self._registers)
        del registers[register]
        return EsilState(registers)

    @staticmethod
    def intersection(a: "EsilState", b: "EsilState") -> "EsilState":
        """The registers that hold the same value in both states."""
        return EsilState({k: v for k, v in a.items() if b.get(k) == v})


EsilState.UNKNOWN = EsilState()


class EsilEnvironment:
    """
    Context the interpreter needs from the caller. The defaults describe a
    64 bit machine with no readable memory; the instruction parser supplies
    one bound to the backend and architecture.
    """

    word_size = 8

    def __init__(self, current_address: int = 0):
        self.current_address = current_address

    def load(self, address: int, width: Optional[int]) -> Optional[int]:
        return None

    def mask(self, value: int) -> int:
        return value & ((1 << (self.word_size * 8)) - 1)

    def translate_register(self, name: str) -> str:
        return name


class _Unknown:
    def __repr__(self):
        return "?"


_UNKNOWN = _Unknown()


class _Unimplemented(Exception):
    pass


def _binary(op: Op, left: int, right: int) -> Optional[int]:
    if op == Op.ADD:
        return left + right
    if op == Op.SUB:
        return left - right
    if op == Op.MUL:
        return left * right
    if op == Op.AND:
        return left & right
    if op == Op.OR:
        return left | right
    if op == Op.XOR:
        return left ^ right
    if op in (Op.SHIFT_LEFT, Op.SHIFT_RIGHT) and right < 0:
        return None
    if op == Op.SHIFT_LEFT:
        return left << right if right < 128 else 0
    if op == Op.SHIFT_RIGHT:
        return left >> right
    if op in (Op.DIV, Op.MOD):
        if right == 0:
            return None
        return left // right if op == Op.DIV else left % right
    # rotates and signed arithmetic depend on operand widths we do not track
    return None


class _Interpreter:
    def __init__(self, state: EsilState, environment: EsilEnvironment):
        self.state = state
        self.environment = environment
        self.stack: List[object] = []

    def pop(self):
        if not self.stack:
            raise EsilError("ESIL stack underflow")
        return self.stack.pop()

    def pop_register(self) -> str:
        value = self.pop()
        if not isinstance(value, Register):
            raise EsilError(f"expected a register on the ESIL stack, got {value!r}")
        return self.environment.translate_register(value.name)

    def resolve(self, value) -> Optional[int]:
        if isinstance(value, int):
            return value
        if isinstance(value, Register):
            return self.state.get(self.environment.translate_register(value.name))
        return None

    def pop_value(self) -> Optional[int]:
        return self.resolve(self.pop())

    def push_value(self, value: Optional[int]):
        self.stack.append(_UNKNOWN if value is None else self.environment.mask(value))

    def set_register(self, register: str, value: Optional[int]):
        if value is None:
            self.state = self.state.without_register(register)
        else:
            self.state = self.state.with_register(register, self.environment.mask(value))

    def run(self, program: Iterable[object]):
        for command in program:
            self.eval(command)

    def eval(self, command):
        logger.debug(f"{command!r} -> {self.stack}")
        if isinstance(command, Register):
            self.stack.append(command)
        elif isinstance(command, Value):
            self.stack.append(command.value)
        elif isinstance(command, Label):
            self.stack.append(_UNKNOWN)
        elif isinstance(command, Conditional):
            self.conditional(command)
        elif isinstance(command, Load):
            self.load(command)
        elif isinstance(command, Store):
            self.store(command)
        elif isinstance(command, Op):
            self.operation(command)
        else:
            raise AssertionError(f"unhandled ESIL command {command!r}")

    def conditional(self, command: Conditional):
        self.pop()
        before = self.state
        stack = list(self.stack)
        self.run(command.body)
        after = self.state
        if command.orelse:
            self.state = before
            self.stack = list(stack)
            self.run(command.orelse)
            # exactly one of the two branches runs
            self.state = EsilState.intersection(after, self.state)
        else:
            # the body may be skipped
            self.state = EsilState.intersection(before, after)
        self.stack = stack

    def load(self, command: Load):
        if command.multi:
            count = self.pop_value()
            if count is None:
                raise EsilError("unknown element count for [*]")
            self.pop()
            for _ in range(count):
                self.stack.append(_UNKNOWN)
            return
        address = self.pop_value()
        value = None
        if address is not None:
            value = self.environment.load(address, command.width)
        self.push_value(value)

    def store(self, command: Store):
        if command.multi:
            count = self.pop_value()
            if count is None:
                raise EsilError("unknown element count for =[*]")
            self.pop()
            for _ in range(count):
                self.pop()
            return
        self.pop()
        self.pop()

    def operation(self, op: Op):
        if op in UNIMPLEMENTED_OPS:
            raise _Unimplemented(op.value)
        if op in BINARY_OPS:
            left = self.pop_value()
            right = self.pop_value()
            if left is None or right is None:
                self.stack.append(_UNKNOWN)
            else:
                self.push_value(_binary(op, left, right))
        elif op in COMPARISON_OPS:
            self.pop()
            self.pop()
            self.stack.append(_UNKNOWN)
        elif op in UNARY_OPS:
            self.pop()
            self.stack.append(_UNKNOWN)
        elif op in COMPOUND_ASSIGN_OPS:
            register = self.pop_register()
            operand = self.pop_value()
            current = self.state.get(register)
            value = None
            if operand is not None and current is not None:
                value = _binary(COMPOUND_ASSIGN_OPS[op], current, operand)
            self.set_register(register, value)
        elif op in UNARY_ASSIGN_OPS:
            self.set_register(self.pop_register(), None)
        elif op in (Op.ASSIGN, Op.WEAK_ASSIGN):
            register = self.pop_register()
            self.set_register(register, self.pop_value())
        elif op in (Op.TRAP, Op.SYSCALL):
            self.pop()
        elif op == Op.CURRENT_ADDRESS:
            self.stack.append(self.environment.current_address)
        elif op == Op.SWAP:
            a = self.pop()
            b = self.pop()
            self.stack.append(a)
            self.stack.append(b)
        elif op == Op.DUP:
            if not self.stack:
                raise EsilError("ESIL stack underflow")
            self.stack.append(self.stack[-1])
        elif op == Op.NUM:
            self.push_value(self.pop_value())
        elif op == Op.POP:
            self.pop()
        elif op == Op.CLEAR:
            self.stack.clear()
        else:
            raise AssertionError(f"unhandled ESIL operation {op!r}")


def interpret(state: EsilState, program, environment: Optional[EsilEnvironment] = None) -> EsilState:
    """
    Evaluate ``program`` (an ESIL string or parsed commands) starting from
    ``state``. Raises ``EsilError`` for malformed programs.
    """
    if isinstance(program, str):
        program = parse_esil(program)
    interpreter = _Interpreter(state, environment or EsilEnvironment())
    try:
        interpreter.run(program)
    except _Unimplemented as e:
        logger.debug(f"unimplemented ESIL operation {e}, forgetting all registers")
        return EsilState.UNKNOWN
    return interpreter.state


def interpret_or_unknown(state: EsilState, program, environment: Optional[EsilEnvironment] = None,
                         context: str = "") -> EsilState:
    """Like ``interpret``, but returns ``EsilState.UNKNOWN`` if evaluation fails."""
    try:
        return interpret(state, program, environment)
    except EsilError as e:
        logger.warning(f"ESIL evaluation failed {context}: {e}")
        return EsilState.UNKNOWN
