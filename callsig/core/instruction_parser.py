"""
Classification of a single decoded instruction into control flow transitions.

The instruction's ESIL program is run through the abstract interpreter to
find the register state after the instruction and, for indirect jumps and
direct writes to the program counter, the statically known target.
"""

import logging
import re
from dataclasses import dataclass
from typing import List, Optional

from callsig.backends.models import Instruction
from callsig.core.binary_info import BinaryInfo
from callsig.core.position import Position
from callsig.libs.esil_interpreter import EsilEnvironment, EsilState, interpret_or_unknown

logger = logging.getLogger(__name__)

_JUMP_OR_CALL = re.compile(r"u?c?(call|jmp)")
_CONDITIONAL_JUMP_OR_CALL = re.compile(r"u?c(call|jmp)")
_RETURN = re.compile(r"c?ret")
_UNMODELED_JUMP_OR_CALL = re.compile(r".*(jmp|call)")

STACK_GUARD_SYMBOL = "__stack_chk_guard"


class UnsupportedInstructionError(Exception):
    """An instruction the graph builder cannot model soundly."""


class Destination:
    __slots__ = ()


@dataclass(frozen=True)
class Known(Destination):
    position: Position

    def __str__(self):
        return str(self.position)


class _UnknownDestination(Destination):
    def __repr__(self):
        return "UNKNOWN"


UNKNOWN_DESTINATION = _UnknownDestination()


class InstructionTransition:
    __slots__ = ()


class _Return(InstructionTransition):
    def __repr__(self):
        return "Return"


RETURN = _Return()


@dataclass(frozen=True)
class Jump(InstructionTransition):
    state: EsilState
    target: Destination


@dataclass(frozen=True)
class CallTransition(InstructionTransition):
    state: EsilState
    target: Destination
    return_position: Known


class InstructionEnvironment(EsilEnvironment):
    """Interpreter environment reading memory and relocations from the binary."""

    def __init__(self, backend, info: BinaryInfo, position: Position):
        super().__init__(current_address=position.address)
        self.backend = backend
        self.info = info
        self.architecture = position.architecture
        self.word_size = position.architecture.word_size

    def load(self, address: int, width: Optional[int]) -> Optional[int]:
        width = width or self.word_size
        if width == self.word_size:
            relocation = self.info.relocation_at_address(address)
            if relocation is not None:
                logger.debug(f"Load: following relocation at address 0x{address:x} with name {relocation.name}")
                if relocation.name == STACK_GUARD_SYMBOL:
                    return 0
                symbol = self.info.symbol_for_name(relocation.name) if relocation.name else None
                if symbol is None:
                    logger.debug(f"Relocation {relocation.name} at 0x{address:x} has no symbol")
                    return None
                return self.info.architecture.map_relocation_entry(symbol.vaddr)

        data = self.backend.read_bytes(address, width)
        value = int.from_bytes(data[:8], "little")
        logger.debug(f"Load 0x{address:x}:{width} -> 0x{value:x}")
        return value

    def translate_register(self, name: str) -> str:
        return self.architecture.translate_register_alias(name)


class InstructionParser:
    def __init__(self, backend, info: BinaryInfo, position: Position, insn: Instruction, state: EsilState):
        self.backend = backend
        self.info = info
        self.position = position
        self.insn = insn
        self.architecture = position.architecture
        self.state = state.with_register(self.architecture.program_counter,
                                         self.architecture.program_counter_of(insn))
        self._next_state: Optional[EsilState] = None

    @property
    def next_state(self) -> EsilState:
        if self._next_state is None:
            environment = InstructionEnvironment(self.backend, self.info, self.position)
            self._next_state = interpret_or_unknown(self.state, self.insn.esil, environment,
                                                    context=f"at {self.position} ({self.insn.opcode})")
        return self._next_state

    @property
    def jump_destination(self) -> Destination:
        if self.insn.jump is not None:
            target = self.insn.jump
        else:
            target = self.next_state.get(self.architecture.program_counter)
            if target is None:
                logger.debug(f"Cannot predict jump target for {self.position} {self.insn.opcode} "
                             f"with state {self.state} -> {self.next_state}")
                return UNKNOWN_DESTINATION
        address, architecture = self.architecture.resolve_jump_target(target, self.insn)
        return Known(Position(address, architecture))

    @property
    def next_destination(self) -> Known:
        return Known(self.position.at(self.position.address + self.insn.size))

    def compute_transitions(self) -> List[InstructionTransition]:
        if self.insn.is_illegal():
            raise UnsupportedInstructionError(f"illegal instruction at {self.position}")

        kind = self.insn.type
        if _JUMP_OR_CALL.fullmatch(kind):
            transitions: List[InstructionTransition] = []
            if _CONDITIONAL_JUMP_OR_CALL.fullmatch(kind):
                transitions.append(Jump(self.next_state, self.next_destination))
            if kind.endswith("call"):
                transitions.append(CallTransition(self.next_state, self.jump_destination, self.next_destination))
            else:
                transitions.append(Jump(self.next_state, self.jump_destination))
            return transitions

        if _RETURN.fullmatch(kind):
            if kind == "cret":
                return [Jump(self.next_state, self.next_destination), RETURN]
            return [RETURN]

        if _UNMODELED_JUMP_OR_CALL.fullmatch(kind):
            raise UnsupportedInstructionError(f"{self.position}: unsupported instruction type {kind} ({self.insn.opcode})")

        pc = self.architecture.program_counter
        computed = self.next_state.get(pc)
        if self.state.get(pc) != computed:
            if computed is None:
                return [Jump(self.next_state, UNKNOWN_DESTINATION)]
            address, architecture = self.architecture.resolve_arithmetic_target(computed)
            target = Position(address, architecture)
            logger.debug(f"Arithmetic jump {self.position} -> {target}")
            return [Jump(self.next_state, Known(target))]

        return [Jump(self.next_state, self.next_destination)]


def compute_transitions(backend, info: BinaryInfo, position: Position, insn: Instruction,
                        state: EsilState) -> List[InstructionTransition]:
    parser = InstructionParser(backend, info, position, insn, state)
    transitions = parser.compute_transitions()
    logger.debug(f"{position}: {(insn.opcode or ''):<30} {parser.state} -> {transitions}")
    return transitions
