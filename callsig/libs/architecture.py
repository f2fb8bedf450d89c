"""
Per-architecture program counter and register policy.

The graph builder and interpreter never special-case an architecture; they go
through ``program_counter_of``, ``resolve_jump_target``,
``resolve_arithmetic_target``, ``translate_register_alias`` and
``map_relocation_entry``.
"""

import enum
import re
from typing import Tuple

from callsig.backends.models import FileInfo, Instruction

_THUMB_BIT = 0x80000000
_INTERWORKING_OPCODE = re.compile(r"\w+x.*")
_X86_32BIT_REGISTER = re.compile(r"e[a-z]{2}")


class UnsupportedArchitectureError(Exception):
    pass


class Architecture(enum.Enum):
    ARM = ("arm", 32, "r0", "pc", 4)
    THUMB = ("arm", 16, "r0", "pc", 4)
    X86 = ("x86", None, "rax", "rip", 8)

    def __init__(self, arch_id, bits, return_register, program_counter, word_size):
        self.arch_id = arch_id
        self.bits = bits
        self.return_register = return_register
        self.program_counter = program_counter
        self.word_size = word_size

    def __str__(self):
        return self.name.lower()

    @property
    def word_mask(self) -> int:
        return (1 << (self.word_size * 8)) - 1

    def program_counter_of(self, insn: Instruction) -> int:
        """Value of the program counter register while ``insn`` executes."""
        if self is Architecture.ARM:
            return insn.offset + 8
        if self is Architecture.THUMB:
            return insn.offset + 4
        return insn.offset + insn.size

    def resolve_jump_target(self, target: int, insn: Instruction) -> Tuple[int, "Architecture"]:
        """Target of a branch instruction, switching instruction sets where the branch does."""
        if self is Architecture.THUMB and insn.opcode and _INTERWORKING_OPCODE.fullmatch(insn.opcode) \
                and not target & _THUMB_BIT:
            # bx, blx
            return target, Architecture.ARM
        return self.resolve_arithmetic_target(target)

    def resolve_arithmetic_target(self, target: int) -> Tuple[int, "Architecture"]:
        """Target of a direct write to the program counter."""
        if self is Architecture.ARM and target & _THUMB_BIT:
            return target & 0x7fffffff, Architecture.THUMB
        if self is Architecture.THUMB:
            target &= 0x7fffffff
        return target & self.word_mask, self

    def translate_register_alias(self, name: str) -> str:
        if self is Architecture.X86 and _X86_32BIT_REGISTER.fullmatch(name):
            return "r" + name[1:]
        return name

    def map_relocation_entry(self, target: int) -> int:
        """Address a relocated pointer to ``target`` holds at runtime."""
        if self is Architecture.THUMB:
            return target | _THUMB_BIT
        return target

    @classmethod
    def of(cls, file_info: FileInfo) -> "Architecture":
        arch, bits = file_info.bin.arch, file_info.bin.bits
        if arch == "arm":
            if bits == 16:
                return cls.THUMB
            if bits == 32:
                return cls.ARM
            raise UnsupportedArchitectureError(f"arm {bits}")
        if arch == "x86":
            return cls.X86
        raise UnsupportedArchitectureError(arch)
