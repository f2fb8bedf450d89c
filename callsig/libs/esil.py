"""
Parser for radare2's ESIL, the per-instruction stack-machine program that the
disassembler reports for every instruction (``pdj``'s ``esil`` field).

An ESIL program is a comma separated list of tokens::

    rip,8,rsp,-=,rsp,=[8],0x1000,rip,=

Tokens are registers, numeric literals, internal flags (``$z``, ``$c31``),
operations and the ``?{ ... }`` / ``}{`` conditional block markers.
"""

import enum
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple


class EsilError(Exception):
    """Raised for ESIL programs that cannot be parsed or evaluated."""


class Op(enum.Enum):
    TRAP = "TRAP"
    SYSCALL = "$"
    CURRENT_ADDRESS = "$$"

    COMPARE = "=="
    LESS_THAN = "<"
    LESS_THAN_EQUAL = "<="
    GREATER_THAN = ">"
    GREATER_THAN_EQUAL = ">="

    SHIFT_LEFT = "<<"
    SHIFT_RIGHT = ">>"
    SHIFT_RIGHT_ARITHMETIC = ">>>>"
    ROTATE_LEFT = "<<<"
    ROTATE_RIGHT = ">>>"
    AND = "&"
    OR = "|"
    XOR = "^"
    ADD = "+"
    SUB = "-"
    MUL = "*"
    DIV = "/"
    MOD = "%"
    SIGNED_DIV = "~/"
    SIGNED_MOD = "~%"
    SIGN_EXTEND = "~"

    NEG = "!"
    INC = "++"
    DEC = "--"

    ADD_REGISTER = "+="
    SUB_REGISTER = "-="
    MUL_REGISTER = "*="
    DIV_REGISTER = "/="
    MOD_REGISTER = "%="
    SHIFT_LEFT_REGISTER = "<<="
    SHIFT_RIGHT_REGISTER = ">>="
    AND_REGISTER = "&="
    OR_REGISTER = "|="
    XOR_REGISTER = "^="
    INC_REGISTER = "++="
    DEC_REGISTER = "--="
    NOT_REGISTER = "!="
    SHIFT_RIGHT_ARITHMETIC_REGISTER = ">>>>="
    ROTATE_LEFT_REGISTER = "<<<="
    ROTATE_RIGHT_REGISTER = ">>>="
    SIGN_EXTEND_REGISTER = "~="
    SIGNED_DIV_REGISTER = "~/="
    SIGNED_MOD_REGISTER = "~%="

    POPCOUNT = "POPCOUNT"

    ASSIGN = "="
    WEAK_ASSIGN = ":="

    SWAP = "SWAP"
    DUP = "DUP"
    NUM = "NUM"
    POP = "POP"
    CLEAR = "CLEAR"

    PICK = "PICK"
    RPICK = "RPICK"
    BREAK = "BREAK"
    TODO = "TODO"
    GOTO = "GOTO"
    BITS = "BITS"
    SETJT = "SETJT"
    SETJTS = "SETJTS"
    SETD = "SETD"


BINARY_OPS = frozenset({
    Op.SHIFT_LEFT, Op.SHIFT_RIGHT, Op.SHIFT_RIGHT_ARITHMETIC, Op.ROTATE_LEFT, Op.ROTATE_RIGHT,
    Op.AND, Op.OR, Op.XOR, Op.ADD, Op.SUB, Op.MUL, Op.DIV, Op.MOD,
    Op.SIGNED_DIV, Op.SIGNED_MOD, Op.SIGN_EXTEND,
})
COMPARISON_OPS = frozenset({
    Op.COMPARE, Op.LESS_THAN, Op.LESS_THAN_EQUAL, Op.GREATER_THAN, Op.GREATER_THAN_EQUAL,
})
UNARY_OPS = frozenset({Op.NEG, Op.INC, Op.DEC, Op.POPCOUNT})
COMPOUND_ASSIGN_OPS = {
    Op.ADD_REGISTER: Op.ADD,
    Op.SUB_REGISTER: Op.SUB,
    Op.MUL_REGISTER: Op.MUL,
    Op.DIV_REGISTER: Op.DIV,
    Op.MOD_REGISTER: Op.MOD,
    Op.SHIFT_LEFT_REGISTER: Op.SHIFT_LEFT,
    Op.SHIFT_RIGHT_REGISTER: Op.SHIFT_RIGHT,
    Op.AND_REGISTER: Op.AND,
    Op.OR_REGISTER: Op.OR,
    Op.XOR_REGISTER: Op.XOR,
    Op.SHIFT_RIGHT_ARITHMETIC_REGISTER: Op.SHIFT_RIGHT_ARITHMETIC,
    Op.ROTATE_LEFT_REGISTER: Op.ROTATE_LEFT,
    Op.ROTATE_RIGHT_REGISTER: Op.ROTATE_RIGHT,
    Op.SIGN_EXTEND_REGISTER: Op.SIGN_EXTEND,
    Op.SIGNED_DIV_REGISTER: Op.SIGNED_DIV,
    Op.SIGNED_MOD_REGISTER: Op.SIGNED_MOD,
}
UNARY_ASSIGN_OPS = frozenset({Op.INC_REGISTER, Op.DEC_REGISTER, Op.NOT_REGISTER})
UNIMPLEMENTED_OPS = frozenset({
    Op.PICK, Op.RPICK, Op.BREAK, Op.TODO, Op.GOTO, Op.BITS, Op.SETJT, Op.SETJTS, Op.SETD,
})

_OPS_BY_CODE = {op.value: op for op in Op}


@dataclass(frozen=True)
class Register:
    name: str


@dataclass(frozen=True)
class Value:
    value: int


@dataclass(frozen=True)
class Label:
    """Internal flag such as ``$z``; its value is never known statically."""
    name: str


@dataclass(frozen=True)
class Load:
    """``[n]``: pop an address, push the n-byte value stored there.

    ``width`` is ``None`` for the architecture word size, ``MULTI`` loads
    (``[*]``) pop a count first and push that many values.
    """
    width: Optional[int]
    multi: bool = False


@dataclass(frozen=True)
class Store:
    """``=[n]`` and compound memory ops such as ``+=[4]``; no register effect."""
    width: Optional[int]
    operator: str = ""
    multi: bool = False


@dataclass(frozen=True)
class Conditional:
    body: Tuple["EsilCommand", ...]
    orelse: Tuple["EsilCommand", ...] = ()


EsilCommand = object  # Register | Value | Label | Load | Store | Conditional | Op

_REGISTER_NAME = re.compile(r"[A-Za-z_]\w*")
_WIDTHS = {"": None, "1": 1, "2": 2, "4": 4, "8": 8, "16": 16}


def _parse_memory(token: str):
    if not token.endswith("]") or "[" not in token:
        return None
    head, _, inner = token[:-1].partition("[")
    multi = inner == "*"
    if not multi and inner not in _WIDTHS:
        return None
    width = None if multi else _WIDTHS[inner]
    if head == "":
        return Load(width, multi)
    if head.endswith("="):
        return Store(width, head[:-1], multi)
    return None


def _parse_number(token: str) -> Optional[int]:
    try:
        return int(token, 0)
    except ValueError:
        pass
    try:
        return int(token, 10)
    except ValueError:
        return None


def parse_token(token: str):
    op = _OPS_BY_CODE.get(token)
    if op is not None:
        return op
    memory = _parse_memory(token)
    if memory is not None:
        return memory
    number = _parse_number(token)
    if number is not None:
        return Value(number)
    if token.startswith("$"):
        return Label(token)
    if not token:
        raise EsilError("empty ESIL token")
    if not _REGISTER_NAME.fullmatch(token):
        raise EsilError(f"unknown ESIL operation {token!r}")
    return Register(token)


def parse_esil(esil: str) -> Tuple[object, ...]:
    """Parse an ESIL string into a tuple of commands."""
    tokens = esil.split(",") if esil else []
    position = 0

    def block(terminators) -> Tuple[List[object], Optional[str]]:
        nonlocal position
        commands = []
        while position < len(tokens):
            token = tokens[position].strip()
            position += 1
            if token in terminators:
                return commands, token
            if token == "?{":
                body, end = block(("}", "}{"))
                if end is None:
                    raise EsilError(f"Invalid ESIL, unterminated conditional: {esil}")
                orelse = []
                if end == "}{":
                    orelse, end = block(("}",))
                    if end is None:
                        raise EsilError(f"Invalid ESIL, unterminated else branch: {esil}")
                commands.append(Conditional(tuple(body), tuple(orelse)))
            elif token in ("}", "}{"):
                raise EsilError(f"Invalid ESIL, unexpected '{token}': {esil}")
            elif token:
                commands.append(parse_token(token))
        return commands, None

    commands, _ = block(())
    return tuple(commands)
