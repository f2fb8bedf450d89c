"""
Parser for the textual regex form produced by ``callsig.libs.regex.to_string``.

Besides the rendered grammar it accepts the ``ε`` (empty word) and ``∅``
(empty language) literals. Terminals are recognized by a configurable pattern
so that decorated call names such as ``abc[rax=0]`` can be parsed as a single
symbol.
"""

import re
from typing import List, Optional, Pattern, Union

from callsig.libs.regex import (
    EMPTY,
    NOTHING,
    Concatenate,
    Or,
    RegularExpression,
    Repeat,
    Terminal,
)

DEFAULT_TERMINAL_PATTERN = re.compile(r"\w+")


class RegexParseError(ValueError):
    pass


class _Parser:
    def __init__(self, text: str, terminal_pattern: Pattern):
        self.text = text
        self.terminal_pattern = terminal_pattern
        self.i = 0

    def has_remaining(self) -> bool:
        return self.i < len(self.text)

    def peek(self) -> str:
        if not self.has_remaining():
            raise RegexParseError(f"Unexpected end of input near index {self.i}")
        return self.text[self.i]

    def take(self) -> str:
        c = self.peek()
        self.i += 1
        return c

    def take_digits(self) -> str:
        start = self.i
        while self.has_remaining() and self.text[self.i].isdigit():
            self.i += 1
        return self.text[start:self.i]

    def skip_whitespace(self):
        while self.has_remaining() and self.text[self.i].isspace():
            self.i += 1

    def take_terminal(self) -> Optional[Terminal]:
        match = self.terminal_pattern.match(self.text, self.i)
        if match is None or match.end() == self.i:
            return None
        self.i = match.end()
        return Terminal(match.group())

    def unexpected(self, token: str):
        raise RegexParseError(f"Unexpected token '{token}' near index {self.i}")

    def take_bounds(self):
        self.skip_whitespace()
        digits = self.take_digits()
        if not digits:
            raise RegexParseError(f"Expected repeat bound near index {self.i}")
        low = int(digits)
        self.skip_whitespace()
        if self.peek() == ",":
            self.take()
            self.skip_whitespace()
            digits = self.take_digits()
            high = int(digits) if digits else None
            self.skip_whitespace()
        else:
            high = low
        if self.take() != "}":
            raise RegexParseError(f"Expected '}}' near index {self.i}")
        return low, high

    def parse(self, in_parentheses: bool = False) -> RegularExpression:
        alternatives: List[List[RegularExpression]] = []
        sequence: List[RegularExpression] = []
        alternatives.append(sequence)

        while True:
            self.skip_whitespace()
            if not self.has_remaining():
                if in_parentheses:
                    raise RegexParseError("Unbalanced '('")
                break
            # ε is a word character, so it must be consumed before terminals
            if self.peek() == "ε":
                self.take()
                sequence.append(EMPTY)
                continue
            terminal = self.take_terminal()
            if terminal is not None:
                sequence.append(terminal)
                continue
            c = self.take()
            if c == "(":
                sequence.append(self.parse(in_parentheses=True))
            elif c == ")":
                if not in_parentheses:
                    self.unexpected(")")
                break
            elif c == "|":
                sequence = []
                alternatives.append(sequence)
            elif c in "?*+{":
                if not sequence:
                    self.unexpected(c)
                if c == "?":
                    bounds = (0, 1)
                elif c == "*":
                    bounds = (0, None)
                elif c == "+":
                    bounds = (1, None)
                else:
                    bounds = self.take_bounds()
                try:
                    sequence[-1] = Repeat(sequence[-1], *bounds)
                except ValueError as e:
                    raise RegexParseError(f"{e} near index {self.i}") from e
            elif c == "∅":
                sequence.append(NOTHING)
            else:
                self.unexpected(c)

        if len(alternatives) == 1:
            if len(sequence) == 1 and not in_parentheses:
                return sequence[0]
            return _sequence(sequence)
        return Or(frozenset(
            alternative[0] if len(alternative) == 1 else _sequence(alternative)
            for alternative in alternatives
        ))


def _sequence(members: List[RegularExpression]) -> RegularExpression:
    return Concatenate(tuple(members)) if members else EMPTY


def parse_regex(text: str, terminal_pattern: Union[str, Pattern, None] = None) -> RegularExpression:
    """Parse ``text`` into a ``RegularExpression`` over strings."""
    if terminal_pattern is None:
        pattern = DEFAULT_TERMINAL_PATTERN
    elif isinstance(terminal_pattern, str):
        pattern = re.compile(terminal_pattern)
    else:
        pattern = terminal_pattern
    return _Parser(text, pattern).parse()
