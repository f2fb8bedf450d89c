"""The alphabet of function graphs: the calls a function makes."""

from dataclasses import dataclass

from callsig.backends.models import Symbol
from callsig.libs.esil_interpreter import EsilState


class Call:
    __slots__ = ()


@dataclass(frozen=True)
class StaticCall(Call):
    """A call to a known symbol that was not inlined, with the register state at the call site."""
    symbol: Symbol
    state: EsilState

    def __str__(self):
        return self.symbol.name


class _DynamicCall(Call):
    def __repr__(self):
        return "DYNAMIC"


class _NoReturnCall(Call):
    def __repr__(self):
        return "NO_RETURN"


DYNAMIC = _DynamicCall()
NO_RETURN = _NoReturnCall()
