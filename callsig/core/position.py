from dataclasses import dataclass, replace

from callsig.libs.architecture import Architecture


@dataclass(frozen=True)
class Position:
    """An instruction address together with the instruction set it is decoded in."""
    address: int
    architecture: Architecture

    def __str__(self):
        return f"{self.architecture}/0x{self.address:x}"

    def at(self, address: int) -> "Position":
        return replace(self, address=address)
