"""
Records decoded from the disassembler's JSON output. Unknown keys are ignored
so that radare2 and rizin versions with extra fields decode the same way.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class _Record(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class Instruction(_Record):
    """One entry of ``pdj``."""
    offset: int = Field(..., description="Virtual address of the instruction.")
    size: int = Field(0, description="Encoded length in bytes.")
    type: Optional[str] = Field(None, description="Classified type: call, ucall, jmp, cjmp, ret, ill, ...")
    opcode: Optional[str] = Field(None, description="Disassembled text.")
    esil: str = Field("", description="ESIL program of the instruction.")
    jump: Optional[int] = Field(None, description="Statically known jump target.")
    fail: Optional[int] = Field(None, description="Fall-through address of conditional jumps.")
    flags: List[str] = Field(default_factory=list, description="Flags defined at this offset.")
    fcn_addr: Optional[int] = Field(None, description="Start of the containing function, if analyzed.")
    fcn_last: Optional[int] = Field(None, description="Last instruction of the containing function, if analyzed.")

    def is_illegal(self) -> bool:
        return self.type is None or self.type in ("ill", "invalid")


class Symbol(_Record):
    """One entry of ``isj``."""
    name: str
    demname: str = ""
    flagname: str = ""
    size: int = 0
    vaddr: int
    paddr: int = 0


class Relocation(_Record):
    """One entry of ``irj``."""
    name: Optional[str] = None
    vaddr: int
    paddr: int = 0


class BinInfo(_Record):
    arch: str
    bits: int
    endian: str = "little"
    os: Optional[str] = None


class FileInfo(_Record):
    """The ``ij`` command's result; only the ``bin`` section is used."""
    bin: BinInfo
