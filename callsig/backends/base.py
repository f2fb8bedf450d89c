import json
import logging
from abc import ABC, abstractmethod
from typing import Any, List, Optional

from callsig.backends.models import FileInfo, Instruction, Relocation, Symbol
from callsig.config import get_config

logger = logging.getLogger(__name__)


class BackendError(OSError):
    """The disassembler session is closed or returned nothing."""


class DisassemblerBackend(ABC):
    """
    A disassembler session bound to one binary, shielding the differences
    between radare2 and rizin. Subclasses open the pipe and may override the
    command templates of the commands that differ between the two tools.
    """

    name = "abstract"

    VM_INIT = "aei"
    VM_DEINIT = "aei-"
    VM_INIT_STACK = "aeim 0x{base:x} 0x{size:x}"
    VM_DEINIT_STACK = "aeim- 0x{base:x} 0x{size:x}"
    VM_INIT_PC = "aepc 0x{address:x}"
    VM_STEP_UNTIL = "aesu 0x{address:x}"
    VM_GET_REGISTER = "aer {register}"
    ANALYZE_FUNCTION = "af"

    def __init__(self, target: str, analyze: Optional[bool] = None):
        self.target = target
        if analyze is None:
            analyze = get_config().get("backend", {}).get("analyze", False)
        self._pipe = self._open_pipe(target)
        if analyze:
            self.cmd("e scr.color=0; aaa")
        else:
            self.cmd("e scr.color=0")

    @abstractmethod
    def _open_pipe(self, target: str):
        """Open the underlying r2pipe/rzpipe session."""
        pass

    def cmd(self, command: str) -> str:
        if self._pipe is None:
            raise BackendError(f"{self.name} session for {self.target} is closed")
        logger.debug(f"$ {command}")
        result = self._pipe.cmd(command)
        return result if result is not None else ""

    def cmdj(self, command: str) -> Any:
        """Run ``command`` and decode its JSON output. Malformed output raises ``ValueError``."""
        text = self.cmd(command)
        if not text.strip():
            raise BackendError(f"empty response to '{command}'")
        return json.loads(text)

    def close(self):
        if self._pipe is not None:
            self._pipe.quit()
            self._pipe = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # ------------------------------------------------------------------
    # inspection

    def seek(self, address: int):
        self.cmd(f"s 0x{address:x}")

    def disassemble(self, address: int, architecture=None) -> Instruction:
        """Decode the instruction at ``address`` in the given instruction set."""
        command = f"pdj 1 @ 0x{address:x}"
        if architecture is not None and architecture.bits is not None:
            command += f" @a:{architecture.arch_id}:{architecture.bits}"
        result = self.cmdj(command)
        if not isinstance(result, list) or len(result) != 1:
            raise ValueError(f"expected a single instruction at 0x{address:x}, got {result!r}")
        return Instruction.model_validate(result[0])

    def read_bytes(self, address: int, count: int) -> bytes:
        return bytes(self.cmdj(f"pxj {count} @ 0x{address:x}"))

    def list_symbols(self) -> List[Symbol]:
        return [Symbol.model_validate(s) for s in self.cmdj("isj")]

    def list_relocations(self) -> List[Relocation]:
        return [Relocation.model_validate(r) for r in self.cmdj("irj")]

    def file_info(self) -> FileInfo:
        return FileInfo.model_validate(self.cmdj("ij"))

    def enable_io_cache(self):
        self.cmd("e io.cache=true")

    def analyze_function(self, address: int):
        self.seek(address)
        self.cmd(self.ANALYZE_FUNCTION)

    def function_end(self, address: int) -> int:
        """Address of the last instruction of the analyzed function at ``address``."""
        insn = self.disassemble(address)
        if insn.fcn_last is None:
            raise BackendError(f"no function analyzed at 0x{address:x}")
        return insn.fcn_last

    # ------------------------------------------------------------------
    # ESIL virtual machine

    def vm_init(self):
        self.cmd(self.VM_INIT)

    def vm_deinit(self):
        self.cmd(self.VM_DEINIT)

    def vm_init_stack(self, base: int, size: int):
        self.cmd(self.VM_INIT_STACK.format(base=base, size=size))

    def vm_deinit_stack(self, base: int, size: int):
        self.cmd(self.VM_DEINIT_STACK.format(base=base, size=size))

    def vm_init_pc(self, address: int):
        self.cmd(self.VM_INIT_PC.format(address=address))

    def vm_step_until(self, address: int):
        self.cmd(self.VM_STEP_UNTIL.format(address=address))

    def vm_get_register(self, register: str) -> int:
        text = self.cmd(self.VM_GET_REGISTER.format(register=register)).strip()
        if not text:
            raise BackendError(f"no value for register {register}")
        return int(text, 0)
