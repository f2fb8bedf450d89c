import rzpipe

from .base import DisassemblerBackend


class RizinBackend(DisassemblerBackend):
    """rizin session over rzpipe; the ESIL VM commands live under ``aez``."""

    name = "rizin"

    VM_INIT = "aezi"
    VM_DEINIT = "aezi-"
    VM_INIT_STACK = "aezm 0x{base:x} 0x{size:x}"
    VM_DEINIT_STACK = "aezm- 0x{base:x} 0x{size:x}"
    VM_INIT_PC = "aezv PC 0x{address:x}"
    VM_STEP_UNTIL = "aezsu 0x{address:x}"
    VM_GET_REGISTER = "aezv {register}"

    def _open_pipe(self, target: str):
        return rzpipe.open(target)
