from .base import BackendError, DisassemblerBackend
from .dispatcher import close_backends, open_backend
from .models import FileInfo, Instruction, Relocation, Symbol
