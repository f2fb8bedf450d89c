from typing import Dict, List, Optional

from callsig.backends.models import Relocation, Symbol
from callsig.libs.architecture import Architecture


class BinaryInfo:
    """
    Symbols, relocations and architecture of the opened binary, fetched from
    the backend on first use. Tests may pass the lists directly.
    """

    def __init__(self, backend=None, symbols: Optional[List[Symbol]] = None,
                 relocations: Optional[List[Relocation]] = None,
                 architecture: Optional[Architecture] = None):
        self.backend = backend
        self._symbols = symbols
        self._relocations = relocations
        self._architecture = architecture
        self._symbols_by_address: Optional[Dict[int, Symbol]] = None
        self._symbols_by_name: Optional[Dict[str, Symbol]] = None
        self._relocations_by_address: Optional[Dict[int, Relocation]] = None

    @property
    def symbols(self) -> List[Symbol]:
        if self._symbols is None:
            self._symbols = self.backend.list_symbols()
        return self._symbols

    @property
    def relocations(self) -> List[Relocation]:
        if self._relocations is None:
            self._relocations = self.backend.list_relocations()
        return self._relocations

    @property
    def architecture(self) -> Architecture:
        if self._architecture is None:
            self._architecture = Architecture.of(self.backend.file_info())
        return self._architecture

    def symbol_at_address(self, address: int) -> Optional[Symbol]:
        if self._symbols_by_address is None:
            self._symbols_by_address = {}
            for symbol in self.symbols:
                self._symbols_by_address.setdefault(symbol.vaddr, symbol)
        return self._symbols_by_address.get(address)

    def symbol_for_name(self, name: str) -> Optional[Symbol]:
        if self._symbols_by_name is None:
            self._symbols_by_name = {}
            for symbol in self.symbols:
                self._symbols_by_name.setdefault(symbol.name, symbol)
        return self._symbols_by_name.get(name)

    def relocation_at_address(self, address: int) -> Optional[Relocation]:
        if self._relocations_by_address is None:
            self._relocations_by_address = {}
            for relocation in self.relocations:
                self._relocations_by_address.setdefault(relocation.vaddr, relocation)
        return self._relocations_by_address.get(address)
