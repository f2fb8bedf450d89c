"""
Signature extraction for serializer functions.

A signature is the simplified regular expression over the calls a function
makes. ``SerializerSignatureExtractor`` applies this to every packet and
type serializer of a binary: calls to other type serializers become readable
terminals (``VarInt String NamedTag``), everything else is either inlined or
dropped.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Set

from callsig.config import get_config
from callsig.core.binary_info import BinaryInfo
from callsig.core.call import DYNAMIC, NO_RETURN, StaticCall
from callsig.core.function_graph import build_function_graph
from callsig.core.position import Position
from callsig.libs.regex import EMPTY, NOTHING, RegularExpression, Terminal, to_string
from callsig.libs.regex_simplifier import simplify

logger = logging.getLogger(__name__)

ERROR = "ERROR"
DYNAMIC_TERMINAL = "DYN"

TerminalMapper = Callable[[StaticCall], Optional[RegularExpression]]


def _map_call(call, to_terminal: TerminalMapper) -> RegularExpression:
    if isinstance(call, StaticCall):
        terminal = to_terminal(call)
        return EMPTY if terminal is None else terminal
    if call is DYNAMIC:
        return Terminal(DYNAMIC_TERMINAL)
    if call is NO_RETURN:
        return NOTHING
    raise AssertionError(f"unhandled call {call!r}")


def extract_function_signature(backend, info: BinaryInfo, address: int,
                               enter_call: Callable[[StaticCall], bool],
                               to_terminal: TerminalMapper,
                               architecture=None) -> RegularExpression:
    """
    Build the call automaton of the function at ``address``, reduce it, map
    its calls to string terminals and simplify. Dynamic calls become ``DYN``;
    static calls ``to_terminal`` maps to ``None`` are dropped.
    """
    position = Position(address, architecture or info.architecture)
    automaton, start = build_function_graph(backend, info, enter_call, position)
    mapped = automaton.to_regex(start).map(lambda call: _map_call(call, to_terminal))
    logger.debug(f"raw {position}: {mapped}")
    return simplify(mapped)


def remove_template_components(name: str, component: str) -> str:
    """Drop every ``,component<...>`` template argument from a demangled name."""
    marker = f",{component}<"
    while marker in name:
        start = name.index(marker)
        i = start + len(marker)
        depth = 1
        while depth > 0 and i < len(name):
            if name[i] == "<":
                depth += 1
            elif name[i] == ">":
                depth -= 1
            i += 1
        name = name[:start] + name[i:]
    return name


def readable_type_name(name: str) -> str:
    name = name.replace("std::__1::", "")
    name = remove_template_components(name, "allocator")
    name = remove_template_components(name, "default_delete")
    if name.startswith("Type<") and name.endswith(">"):
        name = name[len("Type<"):-1]
    return name


@dataclass
class Signatures:
    packets: Dict[str, str] = field(default_factory=dict)
    types: Dict[str, str] = field(default_factory=dict)


class SerializerSignatureExtractor:
    def __init__(self, backend, info: Optional[BinaryInfo] = None, settings: Optional[Dict[str, Any]] = None):
        self.backend = backend
        self.info = info or BinaryInfo(backend)
        if settings is None:
            settings = get_config().get("signatures", {})
        self.packet_pattern = re.compile(settings.get("packet_pattern", r"(.*)Packet::write"))
        self.type_pattern = re.compile(settings.get("type_pattern", r"BinaryStream::write(.+)"))
        self.import_prefix = settings.get("import_prefix", "imp.")
        self.opaque_symbols = frozenset(settings.get("opaque_symbols", ()))
        self.opaque_suffixes = tuple(settings.get("opaque_suffixes", ()))
        self.fixed_terminals: Dict[str, str] = dict(settings.get("fixed_terminals", {}))
        raw_append = settings.get("raw_append", {})
        self.raw_append_symbol = raw_append.get("symbol")
        self.raw_length_register = raw_append.get("length_register", "rdx")
        self.ignored_calls: Set[str] = set()

    def to_terminal(self, call: StaticCall) -> Optional[RegularExpression]:
        symbol = call.symbol
        name = symbol.demname or symbol.name
        match = self.type_pattern.fullmatch(name)
        if match:
            return Terminal(readable_type_name(match.group(1)))
        if name in self.fixed_terminals:
            return Terminal(self.fixed_terminals[name])
        if self.raw_append_symbol and name == self.raw_append_symbol:
            length = call.state.get(self.raw_length_register)
            return Terminal(f"RAW({'?' if length is None else length})")
        self.ignored_calls.add(name)
        return None

    def should_enter_call(self, call: StaticCall) -> bool:
        name = call.symbol.name
        if name.startswith(self.import_prefix):
            return False
        if name in self.opaque_symbols or (self.opaque_suffixes and name.endswith(self.opaque_suffixes)):
            return False
        return self.to_terminal(call) is None

    def visit_function(self, address: int) -> RegularExpression:
        return extract_function_signature(self.backend, self.info, address, self.should_enter_call, self.to_terminal)

    def _signature_or_error(self, name: str, address: int) -> str:
        try:
            return to_string(self.visit_function(address))
        except Exception as e:
            logger.warning(f"Failure in {name}: {e}", exc_info=True)
            return ERROR

    def collect(self) -> Signatures:
        signatures = Signatures()
        for symbol in self.info.symbols:
            match = self.packet_pattern.fullmatch(symbol.demname)
            if match:
                name = match.group(1)
                signatures.packets[name] = self._signature_or_error(name, symbol.vaddr)

            match = self.type_pattern.fullmatch(symbol.demname)
            if match:
                name = match.group(1)
                signatures.types[name] = self._signature_or_error(name, symbol.vaddr)

        for ignored in sorted(self.ignored_calls):
            logger.info(f"Ignoring call symbol {ignored}")
        return signatures


def collect_packet_ids(backend, info: Optional[BinaryInfo] = None,
                       settings: Optional[Dict[str, Any]] = None) -> Dict[str, int]:
    """
    Packet IDs by packet name, found by emulating each ``getId`` function to
    its last instruction and reading the return register.
    """
    info = info or BinaryInfo(backend)
    if settings is None:
        settings = get_config().get("packet_ids", {})
    pattern = re.compile(settings.get("id_pattern", r"(.*)Packet::getId"))
    stack_base = settings.get("vm_stack_base", 0x2000)
    stack_size = settings.get("vm_stack_size", 0xffff)

    packet_ids: Dict[str, int] = {}
    backend.enable_io_cache()
    for symbol in info.symbols:
        match = pattern.fullmatch(symbol.demname)
        if not match:
            continue
        name = match.group(1)
        logger.debug(f"Reading packet ID for {name}")

        backend.analyze_function(symbol.vaddr)
        end = backend.function_end(symbol.vaddr)
        backend.vm_init()
        backend.vm_init_stack(stack_base, stack_size)
        try:
            backend.vm_init_pc(symbol.vaddr)
            backend.vm_step_until(end)
            packet_ids[name] = backend.vm_get_register(info.architecture.return_register) & 0xffffffff
        finally:
            backend.vm_deinit_stack(stack_base, stack_size)
            backend.vm_deinit()
    return packet_ids


def build_report(signatures: Signatures, packet_ids: Optional[Dict[str, int]] = None) -> Dict[str, Any]:
    """JSON-ready report: packets sorted by numeric ID (unknown IDs first) and type signatures."""
    packet_ids = packet_ids or {}
    names = sorted(set(packet_ids) | set(signatures.packets),
                   key=lambda n: (packet_ids.get(n) is not None, packet_ids.get(n) or 0, n))
    packets = []
    for name in names:
        packet_id = packet_ids.get(name)
        packets.append({
            "id": None if packet_id is None else f"{packet_id:02x}",
            "name": name,
            "signature": signatures.packets.get(name),
        })
    return {"packets": packets, "types": dict(sorted(signatures.types.items()))}
