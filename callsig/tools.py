"""
Tool entry points shared by the MCP server: pydantic input models and plain
functions returning ``{"result": ..., "error": ...}`` dictionaries.
"""

import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from callsig.backends.dispatcher import open_backend
from callsig.core.binary_info import BinaryInfo
from callsig.core.call import StaticCall
from callsig.libs.regex import Terminal, to_string
from callsig.libs.regex_parser import RegexParseError, parse_regex
from callsig.libs.regex_simplifier import simplify
from callsig.signatures import (
    SerializerSignatureExtractor,
    build_report,
    collect_packet_ids,
    extract_function_signature,
)

logger = logging.getLogger(__name__)


class ExtractSignaturesToolInput(BaseModel):
    binary_path: str = Field(..., description="The path to the binary file, or the URL of an r2 web server.")
    engine: Optional[str] = Field(None, description="Backend to use: \"radare2\" or \"rizin\".")
    include_packet_ids: bool = Field(True, description="Whether to emulate getId functions to recover packet IDs.")


class FunctionSignatureToolInput(BaseModel):
    binary_path: str = Field(..., description="The path to the binary file, or the URL of an r2 web server.")
    function: str = Field(..., description="Symbol name, demangled name or address (e.g. \"0x1000\") of the function.")
    inline_calls: bool = Field(False, description="Whether to inline calls to non-imported functions.")
    engine: Optional[str] = Field(None, description="Backend to use: \"radare2\" or \"rizin\".")


class SimplifyRegexToolInput(BaseModel):
    regex: str = Field(..., description="Regular expression in callsig syntax, e.g. \"a a* a\".")
    terminal_pattern: Optional[str] = Field(None, description="Python regex matching one terminal (default \\w+).")


def resolve_function_address(info: BinaryInfo, function: str) -> int:
    symbol = info.symbol_for_name(function)
    if symbol is None:
        symbol = next((s for s in info.symbols if s.demname == function), None)
    if symbol is not None:
        return symbol.vaddr
    try:
        return int(function, 0)
    except ValueError:
        raise ValueError(f"Unknown function {function}") from None


def extract_signatures(binary_path: str, engine: Optional[str] = None,
                       include_packet_ids: bool = True) -> Dict[str, Any]:
    with open_backend(binary_path, engine) as backend:
        info = BinaryInfo(backend)
        signatures = SerializerSignatureExtractor(backend, info).collect()
        packet_ids = collect_packet_ids(backend, info) if include_packet_ids else {}
    return {"result": build_report(signatures, packet_ids)}


def get_function_signature(binary_path: str, function: str, inline_calls: bool = False,
                           engine: Optional[str] = None) -> Dict[str, Any]:
    with open_backend(binary_path, engine) as backend:
        info = BinaryInfo(backend)
        try:
            address = resolve_function_address(info, function)
        except ValueError as e:
            return {"result": None, "error": str(e)}

        def enter_call(call: StaticCall) -> bool:
            return inline_calls and not call.symbol.name.startswith("imp.")

        def to_terminal(call: StaticCall):
            return Terminal(call.symbol.demname or call.symbol.name)

        signature = extract_function_signature(backend, info, address, enter_call, to_terminal)
    return {"result": to_string(signature), "address": address}


def simplify_regex(regex: str, terminal_pattern: Optional[str] = None) -> Dict[str, Any]:
    try:
        parsed = parse_regex(regex, terminal_pattern)
    except RegexParseError as e:
        return {"result": None, "error": str(e)}
    return {"result": to_string(simplify(parsed))}
