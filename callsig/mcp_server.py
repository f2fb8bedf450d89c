"""
MCP server exposing signature extraction over a stdio transport.

Run with ``python -m callsig.mcp_server``; requires the ``mcp`` extra.
"""

from typing import Any, Dict, Optional

from fastmcp import FastMCP

from callsig import configure_logging
from callsig.tools import (
    extract_signatures as extract_signatures_impl,
    get_function_signature as get_function_signature_impl,
    simplify_regex as simplify_regex_impl,
)

mcp = FastMCP(
    "callsig",
    "Recover call signatures of functions in native binaries using radare2 or rizin."
)


@mcp.tool()
async def extract_signatures(binary_path: str, engine: Optional[str] = None,
                             include_packet_ids: bool = True) -> Dict[str, Any]:
    """
    Extract the signatures of every packet and type serializer in a binary.

    Args:
        binary_path: The absolute path to the binary file, or the URL of an r2 web server.
        engine: "radare2" or "rizin"; defaults to the configured backend.
        include_packet_ids: If True, emulates each Packet::getId to recover the packet IDs.

    Returns:
        A dictionary whose "result" holds "packets" (id, name, signature) and "types".
    """
    return extract_signatures_impl(binary_path, engine, include_packet_ids)


@mcp.tool()
async def extract_function_signature(binary_path: str, function: str, inline_calls: bool = False,
                                     engine: Optional[str] = None) -> Dict[str, Any]:
    """
    Compute the call signature of one function: a regular expression over the
    functions it calls, e.g. "init (read | write)* close".

    Args:
        binary_path: The absolute path to the binary file.
        function: Symbol name, demangled name or address of the function.
        inline_calls: If True, calls to non-imported functions are followed instead of listed.
        engine: "radare2" or "rizin"; defaults to the configured backend.
    """
    return get_function_signature_impl(binary_path, function, inline_calls, engine)


@mcp.tool()
async def simplify_regex(regex: str, terminal_pattern: Optional[str] = None) -> Dict[str, Any]:
    """
    Simplify a regular expression, e.g. "a a* a" -> "a{2,}".

    Args:
        regex: Expression using "|", juxtaposition, "?", "*", "+", "{m}", "{m,}", "{m,n}", "ε" and "∅".
        terminal_pattern: Python regex matching a single terminal; defaults to \\w+.
    """
    return simplify_regex_impl(regex, terminal_pattern)


if __name__ == "__main__":
    configure_logging()
    mcp.run(transport='stdio')
