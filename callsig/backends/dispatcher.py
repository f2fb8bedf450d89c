import logging
import os
from typing import Dict, Optional, Tuple, Type

from callsig.config import get_config

from .base import DisassemblerBackend
from .radare2_backend import Radare2Backend
from .rizin_backend import RizinBackend

logger = logging.getLogger(__name__)

BACKEND_ENV = "CALLSIG_BACKEND"

ENGINES: Dict[str, Type[DisassemblerBackend]] = {
    "radare2": Radare2Backend,
    "r2": Radare2Backend,
    "rizin": RizinBackend,
    "rz": RizinBackend,
}

# open sessions by (engine, target)
_backend_cache: Dict[Tuple[str, str], DisassemblerBackend] = {}


def resolve_engine(engine_hint: Optional[str] = None) -> str:
    """
    Engine name from, in order: ``engine_hint``, the ``CALLSIG_BACKEND``
    environment variable, ``backend.default`` in the configuration.
    Unknown names fall back to radare2.
    """
    if engine_hint:
        key = engine_hint.lower()
    else:
        key = os.getenv(BACKEND_ENV, "").lower()
        if not key:
            key = str(get_config().get("backend", {}).get("default", "radare2")).lower()
    if key not in ENGINES:
        logger.warning(f"Unknown backend '{key}', using radare2")
        key = "radare2"
    return key


def open_backend(target: str, engine_hint: Optional[str] = None, cached: bool = False) -> DisassemblerBackend:
    """Open a disassembler session for ``target`` (a path or an r2 web server URL)."""
    key = resolve_engine(engine_hint)
    if not cached:
        return ENGINES[key](target)
    cache_key = (ENGINES[key].name, target)
    if cache_key not in _backend_cache:
        _backend_cache[cache_key] = ENGINES[key](target)
    return _backend_cache[cache_key]


def close_backends():
    while _backend_cache:
        _, backend = _backend_cache.popitem()
        backend.close()
