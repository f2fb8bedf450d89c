import html

import r2pipe

from .base import DisassemblerBackend


class Radare2Backend(DisassemblerBackend):
    """
    radare2 session over r2pipe. ``target`` is a local binary (spawned as an
    ``r2 -q0`` pipe) or the URL of an ``r2 -c=H`` web server.
    """

    name = "radare2"

    def _open_pipe(self, target: str):
        return r2pipe.open(target)

    @property
    def remote(self) -> bool:
        return self.target.startswith(("http://", "https://"))

    def cmd(self, command: str) -> str:
        result = super().cmd(command)
        # the web server escapes its plain text responses
        return html.unescape(result) if self.remote else result
