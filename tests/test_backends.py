import json
import os
import unittest
from unittest.mock import patch

from callsig.backends import dispatcher
from callsig.backends.base import BackendError
from callsig.backends.dispatcher import close_backends, open_backend, resolve_engine
from callsig.backends.radare2_backend import Radare2Backend
from callsig.backends.rizin_backend import RizinBackend
from callsig.config import set_config
from callsig.libs.architecture import Architecture

# -----------------------------------------------------------------------------
# A fake r2pipe/rzpipe session that records every command and answers the few
# JSON commands the backends issue.
# -----------------------------------------------------------------------------
INSTRUCTION = {
    "offset": 0x1000, "size": 5, "type": "call", "opcode": "call 0x2000",
    "esil": "rip,8,rsp,-=,rsp,=[8],0x2000,rip,=", "jump": 0x2000,
    "fcn_addr": 0x1000, "fcn_last": 0x1040, "refs": [{"addr": 0x2000}],
}


class PipeMock:
    def __init__(self, responses=None):
        self.commands = []
        self.closed = False
        self.responses = {
            "isj": json.dumps([
                {"name": "main", "demname": "", "vaddr": 0x1000, "paddr": 0x1000, "size": 64, "type": "FUNC"},
                {"name": "__ZN3Foo5writeEv", "demname": "Foo::write", "vaddr": 0x2000},
            ]),
            "irj": json.dumps([{"name": "__stack_chk_guard", "vaddr": 0x3000, "paddr": 0x3000, "type": "SET_64"}]),
            "ij": json.dumps({"core": {"file": "a.out"}, "bin": {"arch": "x86", "bits": 64, "endian": "little"}}),
            "pxj 4 @ 0x3000": "[1,2,3,4]",
            "aer rax": "0x2a\n",
            "aezv rax": "0x2a\n",
        }
        self.responses.update(responses or {})

    def cmd(self, command):
        self.commands.append(command)
        if command.startswith("pdj 1 @ "):
            return self.responses.get(command, json.dumps([INSTRUCTION]))
        return self.responses.get(command, "")

    def quit(self):
        self.closed = True


class BackendTest(unittest.TestCase):
    def setUp(self):
        self.pipe = PipeMock()
        patcher = patch("r2pipe.open", return_value=self.pipe)
        self.addCleanup(patcher.stop)
        self.r2_open = patcher.start()
        patcher = patch("rzpipe.open", return_value=self.pipe)
        self.addCleanup(patcher.stop)
        self.rz_open = patcher.start()

    def test_open(self):
        backend = Radare2Backend("/bin/true", analyze=False)
        self.r2_open.assert_called_once_with("/bin/true")
        self.assertEqual(self.pipe.commands, ["e scr.color=0"])

    def test_open_with_analysis(self):
        Radare2Backend("/bin/true", analyze=True)
        self.assertEqual(self.pipe.commands, ["e scr.color=0; aaa"])

    def test_disassemble(self):
        backend = Radare2Backend("/bin/true", analyze=False)
        insn = backend.disassemble(0x1000)
        self.assertEqual(self.pipe.commands[-1], "pdj 1 @ 0x1000")
        self.assertEqual(insn.type, "call")
        self.assertEqual(insn.jump, 0x2000)
        self.assertEqual(insn.fcn_last, 0x1040)
        self.assertFalse(insn.is_illegal())

    def test_disassemble_in_instruction_set(self):
        backend = Radare2Backend("/bin/true", analyze=False)
        backend.disassemble(0x1000, Architecture.THUMB)
        self.assertEqual(self.pipe.commands[-1], "pdj 1 @ 0x1000 @a:arm:16")
        backend.disassemble(0x1000, Architecture.X86)
        self.assertEqual(self.pipe.commands[-1], "pdj 1 @ 0x1000")

    def test_disassemble_malformed(self):
        self.pipe.responses["pdj 1 @ 0x10"] = "[]"
        self.pipe.responses["pdj 1 @ 0x20"] = "{not json"
        self.pipe.responses["pdj 1 @ 0x30"] = ""
        backend = Radare2Backend("/bin/true", analyze=False)
        with self.assertRaises(ValueError):
            backend.disassemble(0x10)
        with self.assertRaises(ValueError):
            backend.disassemble(0x20)
        with self.assertRaises(BackendError):
            backend.disassemble(0x30)

    def test_listings(self):
        backend = Radare2Backend("/bin/true", analyze=False)
        symbols = backend.list_symbols()
        self.assertEqual([s.name for s in symbols], ["main", "__ZN3Foo5writeEv"])
        self.assertEqual(symbols[1].demname, "Foo::write")
        relocations = backend.list_relocations()
        self.assertEqual(relocations[0].name, "__stack_chk_guard")
        self.assertEqual(backend.file_info().bin.arch, "x86")
        self.assertEqual(backend.read_bytes(0x3000, 4), b"\x01\x02\x03\x04")

    def test_function_end(self):
        backend = Radare2Backend("/bin/true", analyze=False)
        backend.analyze_function(0x1000)
        self.assertEqual(self.pipe.commands[-2:], ["s 0x1000", "af"])
        self.assertEqual(backend.function_end(0x1000), 0x1040)

    def test_vm_commands(self):
        backend = Radare2Backend("/bin/true", analyze=False)
        backend.vm_init()
        backend.vm_init_stack(0x2000, 0xffff)
        backend.vm_init_pc(0x1000)
        backend.vm_step_until(0x1040)
        self.assertEqual(backend.vm_get_register("rax"), 42)
        backend.vm_deinit_stack(0x2000, 0xffff)
        backend.vm_deinit()
        self.assertEqual(self.pipe.commands[1:], [
            "aei", "aeim 0x2000 0xffff", "aepc 0x1000", "aesu 0x1040", "aer rax",
            "aeim- 0x2000 0xffff", "aei-",
        ])

    def test_rizin_vm_commands(self):
        backend = RizinBackend("/bin/true", analyze=False)
        self.rz_open.assert_called_once_with("/bin/true")
        backend.vm_init()
        backend.vm_init_pc(0x1000)
        backend.vm_step_until(0x1040)
        self.assertEqual(backend.vm_get_register("rax"), 42)
        self.assertEqual(self.pipe.commands[1:], ["aezi", "aezv PC 0x1000", "aezsu 0x1040", "aezv rax"])

    def test_missing_register(self):
        backend = Radare2Backend("/bin/true", analyze=False)
        with self.assertRaises(BackendError):
            backend.vm_get_register("rbx")

    def test_remote_responses_are_unescaped(self):
        self.pipe.responses["isj"] = json.dumps([{"name": "vector&lt;int&gt;", "vaddr": 1}])
        remote = Radare2Backend("http://127.0.0.1:9090", analyze=False)
        self.assertEqual(remote.list_symbols()[0].name, "vector<int>")
        local = Radare2Backend("/bin/true", analyze=False)
        self.assertEqual(local.list_symbols()[0].name, "vector&lt;int&gt;")

    def test_close(self):
        with Radare2Backend("/bin/true", analyze=False) as backend:
            pass
        self.assertTrue(self.pipe.closed)
        with self.assertRaises(BackendError):
            backend.cmd("i")
        backend.close()


class DispatcherTest(unittest.TestCase):
    def setUp(self):
        patcher = patch.dict(os.environ, {}, clear=False)
        self.addCleanup(patcher.stop)
        patcher.start()
        os.environ.pop(dispatcher.BACKEND_ENV, None)
        set_config({"backend": {"default": "radare2", "analyze": False}})
        self.addCleanup(set_config, None)

    def test_hint_wins(self):
        os.environ[dispatcher.BACKEND_ENV] = "radare2"
        self.assertEqual(resolve_engine("rizin"), "rizin")
        self.assertEqual(resolve_engine("RZ"), "rz")

    def test_environment_variable(self):
        os.environ[dispatcher.BACKEND_ENV] = "rizin"
        self.assertEqual(resolve_engine(), "rizin")

    def test_config_default(self):
        set_config({"backend": {"default": "rizin"}})
        self.assertEqual(resolve_engine(), "rizin")
        set_config({})
        self.assertEqual(resolve_engine(), "radare2")

    def test_unknown_engine(self):
        with self.assertLogs("callsig.backends.dispatcher", level="WARNING"):
            self.assertEqual(resolve_engine("ghidra"), "radare2")

    def test_open_backend(self):
        pipe = PipeMock()
        with patch("rzpipe.open", return_value=pipe):
            backend = open_backend("/bin/true", "rizin")
        self.assertIsInstance(backend, RizinBackend)

    def test_cached_sessions(self):
        pipe = PipeMock()
        with patch("r2pipe.open", return_value=pipe) as r2_open:
            first = open_backend("/bin/true", cached=True)
            second = open_backend("/bin/true", cached=True)
        self.assertIs(first, second)
        r2_open.assert_called_once_with("/bin/true")
        close_backends()
        self.assertTrue(pipe.closed)
        self.assertEqual(dispatcher._backend_cache, {})


if __name__ == "__main__":
    unittest.main()
