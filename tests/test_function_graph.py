import re
import unittest

from fakes import ScriptedBackend

from callsig.core.call import DYNAMIC, NO_RETURN, StaticCall
from callsig.core.function_graph import DecodeError, InstructionCache, build_function_graph
from callsig.core.instruction_parser import UnsupportedInstructionError
from callsig.core.position import Position
from callsig.libs.architecture import Architecture
from callsig.libs.regex import NOTHING, Terminal
from callsig.libs.regex_parser import parse_regex
from callsig.libs.regex_simplifier import simplify

TERMINAL_PATTERN = re.compile(r"(DYN|\w+\[((\w+=[0-9a-z]+,)*\w+=[0-9a-z]+)?])")


class FunctionGraphTest(unittest.TestCase):
    def setUp(self):
        self.backend = ScriptedBackend()

    def signature(self, terminal_calls, architecture=Architecture.X86, start=0):
        info = self.backend.info(architecture)
        automaton, state = build_function_graph(
            self.backend, info, lambda call: call.symbol.name not in terminal_calls,
            Position(start, architecture), no_return_symbols=["imp.__assert_rtn"])

        def to_terminal(call):
            if isinstance(call, StaticCall):
                registers = ",".join(f"{k}={v}" for k, v in sorted(call.state.items())
                                     if k != architecture.program_counter)
                return Terminal(f"{call.symbol.name}[{registers}]")
            if call is DYNAMIC:
                return Terminal("DYN")
            if call is NO_RETURN:
                return NOTHING
            raise AssertionError(call)

        return simplify(automaton.to_regex(state).map(to_terminal))

    def assertSignature(self, expected, terminal_calls, **kwargs):
        self.assertEqual(self.signature(terminal_calls, **kwargs), parse_regex(expected, TERMINAL_PATTERN))

    def test_empty(self):
        self.backend.ret(0)
        self.assertSignature("", set())

    def test_simple_call(self):
        self.backend.declare(100, "abc")
        self.backend.ret(self.backend.call(0, 100))
        self.assertSignature("abc[]", {"abc"})

    def test_loop_branch_up(self):
        self.backend.declare(100, "abc")
        a = self.backend.call(0, 100)
        a = self.backend.je(a, 0)
        self.backend.ret(a)
        self.assertSignature("abc[]+", {"abc"})

    def test_loop_branch_down(self):
        self.backend.declare(100, "abc")
        self.backend.je(0, 11, size=6)
        self.backend.call(6, 100)
        self.backend.ret(11)
        self.assertSignature("abc[]?", {"abc"})

    def test_simple_parameter(self):
        self.backend.declare(100, "abc")
        a = self.backend.mov(0, "rax", 0)
        a = self.backend.call(a, 100)
        self.backend.ret(a)
        self.assertSignature("abc[rax=0]", {"abc"})

    def test_simple_parameter_with_revisit(self):
        self.backend.declare(100, "abc")
        a = self.backend.mov(0, "rax", 0)
        loop = a
        a = self.backend.call(a, 100)
        a = self.backend.mov(a, "rax", 1)
        a = self.backend.je(a, loop)
        self.backend.ret(a)
        self.assertSignature("abc[]+", {"abc"})

    def test_dynamic_call_and_normal_call(self):
        self.backend.declare(100, "abc")
        a = self.backend.call_register(0, "ebx")
        a = self.backend.call(a, 100)
        self.backend.ret(a)
        self.assertSignature("DYN abc[]", {"abc"})

    def test_tail_dynamic_call(self):
        self.backend.declare(100, "abc")
        a = self.backend.put(0, "ujmp", 2, "rbx,rip,=")
        a = self.backend.call(a, 100)
        self.backend.ret(a)
        self.assertSignature("DYN", {"abc"})

    def test_enter_call(self):
        self.backend.declare(100, "abc")
        a = self.backend.call(0, 50)
        a = self.backend.call(a, 100)
        self.backend.ret(a)
        self.backend.jmp(50, 100)
        self.assertSignature("abc[]{2}", {"abc"})

    def test_tail_jump_into_entered_call(self):
        self.backend.declare(100, "abc")
        self.backend.declare(200, "helper")
        a = self.backend.call(0, 100)
        a = self.backend.mov(a, "rax", 7)
        self.backend.jmp(a, 200)
        self.backend.ret(self.backend.call(200, 100))
        self.assertSignature("abc[] abc[rax=7]", {"abc"})
        self.assertIn(200, self.backend.disassembled)

    def test_noreturn_call(self):
        self.backend.declare(100, "imp.__assert_rtn")
        self.backend.call(0, 100)
        self.assertSignature("∅", set())

    def test_noreturn_jmp(self):
        self.backend.declare(100, "imp.__assert_rtn")
        self.backend.jmp(0, 100)
        self.assertSignature("∅", set())

    def test_indirect_call_predicted(self):
        self.backend.declare(100, "abc")
        a = self.backend.mov(0, "eax", 100, size=5)
        a = self.backend.call_register(a, "eax")
        self.backend.ret(a)
        self.assertSignature("abc[rax=100]", {"abc"})

    def test_indirect_call_through_memory(self):
        self.backend.declare(100, "abc")
        a = self.backend.mov(0, "eax", 0, size=5)
        a = self.backend.put(a, "mov", 8, "50,eax,+,[4],rax,=")
        a = self.backend.call_register(a, "rax")
        self.backend.ret(a)
        self.backend.write(50, bytes([0x64, 0, 0, 0]))
        self.assertSignature("abc[rax=100]", {"abc"})

    def test_arithmetic_jump(self):
        self.backend.declare(100, "abc")
        a = self.backend.put(0, "add", 4, "92,pc,+,pc,=")
        self.backend.put(a, "ret", 4, "lr,pc,=")
        self.assertSignature("abc[]", {"abc"}, architecture=Architecture.ARM)

    def test_illegal_jump(self):
        self.backend.ret(self.backend.call(0, 100))
        self.assertSignature("DYN", set())

    def test_recursive_call(self):
        self.backend.declare(0, "rec")
        self.backend.declare(100, "abc")
        a = self.backend.call(0, 100)
        a = self.backend.je(a, 20)
        a = self.backend.call(a, 0)
        self.backend.ret(20)
        self.assertEqual(a, 12)
        self.assertSignature("abc[]+", {"abc"})

    def test_conditional_return(self):
        self.backend.declare(100, "abc")
        self.backend.put(0, "cret", 1, "zf,?{,rsp,[8],rip,=,8,rsp,+=,}")
        self.backend.ret(self.backend.call(1, 100))
        self.assertSignature("abc[]?", {"abc"})

    def test_instructions_are_decoded_once(self):
        self.backend.declare(100, "abc")
        a = self.backend.call(0, 100)
        a = self.backend.je(a, 0)
        self.backend.ret(a)
        self.signature({"abc"})
        self.assertEqual(sorted(self.backend.disassembled), [0, 5, 7])

    def test_unsupported_instruction(self):
        self.backend.put(0, "rjmp", 2, "rax,rip,=")
        with self.assertRaises(UnsupportedInstructionError):
            self.signature(set())

    def test_illegal_start_instruction(self):
        with self.assertRaises(UnsupportedInstructionError):
            self.signature(set())


class FlakyBackend(ScriptedBackend):
    def __init__(self, failures, error=OSError):
        super().__init__()
        self.failures = failures
        self.error = error

    def disassemble(self, address, architecture=None):
        if self.failures > 0:
            self.failures -= 1
            raise self.error("broken pipe")
        return super().disassemble(address, architecture)


class InstructionCacheTest(unittest.TestCase):
    def test_transient_failures_are_retried(self):
        backend = FlakyBackend(failures=2)
        backend.ret(0)
        cache = InstructionCache(backend, attempts=3)
        insn = cache.get(Position(0, Architecture.X86), lambda: "f")
        self.assertEqual(insn.type, "ret")

    def test_retries_are_bounded(self):
        backend = FlakyBackend(failures=3)
        backend.ret(0)
        cache = InstructionCache(backend, attempts=3)
        with self.assertRaises(OSError):
            cache.get(Position(0, Architecture.X86), lambda: "f")

    def test_malformed_response(self):
        backend = FlakyBackend(failures=1, error=ValueError)
        cache = InstructionCache(backend, attempts=3)
        with self.assertRaises(DecodeError) as ctx:
            cache.get(Position(0x10, Architecture.X86), lambda: "main->helper")
        self.assertIn("x86/0x10", str(ctx.exception))
        self.assertIn("main->helper", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
