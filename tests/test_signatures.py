import unittest
from unittest.mock import Mock, call

from fakes import ScriptedBackend

from callsig.backends.base import BackendError
from callsig.backends.models import Symbol
from callsig.config import DEFAULT_CONFIG_PATH, load_config
from callsig.core.binary_info import BinaryInfo
from callsig.core.call import StaticCall
from callsig.libs.architecture import Architecture
from callsig.libs.esil_interpreter import EsilState
from callsig.signatures import (
    ERROR,
    SerializerSignatureExtractor,
    Signatures,
    build_report,
    collect_packet_ids,
    readable_type_name,
    remove_template_components,
)

RAW_APPEND = "imp._ZNSt3__112basic_stringIcNS_11char_traitsIcEENS_9allocatorIcEEE6appendEPKcm"


def settings(section):
    return load_config(DEFAULT_CONFIG_PATH)[section]


def static_call(name, demname="", **registers):
    return StaticCall(Symbol(name=name, demname=demname, vaddr=0x10), EsilState(registers))


class TypeNameTest(unittest.TestCase):
    def test_remove_template_components(self):
        self.assertEqual(remove_template_components("vector<int,allocator<pair<int,int>>>", "allocator"),
                         "vector<int>")
        self.assertEqual(remove_template_components("vector<int>", "allocator"), "vector<int>")

    def test_readable_type_name(self):
        self.assertEqual(readable_type_name("Type<std::__1::vector<int,std::__1::allocator<int>>>"), "vector<int>")
        self.assertEqual(readable_type_name("std::__1::unique_ptr<Tag,std::__1::default_delete<Tag>>"),
                         "unique_ptr<Tag>")
        self.assertEqual(readable_type_name("VarInt"), "VarInt")


class TerminalMappingTest(unittest.TestCase):
    def setUp(self):
        self.extractor = SerializerSignatureExtractor(Mock(), BinaryInfo(symbols=[], relocations=[],
                                                                         architecture=Architecture.X86),
                                                      settings=settings("signatures"))

    def terminal(self, call):
        terminal = self.extractor.to_terminal(call)
        return None if terminal is None else terminal.value

    def test_type_serializer(self):
        self.assertEqual(self.terminal(static_call("x", "BinaryStream::writeVarInt")), "VarInt")

    def test_fixed_terminal(self):
        self.assertEqual(self.terminal(static_call("x", "Tag::writeNamedTag")), "NamedTag")

    def test_raw_append(self):
        self.assertEqual(self.terminal(static_call(RAW_APPEND, rdx=4)), "RAW(4)")
        self.assertEqual(self.terminal(static_call(RAW_APPEND)), "RAW(?)")

    def test_other_calls_are_ignored(self):
        self.assertIsNone(self.terminal(static_call("imp.strlen")))
        self.assertIn("imp.strlen", self.extractor.ignored_calls)

    def test_should_enter_call(self):
        self.assertTrue(self.extractor.should_enter_call(static_call("__ZN6Helper4callEv", "Helper::call")))
        self.assertFalse(self.extractor.should_enter_call(static_call("imp.memcpy")))
        self.assertFalse(self.extractor.should_enter_call(static_call("__ZNK4Item8toStringEv")))
        self.assertFalse(self.extractor.should_enter_call(
            static_call("__ZNK12ItemInstance22getStrippedNetworkItemEv")))
        self.assertFalse(self.extractor.should_enter_call(static_call("x", "BinaryStream::writeString")))


class SerializerSignatureExtractorTest(unittest.TestCase):
    def setUp(self):
        backend = ScriptedBackend()
        backend.declare(0x1000, "__ZNK9FooPacket5writeER12BinaryStream", "FooPacket::write")
        backend.declare(0x2000, "__ZN12BinaryStream11writeVarIntEi", "BinaryStream::writeVarInt")
        backend.declare(0x3000, "__ZN6Helper4callEv", "Helper::call")
        backend.declare(0x4000, "__ZN12BinaryStream11writeStringERKNSt3__112basic_string",
                        "BinaryStream::writeString")
        backend.declare(0x5000, "imp.strlen")
        backend.declare(0x6000, "__ZNK9BarPacket5writeER12BinaryStream", "BarPacket::write")

        a = backend.call(0x1000, 0x2000)
        a = backend.je(a, 0x1011)
        a = backend.call(a, 0x3000)
        a = backend.call(a, 0x5000)
        backend.ret(a)

        backend.ret(backend.call(0x3000, 0x4000))
        backend.ret(0x2000)
        backend.ret(0x4000)

        self.backend = backend
        self.extractor = SerializerSignatureExtractor(backend, backend.info(), settings=settings("signatures"))

    def test_collect(self):
        with self.assertLogs("callsig.signatures", level="INFO") as logs:
            signatures = self.extractor.collect()
        self.assertEqual(signatures.packets, {"Foo": "VarInt String?", "Bar": ERROR})
        self.assertEqual(signatures.types, {"VarInt": "", "String": ""})
        self.assertTrue(any("Failure in Bar" in line for line in logs.output))
        self.assertTrue(any("Ignoring call symbol imp.strlen" in line for line in logs.output))

    def test_visit_function(self):
        self.assertEqual(str(self.extractor.visit_function(0x3000)), "String")


class PacketIdTest(unittest.TestCase):
    def setUp(self):
        self.backend = Mock()
        self.backend.function_end.return_value = 0x110
        self.backend.vm_get_register.return_value = 0x100000042
        self.info = BinaryInfo(self.backend, symbols=[
            Symbol(name="__ZNK9FooPacket5getIdEv", demname="FooPacket::getId", vaddr=0x100),
            Symbol(name="__ZNK9FooPacket5writeER12BinaryStream", demname="FooPacket::write", vaddr=0x200),
        ], relocations=[], architecture=Architecture.X86)

    def test_collect_packet_ids(self):
        ids = collect_packet_ids(self.backend, self.info, settings("packet_ids"))
        self.assertEqual(ids, {"Foo": 0x42})
        self.backend.enable_io_cache.assert_called_once_with()
        self.backend.analyze_function.assert_called_once_with(0x100)
        self.backend.vm_init_stack.assert_called_once_with(0x2000, 0xffff)
        self.backend.vm_init_pc.assert_called_once_with(0x100)
        self.backend.vm_step_until.assert_called_once_with(0x110)
        self.backend.vm_get_register.assert_called_once_with("rax")

    def test_vm_is_torn_down_on_failure(self):
        self.backend.vm_step_until.side_effect = BackendError("pipe closed")
        with self.assertRaises(BackendError):
            collect_packet_ids(self.backend, self.info, settings("packet_ids"))
        self.assertEqual(self.backend.mock_calls[-2:], [call.vm_deinit_stack(0x2000, 0xffff), call.vm_deinit()])


class ReportTest(unittest.TestCase):
    def test_build_report(self):
        signatures = Signatures(packets={"Foo": "VarInt", "Bar": ERROR}, types={"VarInt": "", "String": ""})
        report = build_report(signatures, {"Foo": 0x1, "Baz": 0x20})
        self.assertEqual(report["packets"], [
            {"id": None, "name": "Bar", "signature": ERROR},
            {"id": "01", "name": "Foo", "signature": "VarInt"},
            {"id": "20", "name": "Baz", "signature": None},
        ])
        self.assertEqual(list(report["types"]), ["String", "VarInt"])

    def test_ids_sort_numerically(self):
        report = build_report(Signatures(packets={"A": "VarInt", "B": "VarInt"}), {"A": 0x100, "B": 0xff})
        self.assertEqual([p["id"] for p in report["packets"]], ["ff", "100"])

    def test_build_report_without_ids(self):
        report = build_report(Signatures(packets={"Foo": "VarInt"}))
        self.assertEqual(report, {"packets": [{"id": None, "name": "Foo", "signature": "VarInt"}], "types": {}})


if __name__ == "__main__":
    unittest.main()
