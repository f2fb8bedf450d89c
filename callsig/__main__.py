import argparse
import json
import sys

from callsig import configure_logging
from callsig.backends.dispatcher import open_backend
from callsig.core.binary_info import BinaryInfo
from callsig.signatures import SerializerSignatureExtractor, build_report, collect_packet_ids


def parse_arguments(argv=None):
    parser = argparse.ArgumentParser(
        prog="callsig",
        description="Extract call signatures of packet and type serializers from a binary")
    parser.add_argument("target", type=str, help="Path to the binary, or URL of an r2 web server")
    parser.add_argument("--engine", type=str, default=None, choices=["radare2", "rizin"],
                        help="Disassembler backend (default: $CALLSIG_BACKEND or config.yaml)")
    parser.add_argument("--no-ids", action="store_true", help="Skip packet ID emulation")
    parser.add_argument("--log-level", type=str, default=None, help="Logging level (default: config.yaml)")
    return parser.parse_args(argv)


def main(argv=None):
    """Main entry point."""
    args = parse_arguments(argv)
    configure_logging(args.log_level)

    with open_backend(args.target, args.engine) as backend:
        info = BinaryInfo(backend)
        signatures = SerializerSignatureExtractor(backend, info).collect()
        packet_ids = {} if args.no_ids else collect_packet_ids(backend, info)

    json.dump(build_report(signatures, packet_ids), sys.stdout, indent=2)
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
