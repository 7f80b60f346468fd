#!/usr/bin/env python3
"""
ksy_decode.py - Decode a binary file with a KSY schema from the command line

Usage:
    python tools/ksy_decode.py format.ksy data.bin
    python tools/ksy_decode.py format.ksy data.bin --json
    python tools/ksy_decode.py format.ksy data.bin --flat
    python tools/ksy_decode.py format.ksy data.bin --offset 0x10
    python tools/ksy_decode.py format.ksy --hex "54 45 53 54 00 01"
    python tools/ksy_decode.py format.ksy --describe

Exit status:
    0  decode succeeded
    1  decode failed (schema, type, expression or bounds error)
    2  input files could not be read
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional

# Add tools to path
sys.path.insert(0, str(Path(__file__).parent))
from ksy_interpreter import DecodedNode, DecodeResult, KsyInterpreter, jsonable
from ksy_schema import describe, load_schema
from ksy_session import node_at


def parse_payload(payload: str) -> bytes:
    """Parse a hex payload, tolerating spaces, commas and 0x prefixes."""
    clean = payload.replace(' ', '').replace('0x', '').replace(',', '')
    return bytes.fromhex(clean)


def parse_offset(text: str) -> int:
    return int(text, 0)


def format_value(value: Any, limit: int = 16) -> str:
    if isinstance(value, (bytes, bytearray)):
        shown = ' '.join(f"{b:02X}" for b in value[:limit])
        return f"[{shown}{' ...' if len(value) > limit else ''}]"
    if isinstance(value, str):
        return repr(value)
    return str(value)


def format_node(node: DecodedNode, indent: int = 0) -> List[str]:
    """Render a node and its subtree as indented text lines."""
    pad = '  ' * indent
    span = f"[{node.range.start:#06x} +{node.range.length}]"
    if node.children:
        lines = [f"{pad}{node.name}: {node.type_name} {span}"]
        for child in node.children:
            lines.extend(format_node(child, indent + 1))
        return lines
    line = f"{pad}{node.name}: {node.type_name} {span} = {format_value(node.value)}"
    if node.errors:
        line += f"  ! {node.errors[0].message}"
    return [line]


def print_result(result: DecodeResult, flat: bool = False):
    """Print decode results to console."""
    for warning in result.warnings:
        print(f"WARNING: {warning}", file=sys.stderr)
    if not result.success:
        for error in result.errors:
            where = f" ({error.node_path})" if error.node_path else ""
            print(f"ERROR: {error.kind}: {error.message}{where}", file=sys.stderr)
        return

    if flat:
        for node in result.flat_nodes:
            print(f"{node.range.start:#06x} {node.range.length:6d}  {node.id}  {node.type_name}")
        return
    for line in format_node(result.root):
        print(line)


def describe_schema(path: str, as_json: bool = False) -> int:
    """Print a schema summary. Returns the exit status."""
    try:
        schema = load_schema(Path(path).read_text(encoding='utf-8'))
    except OSError as e:
        print(f"Error loading input: {e}", file=sys.stderr)
        return 2
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    summary = describe(schema)
    if as_json:
        print(json.dumps(summary, indent=2))
        return 0
    print(f"Schema: {summary['id']} (endian {summary['endian']})")
    if summary['encoding']:
        print(f"Encoding: {summary['encoding']}")
    print(f"Fields: {', '.join(summary['fields']) or '(none)'}")
    for name in summary['types']:
        print(f"  type {name}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description='Decode binary data with a KSY structure description'
    )
    parser.add_argument('schema', help='Path to schema (.ksy / YAML) file')
    parser.add_argument('data', nargs='?', help='Path to binary file')
    parser.add_argument('--hex', dest='hex_payload',
                        help='Decode a hex payload instead of a file')
    parser.add_argument('--json', action='store_true',
                        help='Output result as JSON')
    parser.add_argument('--flat', action='store_true',
                        help='List all nodes in pre-order instead of a tree')
    parser.add_argument('--offset', type=parse_offset,
                        help='Show the innermost node covering this byte offset')
    parser.add_argument('--describe', action='store_true',
                        help='Summarize the schema instead of decoding')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Enable debug logging')
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(asctime)s - %(levelname)s - %(name)s - %(message)s',
    )

    if args.describe:
        return describe_schema(args.schema, as_json=args.json)

    if args.data is None and args.hex_payload is None:
        parser.error('either a data file or --hex is required')

    try:
        schema_source = Path(args.schema).read_text(encoding='utf-8')
        if args.hex_payload is not None:
            buffer = parse_payload(args.hex_payload)
        else:
            buffer = Path(args.data).read_bytes()
    except (OSError, ValueError) as e:
        print(f"Error loading input: {e}", file=sys.stderr)
        return 2

    result = KsyInterpreter(schema_source).decode(buffer)

    if args.offset is not None:
        if not result.success:
            print_result(result)
            return 1
        node = node_at(result.flat_nodes, args.offset)
        if node is None:
            print(f"No node covers offset {args.offset:#x}", file=sys.stderr)
            return 1
        if args.json:
            print(json.dumps(node.to_dict(), indent=2))
        else:
            print(f"{node.id}: {node.type_name} [{node.range.start:#06x} +{node.range.length}]"
                  f" = {format_value(node.value)}")
        return 0

    if args.json:
        print(json.dumps(jsonable(result.to_dict()), indent=2))
    else:
        print_result(result, flat=args.flat)

    return 0 if result.success else 1


if __name__ == '__main__':
    sys.exit(main())
