#!/usr/bin/env python3
"""
ksy_interpreter.py - Runtime interpreter for KSY-style structure descriptions

Walks a schema against a byte buffer and produces a tree of DecodedNode
objects, each annotating the byte range that produced its value.

Usage:
    from ksy_interpreter import KsyInterpreter

    interpreter = KsyInterpreter(schema_yaml)
    result = interpreter.decode(buffer)

    if result.success:
        print(result.data['magic'])
        for node in result.flat_nodes:
            print(node.id, node.range.start, node.range.length)
    else:
        print(result.errors[0].message)

Supports:
    - Integers u1/s1/u2/s2/u4/s4/u8/s8 (optional le/be suffix)
    - Floats f4/f8 (optional le/be suffix)
    - str / strz with encodings, bytes, untyped byte spans
    - size, size-eos, terminator/include/consume
    - Nested and lexically scoped custom types, switch-on types
    - pos relocation, if conditions, repeat expr/eos/until
"""

import codecs
import logging
import re
import struct
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from ksy_context import ParseContext, ParseEnvironment
from ksy_errors import (
    BoundsError, DecodeError, Diagnostics, EncodingError, ExpressionError,
    ParseError, SchemaError, TypeResolutionError,
)
from ksy_expression import evaluate, is_number, require_int
from ksy_schema import (
    DEFAULT_CASE, ROOT_TYPE_NAME, Endian, FieldSpec, Schema, SwitchType,
    TypeDefinition, load_schema,
)


logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 64
DEFAULT_MAX_REPEAT = 1_000_000
FALLBACK_ENCODING = 'latin-1'


# =============================================================================
# Output model
# =============================================================================

@dataclass(frozen=True)
class ByteRange:
    start: int
    length: int

    @property
    def end(self) -> int:
        return self.start + self.length

    def contains(self, offset: int) -> bool:
        return self.start <= offset < self.end

    def to_dict(self) -> Dict[str, int]:
        return {'start': self.start, 'length': self.length}


@dataclass(frozen=True)
class DecodedNode:
    """One entry of the output tree."""
    id: str
    name: str
    type_name: str
    range: ByteRange
    endian: Optional[str] = None
    value: Any = None
    children: Tuple['DecodedNode', ...] = ()
    attributes: Dict[str, Any] = field(default_factory=dict)
    errors: Tuple[ParseError, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            'id': self.id,
            'name': self.name,
            'type': self.type_name,
            'range': self.range.to_dict(),
        }
        if self.endian is not None:
            out['endian'] = self.endian
        if not self.children:
            out['value'] = jsonable(self.value)
        else:
            out['children'] = [c.to_dict() for c in self.children]
        if self.attributes:
            out['attributes'] = jsonable(self.attributes)
        if self.errors:
            out['errors'] = [e.to_dict() for e in self.errors]
        return out


@dataclass
class DecodeResult:
    """Result of decoding a buffer."""
    root: Optional[DecodedNode] = None
    flat_nodes: List[DecodedNode] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    errors: List[ParseError] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.root is not None and len(self.errors) == 0

    @property
    def data(self) -> Mapping[str, Any]:
        if self.root is None or not isinstance(self.root.value, Mapping):
            return {}
        return self.root.value

    @property
    def bytes_consumed(self) -> int:
        return self.root.range.end if self.root is not None else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'root': self.root.to_dict() if self.root is not None else None,
            'data': jsonable(self.data),
            'warnings': list(self.warnings),
            'errors': [e.to_dict() for e in self.errors],
        }


def jsonable(value: Any) -> Any:
    """Convert decoded values (bytes, nested scopes) for JSON output."""
    if isinstance(value, (bytes, bytearray)):
        return list(value)
    if isinstance(value, Mapping):
        return {str(k): jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    return value


def flatten(node: Optional[DecodedNode], acc: List[DecodedNode]) -> List[DecodedNode]:
    """Pre-order list of a node and all its descendants."""
    if node is None:
        return acc
    acc.append(node)
    for child in node.children:
        flatten(child, acc)
    return acc


@dataclass
class FieldOutcome:
    node: DecodedNode
    next_offset: int
    value: Any


# =============================================================================
# Primitive kinds
# =============================================================================

class PrimitiveKind(Enum):
    INT = 'int'
    FLOAT = 'float'
    STR = 'str'
    STRZ = 'strz'
    BYTES = 'bytes'


@dataclass(frozen=True)
class Primitive:
    kind: PrimitiveKind
    width: int = 0
    signed: bool = False
    endian: Optional[Endian] = None


_NUMERIC_RE = re.compile(r'^([us])([1248])(le|be)?$|^f([48])(le|be)?$')


def classify_type(type_name: str) -> Optional[Primitive]:
    """Map a type name to a primitive kind, None for custom types."""
    name = type_name.strip().lower()
    if name == 'str':
        return Primitive(PrimitiveKind.STR)
    if name == 'strz':
        return Primitive(PrimitiveKind.STRZ)
    if name == 'bytes':
        return Primitive(PrimitiveKind.BYTES)
    match = _NUMERIC_RE.match(name)
    if not match:
        return None
    if match.group(1):
        endian = Endian(match.group(3)) if match.group(3) else None
        return Primitive(PrimitiveKind.INT, int(match.group(2)),
                         match.group(1) == 's', endian)
    endian = Endian(match.group(5)) if match.group(5) else None
    return Primitive(PrimitiveKind.FLOAT, int(match.group(4)), True, endian)


# =============================================================================
# Interpreter
# =============================================================================

class KsyInterpreter:
    """
    Runtime interpreter for structure descriptions.

    The schema is loaded once; decode() can be called any number of times,
    each call with its own environment.
    """

    def __init__(self, schema: Union[Schema, Mapping[str, Any], str],
                 max_depth: int = DEFAULT_MAX_DEPTH,
                 max_repeat: int = DEFAULT_MAX_REPEAT,
                 default_encoding: str = 'utf-8'):
        self.max_depth = max_depth
        self.max_repeat = max_repeat
        self.default_encoding = default_encoding
        self.schema: Optional[Schema] = None
        self.schema_error: Optional[DecodeError] = None
        try:
            self.schema = load_schema(schema)
        except SchemaError as e:
            self.schema_error = e

    def decode(self, buffer: Union[bytes, bytearray, memoryview]) -> DecodeResult:
        """
        Decode a buffer using the schema.

        Any unrecoverable failure aborts the whole decode: the result then
        has no root, no nodes and exactly one error.
        """
        diagnostics = Diagnostics()
        if self.schema is None:
            diagnostics.error(self.schema_error or SchemaError("No schema loaded"))
            return DecodeResult(warnings=diagnostics.warnings, errors=diagnostics.errors)

        env = ParseEnvironment(
            buffer=bytes(buffer),
            schema=self.schema,
            diagnostics=diagnostics,
            default_encoding=self.schema.meta.encoding or self.default_encoding,
        )
        root_type = self.schema.root_type()
        if root_type is None:
            diagnostics.error(SchemaError("Schema must define top-level seq or type"))
            return DecodeResult(warnings=diagnostics.warnings, errors=diagnostics.errors)

        root_field = FieldSpec(id=self.schema.root_id, type=ROOT_TYPE_NAME)
        ctx = ParseContext(
            path=(),
            offset=0,
            endian=self.schema.meta.endian or Endian.BIG,
        )
        try:
            outcome = self._decode_type(root_field, env, ctx, ROOT_TYPE_NAME, root_type)
        except DecodeError as e:
            logger.debug("Decode aborted at %s: %s", e.node_path, e.message)
            diagnostics.error(e)
            return DecodeResult(warnings=diagnostics.warnings, errors=diagnostics.errors)

        return DecodeResult(
            root=outcome.node,
            flat_nodes=flatten(outcome.node, []),
            warnings=diagnostics.warnings,
            errors=diagnostics.errors,
        )

    # -------------------------------------------------------------------------
    # Type resolution
    # -------------------------------------------------------------------------

    def _resolve_type_name(self, field_spec: FieldSpec, env: ParseEnvironment,
                           ctx: ParseContext) -> str:
        """Resolve a static or switch type reference to a type name."""
        ftype = field_spec.type
        if isinstance(ftype, str):
            return ftype
        if not isinstance(ftype, SwitchType):
            raise TypeResolutionError(
                f"Unsupported type definition for field {field_spec.id}")

        discriminant = evaluate(ftype.switch_on, env, ctx)
        if discriminant is not None:
            for key, type_name in ftype.cases:
                if key == DEFAULT_CASE:
                    continue
                case_value = self._case_value(key, env, ctx)
                if case_value is not None and case_value == discriminant:
                    logger.debug("Switch on %r = %s selects %s",
                                 ftype.switch_on, discriminant, type_name)
                    return type_name
        if ftype.default is not None:
            return ftype.default
        if discriminant is None:
            raise TypeResolutionError(
                f"Unable to resolve switch type for field {field_spec.id}: "
                f"discriminant {ftype.switch_on!r} is unresolved")
        raise TypeResolutionError(
            f"Unable to resolve switch type for field {field_spec.id}: "
            f"no case for {discriminant}")

    def _case_value(self, key: Any, env: ParseEnvironment, ctx: ParseContext) -> Any:
        if isinstance(key, bool):
            return int(key)
        if is_number(key):
            return key
        text = str(key).strip()
        if not text or text == DEFAULT_CASE:
            return None
        value = evaluate(text, env, ctx)
        if value is not None:
            return value
        try:
            number = float(text)
        except ValueError:
            return None
        return int(number) if number.is_integer() else number

    def _lookup_type(self, type_name: str,
                     ctx: ParseContext) -> Tuple[TypeDefinition, Tuple[TypeDefinition, ...]]:
        """
        Find a custom type, innermost enclosing type first, then outward.

        The search starts from the chain of types in which the current type
        is defined, not from the chain of calls that reached it.

        Returns:
            (type definition, chain of definitions from the root down to it)
        """
        parts = type_name.split('::')
        chain = ctx.type_chain
        found = None
        for depth in range(len(chain) - 1, -1, -1):
            if parts[0] in chain[depth].types:
                found = chain[depth].types[parts[0]]
                chain = chain[:depth + 1] + (found,)
                break
        if found is None:
            raise TypeResolutionError(f"Unknown type: {type_name}")
        for part in parts[1:]:
            if part not in found.types:
                raise TypeResolutionError(f"Unknown type: {type_name}")
            found = found.types[part]
            chain = chain + (found,)
        return found, chain

    # -------------------------------------------------------------------------
    # Field decoding
    # -------------------------------------------------------------------------

    def _decode_field(self, field_spec: FieldSpec, env: ParseEnvironment,
                      ctx: ParseContext) -> FieldOutcome:
        """Decode one field (all repetitions), honoring its pos override."""
        position = evaluate(field_spec.pos, env, ctx)
        if position is not None:
            ctx = ctx.at(require_int(position, env, ctx, 'pos', ctx.node_id(field_spec.id)))
        if field_spec.repeat is not None:
            return self._decode_repeated(field_spec, env, ctx)
        return self._decode_single(field_spec, env, ctx, field_spec.id)

    def _decode_single(self, field_spec: FieldSpec, env: ParseEnvironment,
                       ctx: ParseContext, name: str) -> FieldOutcome:
        node_path = ctx.node_id(name)
        try:
            if field_spec.type is None:
                return self._read_bytes(field_spec, env, ctx, name)

            type_name = self._resolve_type_name(field_spec, env, ctx)
            primitive = classify_type(type_name)
            if primitive is None:
                return self._decode_type(field_spec, env, ctx, type_name, name=name)
            if primitive.kind is PrimitiveKind.INT:
                return self._read_integer(field_spec, env, ctx, name, type_name, primitive)
            if primitive.kind is PrimitiveKind.FLOAT:
                return self._read_float(field_spec, env, ctx, name, type_name, primitive)
            if primitive.kind is PrimitiveKind.BYTES:
                return self._read_bytes(field_spec, env, ctx, name)
            return self._read_string(field_spec, env, ctx, name, primitive)
        except DecodeError as e:
            e.with_path(node_path)
            raise

    def _check_bounds(self, env: ParseEnvironment, offset: int, length: int) -> None:
        if offset < 0:
            raise BoundsError(f"Negative read offset {offset}")
        if length < 0:
            raise BoundsError(f"Negative read size {length} at offset {offset}")
        if offset + length > env.size:
            raise BoundsError(
                f"Reading past end of buffer at offset {offset}: need {length} bytes, "
                f"{max(0, env.size - offset)} available")

    def _read_integer(self, field_spec: FieldSpec, env: ParseEnvironment,
                      ctx: ParseContext, name: str, type_name: str,
                      primitive: Primitive) -> FieldOutcome:
        offset = ctx.offset
        self._check_bounds(env, offset, primitive.width)
        endian = primitive.endian or ctx.endian
        data = env.buffer[offset:offset + primitive.width]
        value = int.from_bytes(data, endian.byteorder, signed=primitive.signed)
        node = DecodedNode(
            id=ctx.node_id(name),
            name=name,
            type_name=type_name.lower(),
            range=ByteRange(offset, primitive.width),
            endian=endian.value,
            value=value,
            attributes=self._attributes(field_spec),
        )
        return FieldOutcome(node, offset + primitive.width, value)

    def _read_float(self, field_spec: FieldSpec, env: ParseEnvironment,
                    ctx: ParseContext, name: str, type_name: str,
                    primitive: Primitive) -> FieldOutcome:
        offset = ctx.offset
        self._check_bounds(env, offset, primitive.width)
        endian = primitive.endian or ctx.endian
        fmt = ('<' if endian is Endian.LITTLE else '>') + ('f' if primitive.width == 4 else 'd')
        value = struct.unpack(fmt, env.buffer[offset:offset + primitive.width])[0]
        node = DecodedNode(
            id=ctx.node_id(name),
            name=name,
            type_name=type_name.lower(),
            range=ByteRange(offset, primitive.width),
            endian=endian.value,
            value=value,
            attributes=self._attributes(field_spec),
        )
        return FieldOutcome(node, offset + primitive.width, value)

    def _read_span(self, field_spec: FieldSpec, env: ParseEnvironment,
                   ctx: ParseContext, what: str,
                   terminator: Optional[int] = None) -> Tuple[bytes, int]:
        """
        Read the raw bytes of a sized field.

        Returns:
            (payload bytes, number of bytes consumed from the buffer)
        """
        offset = ctx.offset
        node_path = ctx.node_id(field_spec.id)
        if field_spec.terminator is not None:
            terminator = field_spec.terminator

        if field_spec.size is not None:
            size = require_int(field_spec.size, env, ctx, 'size', node_path)
            self._check_bounds(env, offset, size)
            data = env.buffer[offset:offset + size]
            if terminator is not None:
                cut = data.find(bytes([terminator]))
                if cut >= 0:
                    data = data[:cut + 1] if field_spec.include else data[:cut]
            return data, size

        if field_spec.size_eos:
            self._check_bounds(env, offset, 0)
            return env.buffer[offset:], max(0, env.size - offset)

        if terminator is not None:
            self._check_bounds(env, offset, 0)
            cut = env.buffer.find(bytes([terminator]), offset)
            if cut < 0:
                raise BoundsError(
                    f"Terminator 0x{terminator:02x} not found after offset {offset}")
            data = env.buffer[offset:cut + 1] if field_spec.include else env.buffer[offset:cut]
            consumed = cut - offset + (1 if field_spec.consume else 0)
            return data, consumed

        raise ExpressionError(f"Field {field_spec.id} requires size for {what}")

    def _read_bytes(self, field_spec: FieldSpec, env: ParseEnvironment,
                    ctx: ParseContext, name: str) -> FieldOutcome:
        what = 'bytes type' if field_spec.type is not None else 'untyped data'
        data, consumed = self._read_span(field_spec, env, ctx, what)
        node = DecodedNode(
            id=ctx.node_id(name),
            name=name,
            type_name='bytes',
            range=ByteRange(ctx.offset, consumed),
            value=data,
            attributes=self._attributes(field_spec),
        )
        return FieldOutcome(node, ctx.offset + consumed, data)

    def _read_string(self, field_spec: FieldSpec, env: ParseEnvironment,
                     ctx: ParseContext, name: str, primitive: Primitive) -> FieldOutcome:
        terminator = 0 if primitive.kind is PrimitiveKind.STRZ else None
        data, consumed = self._read_span(field_spec, env, ctx, 'string type', terminator)
        encoding = field_spec.encoding or env.default_encoding
        text, problems = self._decode_text(data, encoding, ctx.node_id(name))
        for problem in problems:
            env.diagnostics.warn(f"{problem.node_path}: {problem.message}")
        attributes = self._attributes(field_spec)
        attributes['encoding'] = encoding
        node = DecodedNode(
            id=ctx.node_id(name),
            name=name,
            type_name=primitive.kind.value,
            range=ByteRange(ctx.offset, consumed),
            value=text,
            attributes=attributes,
            errors=tuple(ParseError.from_exception(p) for p in problems),
        )
        return FieldOutcome(node, ctx.offset + consumed, text)

    def _decode_text(self, data: bytes, encoding: str,
                     node_path: str) -> Tuple[str, List[EncodingError]]:
        """Decode text, falling back to permissive decoding instead of failing."""
        problems: List[EncodingError] = []
        try:
            codec = codecs.lookup(encoding.strip().lower())
        except LookupError:
            problems.append(EncodingError(
                f"Unknown encoding '{encoding}', decoded as {FALLBACK_ENCODING}", node_path))
            return data.decode(FALLBACK_ENCODING), problems
        try:
            return codec.decode(data, 'strict')[0], problems
        except UnicodeDecodeError as e:
            problems.append(EncodingError(
                f"Invalid {codec.name} data ({e.reason}), replacement characters used",
                node_path))
            return codec.decode(data, 'replace')[0], problems

    def _attributes(self, field_spec: FieldSpec) -> Dict[str, Any]:
        attributes: Dict[str, Any] = {}
        if field_spec.doc:
            attributes['doc'] = field_spec.doc
        return attributes

    # -------------------------------------------------------------------------
    # Repetition
    # -------------------------------------------------------------------------

    def _decode_repeated(self, field_spec: FieldSpec, env: ParseEnvironment,
                         ctx: ParseContext) -> FieldOutcome:
        """Decode a repeated field into an array node."""
        repeat = field_spec.repeat
        node_path = ctx.node_id(field_spec.id)
        count = None
        if repeat.kind == 'expr':
            count = require_int(repeat.expr, env, ctx, 'repeat-expr', node_path)
            if count < 0:
                raise ExpressionError(f"Negative repeat count {count}", node_path)
            if count > self.max_repeat:
                raise ExpressionError(
                    f"Repeat count {count} exceeds limit {self.max_repeat}", node_path)

        start = cursor = ctx.offset
        items: List[DecodedNode] = []
        values: List[Any] = []
        while True:
            if count is not None and len(items) >= count:
                break
            if repeat.kind == 'eos' and cursor >= env.size:
                break
            index = len(items)
            outcome = self._decode_single(
                field_spec, env, ctx.at(cursor), f"{field_spec.id}[{index}]")
            items.append(outcome.node)
            values.append(outcome.value)
            consumed = outcome.next_offset - cursor
            cursor = outcome.next_offset
            if repeat.kind == 'until':
                until_ctx = replace(ctx, offset=cursor,
                                    scope={**ctx.scope, '_': outcome.value, '_index': index})
                if evaluate(repeat.expr, env, until_ctx):
                    break
            if count is None and consumed <= 0:
                env.diagnostics.warn(
                    f"{node_path}: element {index} consumed no bytes, repetition stopped")
                break

        if items:
            element_type = items[0].type_name
        elif isinstance(field_spec.type, str):
            element_type = field_spec.type
        else:
            element_type = 'bytes' if field_spec.type is None else 'switch'
        attributes = self._attributes(field_spec)
        attributes['repeat'] = repeat.kind
        node = DecodedNode(
            id=node_path,
            name=field_spec.id,
            type_name=f"{element_type}[]",
            range=ByteRange(start, max(0, cursor - start)),
            value=tuple(values),
            children=tuple(items),
            attributes=attributes,
        )
        return FieldOutcome(node, cursor, node.value)

    # -------------------------------------------------------------------------
    # Custom types
    # -------------------------------------------------------------------------

    def _decode_type(self, field_spec: FieldSpec, env: ParseEnvironment,
                     ctx: ParseContext, type_name: str,
                     type_def: Optional[TypeDefinition] = None,
                     name: Optional[str] = None) -> FieldOutcome:
        """Decode a custom type's field sequence into a branch node."""
        name = name or field_spec.id
        if type_def is None:
            type_def, chain = self._lookup_type(type_name, ctx)
        else:
            chain = ctx.type_chain + (type_def,)
        if ctx.depth >= self.max_depth:
            raise SchemaError(
                f"Maximum nesting depth {self.max_depth} exceeded in type '{type_name}'")

        endian = type_def.endian or ctx.endian
        path = ctx.path + (name,)
        scope: Dict[str, Any] = {}
        children: List[DecodedNode] = []
        start = cursor = ctx.offset

        for child in type_def.seq:
            step = ParseContext(path=path, offset=cursor, endian=endian, scope=scope,
                                type_chain=chain, depth=ctx.depth + 1)
            if child.if_expr is not None and not evaluate(child.if_expr, env, step):
                logger.debug("Skipping %s: condition %r is false",
                             step.node_id(child.id), child.if_expr)
                continue
            outcome = self._decode_field(child, env, step)
            children.append(outcome.node)
            scope[child.id] = outcome.value
            env.record(outcome.node.id, outcome.value)
            cursor = outcome.next_offset

        value = MappingProxyType(scope)
        label = env.schema.root_id if type_name == ROOT_TYPE_NAME else type_name
        node = DecodedNode(
            id=ctx.node_id(name),
            name=name,
            type_name=label,
            range=ByteRange(start, max(0, cursor - start)),
            endian=endian.value,
            value=value,
            children=tuple(children),
            attributes=self._attributes(field_spec),
        )
        return FieldOutcome(node, cursor, value)


def decode_buffer(schema: Union[Schema, Mapping[str, Any], str],
                  buffer: Union[bytes, bytearray, memoryview]) -> DecodeResult:
    """Convenience function: decode a buffer with a schema."""
    return KsyInterpreter(schema).decode(buffer)
