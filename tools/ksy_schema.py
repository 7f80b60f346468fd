#!/usr/bin/env python3
"""
ksy_schema.py - Typed model for KSY-style binary format descriptions

Converts a YAML document (or an already-parsed mapping) into immutable
dataclasses the interpreter walks. Only the parts needed to decode are
checked; unknown keys are ignored.

Usage:
    from ksy_schema import load_schema, load_schema_file

    schema = load_schema('''
    meta:
      id: sample
      endian: be
    seq:
      - id: magic
        type: str
        size: 4
        encoding: ASCII
    ''')
    schema = load_schema_file(Path('formats/sample.ksy'))

Schema shape:
    meta:  {id, endian: le|be, encoding}
    seq:   [field, ...]
    types: {name: {seq, types, endian | meta: {endian}}}

Field shape:
    id, type (name or {switch-on, cases}), size, size-eos, pos, if,
    encoding, repeat (expr|eos|until), repeat-expr, repeat-until,
    terminator, include, consume, doc
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml

from ksy_errors import SchemaError


Expr = Union[int, float, str]

DEFAULT_CASE = '_'
ROOT_TYPE_NAME = '__root__'


class Endian(Enum):
    BIG = 'be'
    LITTLE = 'le'

    @property
    def byteorder(self) -> str:
        return 'big' if self is Endian.BIG else 'little'


_ENDIAN_ALIASES = {
    'be': Endian.BIG, 'big': Endian.BIG,
    'le': Endian.LITTLE, 'little': Endian.LITTLE,
}


def parse_endian(value: Any, where: str = 'schema') -> Optional[Endian]:
    """Parse an endianness declaration, None when absent."""
    if value is None:
        return None
    if isinstance(value, Endian):
        return value
    if isinstance(value, str) and value.strip().lower() in _ENDIAN_ALIASES:
        return _ENDIAN_ALIASES[value.strip().lower()]
    raise SchemaError(f"Unsupported endian '{value}' in {where}")


@dataclass(frozen=True)
class SwitchType:
    """Type chosen at decode time from a discriminant and a case table."""
    switch_on: Expr
    cases: Tuple[Tuple[Any, str], ...]

    @property
    def default(self) -> Optional[str]:
        for key, type_name in self.cases:
            if key == DEFAULT_CASE:
                return type_name
        return None


@dataclass(frozen=True)
class RepeatSpec:
    """Repetition of a field: expr (count), eos (to end), until (condition)."""
    kind: str
    expr: Optional[Expr] = None


@dataclass(frozen=True)
class FieldSpec:
    """One entry of a field sequence."""
    id: str
    type: Union[str, SwitchType, None] = None
    size: Optional[Expr] = None
    size_eos: bool = False
    pos: Optional[Expr] = None
    if_expr: Optional[Expr] = None
    encoding: Optional[str] = None
    repeat: Optional[RepeatSpec] = None
    terminator: Optional[int] = None
    include: bool = False
    consume: bool = True
    doc: Optional[str] = None


@dataclass(frozen=True)
class TypeDefinition:
    """A named, reusable field sequence with its own nested type table."""
    seq: Tuple[FieldSpec, ...] = ()
    types: Mapping[str, 'TypeDefinition'] = field(
        default_factory=lambda: MappingProxyType({}))
    endian: Optional[Endian] = None


@dataclass(frozen=True)
class SchemaMeta:
    id: Optional[str] = None
    endian: Optional[Endian] = None
    encoding: Optional[str] = None


@dataclass(frozen=True)
class Schema:
    """Root of a format description."""
    meta: SchemaMeta = field(default_factory=SchemaMeta)
    seq: Optional[Tuple[FieldSpec, ...]] = None
    types: Mapping[str, TypeDefinition] = field(
        default_factory=lambda: MappingProxyType({}))

    @property
    def root_id(self) -> str:
        return self.meta.id or 'root'

    def root_sequence(self) -> Optional[Tuple[FieldSpec, ...]]:
        """Top-level seq, else the seq of the type named like meta.id."""
        if self.seq is not None:
            return self.seq
        if self.meta.id and self.meta.id in self.types:
            return self.types[self.meta.id].seq
        return None

    def root_type(self) -> Optional[TypeDefinition]:
        """Synthetic type wrapping the root sequence."""
        seq = self.root_sequence()
        if seq is None:
            return None
        types = self.types
        endian = self.meta.endian
        if self.seq is None:
            # root borrowed from types[meta.id]; its nested names shadow
            borrowed = self.types[self.meta.id]
            types = MappingProxyType({**self.types, **borrowed.types})
            endian = borrowed.endian or endian
        return TypeDefinition(seq=seq, types=types, endian=endian)


# =============================================================================
# Loading
# =============================================================================

def _optional_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _parse_switch(raw: Mapping[str, Any], field_id: str) -> SwitchType:
    cases = raw.get('cases')
    if not isinstance(cases, Mapping):
        raise SchemaError(f"Switch type of field '{field_id}' needs a cases mapping")
    pairs = []
    for key, type_name in cases.items():
        if not isinstance(type_name, str):
            raise SchemaError(
                f"Switch case {key!r} of field '{field_id}' must name a type")
        pairs.append((key, type_name))
    return SwitchType(switch_on=raw['switch-on'], cases=tuple(pairs))


def _parse_repeat(raw: Mapping[str, Any], field_id: str) -> Optional[RepeatSpec]:
    kind = raw.get('repeat')
    if kind is None:
        return None
    if kind == 'expr':
        expr = raw.get('repeat-expr', raw.get('repeatExpr'))
        if expr is None:
            raise SchemaError(f"Field '{field_id}' uses repeat: expr without repeat-expr")
        return RepeatSpec('expr', expr)
    if kind == 'until':
        expr = raw.get('repeat-until', raw.get('repeatUntil'))
        if expr is None:
            raise SchemaError(f"Field '{field_id}' uses repeat: until without repeat-until")
        return RepeatSpec('until', expr)
    if kind == 'eos':
        return RepeatSpec('eos')
    raise SchemaError(f"Unsupported repeat '{kind}' on field '{field_id}'")


def parse_field(raw: Any) -> FieldSpec:
    """Build a FieldSpec from one seq entry."""
    if not isinstance(raw, Mapping):
        raise SchemaError(f"Field entry must be a mapping, got {type(raw).__name__}")
    field_id = raw.get('id')
    if field_id is None or field_id == '':
        raise SchemaError("Field entry is missing 'id'")
    field_id = str(field_id)

    raw_type = raw.get('type')
    if raw_type is None or isinstance(raw_type, str):
        ftype = raw_type
    elif isinstance(raw_type, Mapping) and 'switch-on' in raw_type:
        ftype = _parse_switch(raw_type, field_id)
    else:
        raise SchemaError(f"Unsupported type definition for field {field_id}")

    terminator = raw.get('terminator')
    if terminator is not None and not (isinstance(terminator, int) and 0 <= terminator <= 255):
        raise SchemaError(f"Terminator of field '{field_id}' must be a byte value")

    return FieldSpec(
        id=field_id,
        type=ftype,
        size=raw.get('size'),
        size_eos=bool(raw.get('size-eos', False)),
        pos=raw.get('pos'),
        if_expr=raw.get('if'),
        encoding=_optional_str(raw.get('encoding')),
        repeat=_parse_repeat(raw, field_id),
        terminator=terminator,
        include=bool(raw.get('include', False)),
        consume=bool(raw.get('consume', True)),
        doc=raw.get('doc'),
    )


def _parse_seq(raw: Any, where: str) -> Tuple[FieldSpec, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise SchemaError(f"seq of {where} must be a list")
    return tuple(parse_field(entry) for entry in raw)


def _parse_types(raw: Any, where: str) -> Mapping[str, TypeDefinition]:
    if raw is None:
        return MappingProxyType({})
    if not isinstance(raw, Mapping):
        raise SchemaError(f"types of {where} must be a mapping")
    return MappingProxyType({
        str(name): parse_type(body, str(name)) for name, body in raw.items()
    })


def parse_type(raw: Any, name: str) -> TypeDefinition:
    """Build a TypeDefinition (recursively, for nested types)."""
    if raw is None:
        raw = {}
    if not isinstance(raw, Mapping):
        raise SchemaError(f"Type '{name}' must be a mapping")
    meta = raw.get('meta') or {}
    endian = raw.get('endian', meta.get('endian') if isinstance(meta, Mapping) else None)
    return TypeDefinition(
        seq=_parse_seq(raw.get('seq'), f"type '{name}'"),
        types=_parse_types(raw.get('types'), f"type '{name}'"),
        endian=parse_endian(endian, f"type '{name}'"),
    )


def schema_from_dict(raw: Mapping[str, Any]) -> Schema:
    """Build a Schema from a parsed YAML/JSON document."""
    meta_raw = raw.get('meta') or {}
    if not isinstance(meta_raw, Mapping):
        raise SchemaError("meta must be a mapping")
    meta = SchemaMeta(
        id=str(meta_raw['id']) if meta_raw.get('id') is not None else None,
        endian=parse_endian(meta_raw.get('endian'), 'meta'),
        encoding=_optional_str(meta_raw.get('encoding')),
    )
    seq_raw = raw.get('seq')
    return Schema(
        meta=meta,
        seq=_parse_seq(seq_raw, 'schema') if seq_raw is not None else None,
        types=_parse_types(raw.get('types'), 'schema'),
    )


def load_schema(source: Union[Schema, Mapping[str, Any], str, bytes]) -> Schema:
    """
    Load a schema from YAML text, a mapping, or pass a Schema through.

    Raises:
        SchemaError: empty source, invalid YAML, or a document that is not
            a mapping.
    """
    if isinstance(source, Schema):
        return source
    if isinstance(source, Mapping):
        return schema_from_dict(source)
    if isinstance(source, bytes):
        try:
            source = source.decode('utf-8')
        except UnicodeDecodeError as e:
            raise SchemaError(f"Schema source is not UTF-8: {e}") from e
    if not isinstance(source, str):
        raise SchemaError(f"Cannot load schema from {type(source).__name__}")
    if not source.strip():
        raise SchemaError("Schema source is empty")
    try:
        parsed = yaml.safe_load(source)
    except yaml.YAMLError as e:
        raise SchemaError(f"Invalid YAML: {e}") from e
    if not isinstance(parsed, Mapping):
        raise SchemaError("Invalid KSY content")
    return schema_from_dict(parsed)


def load_schema_file(path: Path) -> Schema:
    """Load a schema from a .ksy/.yaml file."""
    with open(path, 'r', encoding='utf-8') as f:
        return load_schema(f.read())


def schema_type_names(schema: Schema) -> List[str]:
    """All declared type names, nested ones qualified with ::."""
    names: List[str] = []

    def walk(types: Mapping[str, TypeDefinition], prefix: str) -> None:
        for name, tdef in types.items():
            qualified = f"{prefix}::{name}" if prefix else name
            names.append(qualified)
            walk(tdef.types, qualified)

    walk(schema.types, '')
    return names


def describe(schema: Schema) -> Dict[str, Any]:
    """Short summary: id, default endian, root fields and type names."""
    root = schema.root_sequence() or ()
    return {
        'id': schema.root_id,
        'endian': (schema.meta.endian or Endian.BIG).value,
        'encoding': schema.meta.encoding,
        'fields': [f.id for f in root],
        'types': schema_type_names(schema),
    }
