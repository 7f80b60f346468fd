#!/usr/bin/env python3
"""
ksy_context.py - Per-decode environment and per-call parse context

ParseEnvironment lives for exactly one decode() call and owns the
computed-value table. ParseContext is rebuilt for every recursive step.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Tuple

from ksy_errors import Diagnostics, SchemaError
from ksy_schema import Endian, Schema, TypeDefinition


def make_node_id(path: Tuple[str, ...]) -> str:
    return '.'.join(p for p in path if p) or 'root'


@dataclass
class ParseEnvironment:
    """Shared state of one decode call."""
    buffer: bytes
    schema: Schema
    values: Dict[str, Any] = field(default_factory=dict)
    diagnostics: Diagnostics = field(default_factory=Diagnostics)
    default_encoding: str = 'utf-8'

    @property
    def size(self) -> int:
        return len(self.buffer)

    def record(self, path: str, value: Any) -> None:
        """Store a decoded value. Each path is written at most once."""
        if path in self.values:
            raise SchemaError(f"Field '{path}' decoded twice", node_path=path)
        self.values[path] = value


@dataclass(frozen=True)
class ParseContext:
    """Position of one recursive step in the decode walk."""
    path: Tuple[str, ...]
    offset: int
    endian: Endian
    scope: Dict[str, Any] = field(default_factory=dict)
    type_chain: Tuple[TypeDefinition, ...] = ()
    depth: int = 0

    def at(self, offset: int) -> 'ParseContext':
        return replace(self, offset=offset)

    def node_id(self, name: Optional[str] = None) -> str:
        if name is None:
            return make_node_id(self.path)
        return make_node_id(self.path + (name,))

    @property
    def root_path(self) -> Optional[str]:
        return self.path[0] if self.path else None
