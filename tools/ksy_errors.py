#!/usr/bin/env python3
"""
ksy_errors.py - Error taxonomy and diagnostics for the KSY interpreter

Every decode failure is a ValueError subclass carrying the dotted path of the
field being decoded when it happened. EncodingError is the only recoverable
kind; the rest abort the whole decode.

Usage:
    from ksy_errors import Diagnostics, BoundsError

    diag = Diagnostics()
    diag.warn("Unknown encoding 'foo', falling back to latin-1")
    diag.error(BoundsError("Reading past end of buffer", node_path="root.a"))
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


class DecodeError(ValueError):
    """Base class for interpreter failures."""

    kind = 'DecodeError'

    def __init__(self, message: str, node_path: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.node_path = node_path

    def with_path(self, node_path: str) -> 'DecodeError':
        """Attach a field path unless a deeper one is already set."""
        if self.node_path is None:
            self.node_path = node_path
        return self


class SchemaError(DecodeError):
    """Malformed or unloadable schema, missing root sequence."""
    kind = 'SchemaError'


class TypeResolutionError(DecodeError):
    """Unknown type name or unresolved switch without a default."""
    kind = 'TypeResolutionError'


class ExpressionError(DecodeError):
    """Expression could not produce a required integer."""
    kind = 'ExpressionError'


class BoundsError(DecodeError):
    """Read would fall outside the buffer."""
    kind = 'BoundsError'


class EncodingError(DecodeError):
    """Text could not be decoded strictly. Recovered by fallback decoding."""
    kind = 'EncodingError'


@dataclass(frozen=True)
class ParseError:
    """A diagnostic reported to the caller."""
    message: str
    node_path: Optional[str] = None
    kind: str = 'DecodeError'

    @classmethod
    def from_exception(cls, exc: Exception) -> 'ParseError':
        if isinstance(exc, DecodeError):
            return cls(exc.message, exc.node_path, exc.kind)
        return cls(str(exc), None, type(exc).__name__)

    def to_dict(self) -> Dict[str, Any]:
        out = {'message': self.message, 'kind': self.kind}
        if self.node_path is not None:
            out['node_path'] = self.node_path
        return out


@dataclass
class Diagnostics:
    """Collects warnings and errors for one decode call."""
    warnings: List[str] = field(default_factory=list)
    errors: List[ParseError] = field(default_factory=list)

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    def error(self, exc: Exception) -> ParseError:
        entry = ParseError.from_exception(exc)
        self.errors.append(entry)
        return entry
