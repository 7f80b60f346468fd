#!/usr/bin/env python3
"""
ksy_session.py - Host-side helpers around the interpreter

ParseSession tags every decode request with a generation token and only
accepts the result of the latest request, so overlapping decodes of an
evolving buffer never publish stale trees. A failed decode keeps the last
valid tree and exposes the new errors.

Usage:
    session = ParseSession(schema_yaml)
    session.set_buffer(data)          # decodes synchronously

    token = session.begin()           # or drive decodes yourself
    result = KsyInterpreter(schema).decode(data)
    session.complete(token, result)   # ignored if a newer begin() happened

    node = node_at(session.result.flat_nodes, 0x10)
"""

import itertools
import logging
import threading
from typing import Any, List, Mapping, Optional, Union

from ksy_errors import ParseError
from ksy_interpreter import DecodedNode, DecodeResult, KsyInterpreter
from ksy_schema import Schema


logger = logging.getLogger(__name__)


def node_at(flat_nodes: List[DecodedNode], offset: int) -> Optional[DecodedNode]:
    """
    Smallest node containing a byte offset.

    Ties on length go to the node with the lowest start offset, then to the
    one listed last (the innermost in pre-order).
    """
    best = None
    for node in flat_nodes:
        if not node.range.contains(offset):
            continue
        if best is None:
            best = node
            continue
        if (node.range.length, node.range.start) <= (best.range.length, best.range.start):
            best = node
    return best


def nodes_in_range(flat_nodes: List[DecodedNode], start: int,
                   length: int) -> List[DecodedNode]:
    """Nodes overlapping [start, start + length), in pre-order."""
    end = start + length
    return [
        n for n in flat_nodes
        if n.range.length > 0 and n.range.start < end and start < n.range.end
    ]


class ParseSession:
    """Holds a buffer, a schema and the latest accepted decode result."""

    def __init__(self, schema: Union[Schema, Mapping[str, Any], str, None] = None):
        self._lock = threading.Lock()
        self._tokens = itertools.count(1)
        self._latest: Optional[int] = None
        self.schema = schema
        self.buffer: Optional[bytes] = None
        self.result: Optional[DecodeResult] = None
        self.errors: List[ParseError] = []

    @property
    def is_parsing(self) -> bool:
        return self._latest is not None

    def begin(self) -> int:
        """Start a decode request; earlier outstanding requests become stale."""
        with self._lock:
            token = next(self._tokens)
            self._latest = token
            return token

    def complete(self, token: int, result: DecodeResult) -> bool:
        """
        Publish a result if it belongs to the latest request.

        Returns:
            True when the result was accepted, False when it was stale.
        """
        with self._lock:
            if token != self._latest:
                logger.debug("Discarding stale decode result %d (latest %s)",
                             token, self._latest)
                return False
            self._latest = None
            self.errors = list(result.errors)
            if result.root is not None:
                self.result = result
            return True

    def decode(self) -> Optional[DecodeResult]:
        """Decode the current buffer with the current schema."""
        token = self.begin()
        if self.buffer is None or self.schema is None:
            with self._lock:
                if token == self._latest:
                    self._latest = None
                    self.result = None
                    self.errors = []
            return None
        result = KsyInterpreter(self.schema).decode(self.buffer)
        self.complete(token, result)
        return result

    def set_buffer(self, data: Union[bytes, bytearray]) -> Optional[DecodeResult]:
        self.buffer = bytes(data)
        return self.decode()

    def set_schema(self, schema: Union[Schema, Mapping[str, Any], str]) -> Optional[DecodeResult]:
        self.schema = schema
        return self.decode()

    def node_at(self, offset: int) -> Optional[DecodedNode]:
        if self.result is None:
            return None
        return node_at(self.result.flat_nodes, offset)
