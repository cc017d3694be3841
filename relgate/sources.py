# FILE: relgate/sources.py
from __future__ import annotations

"""
Policy sources.

A project-policy source is a finite, forward-only sequence of byte blocks.
Each block is paired with the identifier callers later pass to
`Policy.evaluate` to select it, and with an optional URI recorded in
attestation policy excerpts.

Accepted shapes (see `named_documents`):
  - NamedDocument instances;
  - (policy_id, content) tuples;
  - bare bytes / str / binary file objects, given positional ids
    "policy_id0", "policy_id1", ... in iteration order.
"""

import os
from pathlib import Path
from typing import Any, Iterable, Iterator, NamedTuple, Optional, Union

from .errors import InvalidInputError

__all__ = [
    "NamedDocument",
    "POSITIONAL_ID_PREFIX",
    "read_document",
    "named_documents",
    "DirectorySource",
]

POSITIONAL_ID_PREFIX = "policy_id"


class NamedDocument(NamedTuple):
    policy_id: str
    content: bytes
    uri: Optional[str] = None


def read_document(src: Any) -> bytes:
    """Read one document (bytes, str, or a file-like object) fully into bytes."""
    if hasattr(src, "read"):
        try:
            data = src.read()
        finally:
            close = getattr(src, "close", None)
            if close is not None:
                close()
    else:
        data = src
    if isinstance(data, str):
        return data.encode("utf-8")
    if isinstance(data, (bytes, bytearray, memoryview)):
        return bytes(data)
    raise InvalidInputError(f"unsupported policy document type {type(data).__name__}")


def named_documents(items: Iterable[Any]) -> Iterator[NamedDocument]:
    """
    Normalize a project-policy source into NamedDocument values.

    The source is consumed once, in order.
    """
    for idx, item in enumerate(items):
        if isinstance(item, NamedDocument):
            yield item
        elif isinstance(item, tuple) and len(item) == 2:
            policy_id, content = item
            if not isinstance(policy_id, str) or not policy_id:
                raise InvalidInputError(f"policy source entry {idx}: empty policy id")
            yield NamedDocument(policy_id, read_document(content))
        else:
            yield NamedDocument(f"{POSITIONAL_ID_PREFIX}{idx}", read_document(item))


class DirectorySource:
    """
    Project policies stored as files in one directory.

    Files matching `pattern` are yielded sorted by name; the file stem is the
    policy id and the file URI is recorded as the document URI.
    """

    def __init__(self, path: Union[str, "os.PathLike[str]"], *, pattern: str = "*.json"):
        self.path = Path(path)
        self.pattern = pattern

    def __iter__(self) -> Iterator[NamedDocument]:
        if not self.path.is_dir():
            raise InvalidInputError(f"policy directory {str(self.path)!r} does not exist")
        for fp in sorted(self.path.glob(self.pattern)):
            if not fp.is_file():
                continue
            yield NamedDocument(fp.stem, fp.read_bytes(), fp.resolve().as_uri())
