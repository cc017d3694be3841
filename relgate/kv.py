# FILE: relgate/kv.py
from __future__ import annotations

"""
Helpers for stable key/value hashing and digest computation.

This module is used to build:
  - order-independent fingerprints of digest sets and context maps
    (for log lines and metrics, never as a substitute for equality);
  - the policy-set reference of a loaded policy;
  - digest sets over raw policy documents, recorded as policy excerpts in
    attestations.

Key properties:
  - Deterministic, canonical encoding of basic Python types;
  - Streaming hasher with explicit domain separation via labels and context;
  - Mappings are treated as unordered sets of key/value pairs.
"""

import hashlib
import json
from typing import Any, Callable, Dict, Iterable, Mapping, Optional


# ---- Digest algorithm controls ----

_DIGEST_ALGS: Dict[str, Callable[..., Any]] = {
    "sha256": hashlib.sha256,
    "sha384": hashlib.sha384,
    "sha512": hashlib.sha512,
}


def _resolve_digest(alg: str):
    """
    Map a requested algorithm name to a hashlib constructor.

    Only a small set of modern digests is accepted; the in-toto spelling
    ("sha256") and the dashed spelling ("sha-256") are both recognised.
    """
    name = (alg or "").lower().replace("-", "")
    ctor = _DIGEST_ALGS.get(name)
    if ctor is None:
        raise ValueError(f"Unsupported digest algorithm: {alg!r}")
    return ctor


class RollingHasher:
    """
    Streaming hasher for building stable digests over simple structures.

    Features:
      - Fixed digest algorithm (default SHA-256);
      - Domain separation via an explicit `label` and user-provided `ctx`;
      - Helpers for bytes, strings, and JSON-compatible values.
    """

    def __init__(self, alg: str = "sha256", ctx: str = "", *, label: str = ""):
        self._h = _resolve_digest(alg)()

        if label:
            self._h.update(b"kv.label:")
            self._h.update(label.encode("utf-8"))
            self._h.update(b"\x00")

        if ctx:
            self._h.update(ctx.encode("utf-8"))

    def update_bytes(self, data: bytes) -> None:
        if not data:
            return
        self._h.update(data)

    def update_str(self, value: str) -> None:
        if not value:
            return
        self._h.update(value.encode("utf-8"))

    def update_json(self, obj: Any) -> None:
        """
        Update the hasher with a canonical JSON encoding of the given object
        (sorted keys, compact separators, unicode kept as-is).
        """
        payload = json.dumps(
            obj,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
        )
        self._h.update(payload.encode("utf-8"))

    def hex(self) -> str:
        return self._h.hexdigest()


def _feed_scalar(h: RollingHasher, value: Any) -> None:
    """
    Feed a scalar into the hasher with a small type tag, so that "1" and 1
    (or "True" and True) never collide.
    """
    if value is None:
        h.update_bytes(b"t:none;")
        return

    if isinstance(value, bool):
        h.update_bytes(b"t:bool;")
        h.update_bytes(b"1" if value else b"0")
        h.update_bytes(b";")
        return

    if isinstance(value, int):
        h.update_bytes(b"t:int;")
        h.update_str(str(int(value)))
        h.update_bytes(b";")
        return

    if isinstance(value, str):
        h.update_bytes(b"t:str;")
        h.update_str(value)
        h.update_bytes(b";")
        return

    h.update_bytes(b"t:json;")
    h.update_json(value)
    h.update_bytes(b";")


def canonical_kv_hash(
    mapping: Mapping[str, Any],
    *,
    ctx: str = "",
    label: str = "kv",
    alg: str = "sha256",
) -> str:
    """
    Compute a canonical hash for a mapping of key/value pairs.

    Rules:
      - Keys are converted to strings and sorted lexicographically.
      - For each key, "k:<key>;v:<typed_value>;" is fed into the hasher.
      - The result is independent of the mapping's insertion order.
    """
    rh = RollingHasher(alg=alg, ctx=ctx, label=label)
    for k in sorted(mapping.keys(), key=lambda x: str(x)):
        rh.update_bytes(b"k:")
        rh.update_str(str(k))
        rh.update_bytes(b";v:")
        _feed_scalar(rh, mapping[k])
        rh.update_bytes(b";")
    return rh.hex()


# ---- Standardized helpers ----

def digest_set_ref(digests: Mapping[str, str]) -> str:
    """Short, order-independent reference for a digest set (log/metrics use only)."""
    return canonical_kv_hash(digests, label="digest_set")[:16]


def compute_digest_set(
    data: bytes,
    algs: Iterable[str] = ("sha256",),
) -> Dict[str, str]:
    """
    Digest raw bytes with each requested algorithm.

    The returned mapping uses the lower-case, undashed algorithm names
    used by in-toto digest sets ("sha256", "sha512").
    """
    out: Dict[str, str] = {}
    for alg in algs:
        ctor = _resolve_digest(alg)
        out[alg.lower().replace("-", "")] = ctor(data).hexdigest()
    return out


def policyset_hash(
    documents: Mapping[str, Mapping[str, str]],
    *,
    ctx: Optional[str] = None,
) -> str:
    """
    Hash of a set of named policy documents, each given by its digest set.

    Used to derive a stable reference for a loaded organization + projects
    policy set.
    """
    flat = {name: canonical_kv_hash(ds, label="digest_set") for name, ds in documents.items()}
    return canonical_kv_hash(flat, ctx=ctx or "", label="policyset")
