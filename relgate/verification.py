# FILE: relgate/verification.py
from __future__ import annotations

"""
Deployment attestation verification.

A consumer re-parses attestation bytes with `verification_new` and checks them
against its own expectations with `Verification.verify`, independently of the
process that produced them. Checks are all AND-ed; the first failing one is
raised as VerificationError naming the field and both values. There is no
partial success: `verify` either returns None or raises.

Checks performed, in order:
  1. creator id equality;
  2. digest-set equality (unordered key/value sets) with the single subject;
  3. context type equality;
  4. context map equality (exact key/value set);
  5. options:
       - is_creator_version(v): creator version equality;
       - has_policy(name, uri, digests): the named policy excerpt exists and
         its URI and digest set match.

This module does not verify signatures; the envelope carrying the bytes is
authenticated (or not) by the caller.
"""

import json
from typing import Any, Mapping, Optional

from pydantic import ValidationError

from .attestation import (
    PREDICATE_TYPE,
    STATEMENT_TYPE,
    PolicyOptions,
    Statement,
    coerce_policy_excerpt,
)
from .errors import (
    InternalError,
    InvalidInputError,
    PolicyExcerptNotFoundError,
    VerificationError,
)
from .intoto import PolicyExcerpt, digest_sets_equal, validate_digest_set

__all__ = [
    "AttestationVerificationOptions",
    "is_creator_version",
    "has_policy",
    "Verification",
    "verification_new",
]

# Upper bound on accepted attestation size; deployment attestations are small.
_MAX_ATTESTATION_BYTES = 1 << 20


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------


class AttestationVerificationOptions(PolicyOptions):
    pass


def is_creator_version(version: str) -> AttestationVerificationOptions:
    return AttestationVerificationOptions(creator_version=version or None)


def has_policy(name: str, uri: str, digests: Mapping[str, str]) -> AttestationVerificationOptions:
    return AttestationVerificationOptions(
        policy={name: coerce_policy_excerpt(name, PolicyExcerpt(uri=uri, digests=dict(digests or {})))}
    )


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


def _mismatch(field_name: str, got: Any, want: Any) -> VerificationError:
    return VerificationError(f"{field_name} mismatch: attestation has {got!r}, expected {want!r}")


class Verification:
    """Parsed attestation awaiting checks against caller expectations."""

    def __init__(self, statement: Statement) -> None:
        self._statement = statement

    @property
    def statement(self) -> Statement:
        return self._statement

    def verify(
        self,
        creator_id: str,
        digests: Mapping[str, str],
        context_type: str,
        context: Optional[Mapping[str, str]],
        *options: AttestationVerificationOptions,
    ) -> None:
        predicate = self._statement.predicate
        subject = self._statement.subjects[0]

        if predicate.creator.id != creator_id:
            raise _mismatch("creator id", predicate.creator.id, creator_id)

        if not digest_sets_equal(subject.digests, digests):
            raise _mismatch("subject digests", subject.digests, dict(digests or {}))

        if predicate.context_type != context_type:
            raise _mismatch("context type", predicate.context_type, context_type)

        if dict(predicate.context or {}) != dict(context or {}):
            raise _mismatch("context", predicate.context, dict(context or {}))

        opts = AttestationVerificationOptions.combine(*options)

        if opts.creator_version is not None and predicate.creator.version != opts.creator_version:
            raise _mismatch("creator version", predicate.creator.version, opts.creator_version)

        present = predicate.policy or {}
        for name in sorted(opts.policy):
            want = opts.policy[name]
            got = present.get(name)
            if got is None:
                raise PolicyExcerptNotFoundError(f"policy {name!r} not found in attestation")
            if got.uri != want.uri:
                raise _mismatch(f"policy {name!r} uri", got.uri, want.uri)
            if not digest_sets_equal(got.digests, want.digests):
                raise _mismatch(f"policy {name!r} digests", got.digests, want.digests)


def _load_bytes(data: Any) -> bytes:
    if hasattr(data, "read"):
        data = data.read()
    if isinstance(data, str):
        data = data.encode("utf-8")
    if not isinstance(data, (bytes, bytearray)):
        raise InternalError(f"unsupported attestation input type {type(data).__name__}")
    if len(data) > _MAX_ATTESTATION_BYTES:
        raise InternalError(f"attestation too large ({len(data)} bytes)")
    return bytes(data)


def verification_new(data: Any) -> Verification:
    """
    Parse attestation bytes (or str / binary file) into a Verification.

    Malformed input is a caller or transport problem, not a policy outcome,
    and is reported as InternalError.
    """
    raw = _load_bytes(data)
    try:
        obj = json.loads(raw.decode("utf-8"))
    except ValueError as exc:
        raise InternalError(f"attestation is not valid JSON: {exc}") from exc
    if not isinstance(obj, dict):
        raise InternalError("attestation is not a JSON object")
    try:
        statement = Statement.model_validate(obj)
    except ValidationError as exc:
        raise InternalError(f"attestation has an invalid shape: {exc}") from exc

    if statement.statement_type != STATEMENT_TYPE:
        raise InternalError(f"unexpected statement type {statement.statement_type!r}")
    if statement.predicate_type != PREDICATE_TYPE:
        raise InternalError(f"unexpected predicate type {statement.predicate_type!r}")
    if len(statement.subjects) != 1:
        raise InternalError(f"expected exactly one subject, got {len(statement.subjects)}")
    try:
        statement.subjects[0].validate_subject()
    except InvalidInputError as exc:
        raise InternalError(f"attestation subject is invalid: {exc}") from exc

    return Verification(statement)
