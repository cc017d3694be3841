# FILE: relgate/attestation.py
from __future__ import annotations

"""
Deployment attestation assembly.

An attestation records an accepted policy evaluation as an in-toto
statement:

    {
      "_type": STATEMENT_TYPE,
      "predicateType": PREDICATE_TYPE,
      "subjects": [{"digest": {...}}],
      "predicate": {
        "creator": {"id": ..., "version": ...},
        "creationTime": "2024-01-02T03:04:05Z",
        "context": {"principalURI": ...},
        "contextType": CONTEXT_TYPE_PRINCIPAL,
        "policy": {"org": {"uri": ..., "digest": {...}}, ...}
      }
    }

Optional fields are omitted, never null. Serialization is deterministic for
a given document (sorted keys, compact separators), and `verification_new`
reconstructs an equal document from the bytes.

Assembly is a pure transformation: no I/O, no logging. Signing and transport
of the bytes belong to the caller.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .engine import EvaluationAccepted, PolicyEvaluationResult
from .errors import InternalError, InvalidInputError
from .intoto import Creator, Header, PolicyExcerpt, Subject, now, validate_digest_set

__all__ = [
    "STATEMENT_TYPE",
    "PREDICATE_TYPE",
    "CONTEXT_TYPE_PRINCIPAL",
    "CONTEXT_PRINCIPAL",
    "Predicate",
    "Statement",
    "AttestationCreationOptions",
    "set_creator_version",
    "set_policy",
    "coerce_policy_excerpt",
    "Attestation",
    "attestation_new",
]

STATEMENT_TYPE = "https://in-toto.io/Statement/v1"
PREDICATE_TYPE = "https://slsa.dev/deployment/v1"
CONTEXT_TYPE_PRINCIPAL = "https://slsa.dev/deployment/contextType/PrincipalURI"
# Context key holding the principal URI of the governing project policy.
CONTEXT_PRINCIPAL = "principalURI"


# ---------------------------------------------------------------------------
# Document schema
# ---------------------------------------------------------------------------


class Predicate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    creator: Creator
    creation_time: Optional[str] = Field(default=None, alias="creationTime")
    context: Dict[str, str] = Field(default_factory=dict)
    context_type: str = Field(alias="contextType")
    policy: Optional[Dict[str, PolicyExcerpt]] = None


class Statement(Header):
    predicate: Predicate

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Options shared by creation and verification
# ---------------------------------------------------------------------------


def coerce_policy_excerpt(name: str, value: Union[PolicyExcerpt, Mapping[str, Any]]) -> PolicyExcerpt:
    if not name:
        raise InvalidInputError("policy name is empty")
    if isinstance(value, PolicyExcerpt):
        excerpt = value
    elif isinstance(value, Mapping):
        try:
            excerpt = PolicyExcerpt.model_validate(dict(value))
        except ValidationError as exc:
            raise InvalidInputError(f"policy {name!r}: {exc}") from exc
    else:
        raise InvalidInputError(f"policy {name!r}: unsupported value {type(value).__name__}")
    try:
        excerpt.validate_excerpt()
    except InvalidInputError as exc:
        raise InvalidInputError(f"policy {name!r}: {exc}") from exc
    return excerpt


@dataclass(frozen=True)
class PolicyOptions:
    """
    Order-independent options unit.

    Merging keeps the last non-empty creator version and accumulates the
    named policy map by name (a later entry for a name replaces an earlier one).
    """

    creator_version: Optional[str] = None
    policy: Mapping[str, PolicyExcerpt] = field(default_factory=dict)

    def merge(self, other: "PolicyOptions"):
        merged = dict(self.policy)
        merged.update(other.policy)
        return type(self)(
            creator_version=other.creator_version or self.creator_version,
            policy=merged,
        )

    @classmethod
    def combine(cls, *options: "PolicyOptions"):
        out = cls()
        for opt in options:
            if opt is None:
                continue
            if not isinstance(opt, cls):
                raise InternalError(f"unsupported option type {type(opt).__name__}")
            out = out.merge(opt)
        return out


class AttestationCreationOptions(PolicyOptions):
    pass


def set_creator_version(version: str) -> AttestationCreationOptions:
    return AttestationCreationOptions(creator_version=version or None)


def set_policy(
    policy: Mapping[str, Union[PolicyExcerpt, Mapping[str, Any]]],
) -> AttestationCreationOptions:
    """Attach named policy excerpts (e.g. "org", "project") to the attestation."""
    return AttestationCreationOptions(
        policy={name: coerce_policy_excerpt(name, value) for name, value in (policy or {}).items()}
    )


# ---------------------------------------------------------------------------
# Attestation
# ---------------------------------------------------------------------------


class Attestation:
    """An assembled deployment attestation. Never mutated after creation."""

    def __init__(self, statement: Statement) -> None:
        self._statement = statement

    @property
    def statement(self) -> Statement:
        return self._statement

    @property
    def header(self) -> Header:
        return self._statement

    @property
    def predicate(self) -> Predicate:
        return self._statement.predicate

    def to_dict(self) -> Dict[str, Any]:
        return self._statement.to_dict()

    def to_bytes(self) -> bytes:
        return json.dumps(
            self.to_dict(),
            ensure_ascii=False,
            sort_keys=True,
            separators=(",", ":"),
        ).encode("utf-8")


def attestation_new(
    result: Optional[PolicyEvaluationResult],
    creator_id: str,
    *options: AttestationCreationOptions,
) -> Attestation:
    """
    Build the attestation for an accepted evaluation.

    Raises InternalError when `result` is missing or rejected, or when
    `creator_id` is empty: attesting a rejected evaluation is a caller bug,
    not a policy outcome.
    """
    if not isinstance(result, EvaluationAccepted):
        detail = getattr(result, "error", None)
        raise InternalError(f"cannot attest a non-accepted evaluation result (error: {detail})")
    if not creator_id:
        raise InternalError("creator ID is empty")
    try:
        validate_digest_set(result.digests)
    except InvalidInputError as exc:
        raise InternalError(f"evaluation result carries invalid digests: {exc}") from exc

    opts = AttestationCreationOptions.combine(*options)

    statement = Statement(
        statement_type=STATEMENT_TYPE,
        predicate_type=PREDICATE_TYPE,
        subjects=[Subject(digests=dict(result.digests))],
        predicate=Predicate(
            creator=Creator(id=creator_id, version=opts.creator_version),
            creation_time=now(),
            context={CONTEXT_PRINCIPAL: result.principal.uri},
            context_type=CONTEXT_TYPE_PRINCIPAL,
            policy=dict(opts.policy) or None,
        ),
    )
    return Attestation(statement)
