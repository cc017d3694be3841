# FILE: relgate/intoto.py
from __future__ import annotations

import datetime as _dt
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import InvalidInputError

__all__ = [
    "DigestSet",
    "validate_digest_set",
    "digest_sets_equal",
    "Subject",
    "Header",
    "Creator",
    "PolicyExcerpt",
    "now",
]

# Algorithm name -> digest value, e.g. {"sha256": "...", "gitCommit": "..."}.
DigestSet = Dict[str, str]


def validate_digest_set(digests: Optional[Mapping[str, str]]) -> None:
    """
    Raise InvalidInputError unless `digests` is a non-empty mapping with
    non-empty string keys and values.
    """
    if not digests:
        raise InvalidInputError("digests empty")
    if not isinstance(digests, Mapping):
        raise InvalidInputError(f"digests must be a mapping, got {type(digests).__name__}")
    for k, v in digests.items():
        if not isinstance(k, str) or k == "":
            raise InvalidInputError("digests has empty key")
        if not isinstance(v, str) or v == "":
            raise InvalidInputError(f"digests key ({k!r}) has empty value")


def digest_sets_equal(a: Optional[Mapping[str, str]], b: Optional[Mapping[str, str]]) -> bool:
    """Exact equality of two digest sets as unordered key/value sets."""
    return dict(a or {}) == dict(b or {})


# ---------------------------------------------------------------------------
# in-toto building blocks (JSON names follow in-toto attestation v1)
# ---------------------------------------------------------------------------


class Subject(BaseModel):
    """
    Resource descriptor identifying one artifact.

    At least one of `uri` / `digests` must be set; when present the digest
    set must validate.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    uri: Optional[str] = None
    digests: Optional[Dict[str, str]] = Field(default=None, alias="digest")
    name: Optional[str] = None
    download_location: Optional[str] = Field(default=None, alias="downloadLocation")
    media_type: Optional[str] = Field(default=None, alias="mediaType")
    annotations: Optional[Dict[str, Any]] = None

    def validate_subject(self) -> None:
        if not self.uri and not self.digests:
            raise InvalidInputError("subject has neither URI nor digests")
        validate_digest_set(self.digests)


class Header(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    statement_type: str = Field(alias="_type")
    predicate_type: str = Field(alias="predicateType")
    subjects: List[Subject] = Field(default_factory=list)


class Creator(BaseModel):
    """Identity (and optional version) of the tool that created an attestation."""
    model_config = ConfigDict(extra="ignore")

    id: str
    version: Optional[str] = None


class PolicyExcerpt(BaseModel):
    """
    Reference to one policy document that contributed to a decision:
    where it lives and what its content digested to.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    uri: Optional[str] = None
    digests: Optional[Dict[str, str]] = Field(default=None, alias="digest")

    def validate_excerpt(self) -> None:
        if not self.uri:
            raise InvalidInputError("policy URI is empty")
        validate_digest_set(self.digests)


def now() -> str:
    """Current UTC time as RFC 3339 with second precision, e.g. 2024-01-02T03:04:05Z."""
    ts = _dt.datetime.now(_dt.timezone.utc).replace(microsecond=0)
    return ts.isoformat().replace("+00:00", "Z")
