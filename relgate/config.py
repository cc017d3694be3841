# FILE: relgate/config.py
from __future__ import annotations

import logging
import os
import threading
from typing import Any, Dict, FrozenSet, Optional

import yaml
from pydantic import BaseModel, ConfigDict

from .kv import canonical_kv_hash


_log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Env helpers
# ---------------------------------------------------------------------------


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    v = raw.strip().lower()
    return v in ("1", "true", "yes", "on")


def _env_str(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip()


def _load_yaml_mapping(path: str) -> Dict[str, Any]:
    """
    Load a simple top-level mapping from YAML.

    Constraints:
      - Ignore if path is empty or missing.
      - Only accept dict at top-level.
      - Coerce non-scalar values via str() to avoid arbitrary structures.
    """
    if not path:
        return {}
    if not os.path.exists(path):
        _log.warning("config file %s does not exist; using defaults", path)
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = yaml.safe_load(f)
    except (OSError, yaml.YAMLError):
        _log.warning("failed to load YAML config from %s", path, exc_info=True)
        return {}
    if not isinstance(doc, dict):
        return {}
    out: Dict[str, Any] = {}
    for k, v in doc.items():
        if isinstance(v, (str, int, float, bool)) or v is None:
            out[str(k)] = v
        else:
            out[str(k)] = str(v)
    return out


# ---------------------------------------------------------------------------
# Settings model (single canonical snapshot)
# ---------------------------------------------------------------------------


class Settings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    # --- Attestation identity ---------------------------------------------

    # Recorded as predicate.creator.id / .version in every attestation.
    creator_id: str = "relgate"
    creator_version: str = "0.1.0"

    # --- Policy sources ---------------------------------------------------

    org_policy_path: str = ""
    project_policy_dir: str = ""
    # Embed "org" / "project" policy excerpts into attestations.
    attach_policy_excerpts: bool = True

    # --- Logging / metrics ------------------------------------------------

    log_level: str = "INFO"
    log_json: bool = True
    metrics_enabled: bool = True

    # Indicates how this config reached the process (defaults/yaml/env).
    config_origin: str = "defaults"

    # Fields that cannot change after the first load.
    immutable_fields: FrozenSet[str] = frozenset({"creator_id"})

    def config_hash(self) -> str:
        """Stable hash of the current settings, safe to embed in logs."""
        payload = self.model_dump(mode="json")
        payload["immutable_fields"] = sorted(payload["immutable_fields"])
        return canonical_kv_hash(payload, ctx="relgate:settings", label="settings")


# ---------------------------------------------------------------------------
# Loading / merging
# ---------------------------------------------------------------------------


def _load_settings() -> Settings:
    """
    Load Settings from defaults, optional YAML, and environment variables.

    Priority:
      1. Settings defaults (in-code).
      2. YAML file pointed to by RELGATE_CONFIG_PATH.
      3. Environment variables (RELGATE_*).
    """
    merged: Dict[str, Any] = Settings().model_dump()
    origin = "defaults"

    # 1) YAML overlay
    yaml_path = os.environ.get("RELGATE_CONFIG_PATH", "").strip()
    yaml_doc = _load_yaml_mapping(yaml_path)
    if yaml_doc:
        tmp = dict(merged)
        tmp.update(yaml_doc)
        merged = Settings(**tmp).model_dump()  # extra="forbid" rejects typos
        origin = "yaml"

    # 2) Environment overrides
    env_before = dict(merged)
    merged["creator_id"] = _env_str("RELGATE_CREATOR_ID", merged["creator_id"])
    merged["creator_version"] = _env_str("RELGATE_CREATOR_VERSION", merged["creator_version"])
    merged["org_policy_path"] = _env_str("RELGATE_ORG_POLICY", merged["org_policy_path"])
    merged["project_policy_dir"] = _env_str("RELGATE_PROJECT_POLICY_DIR", merged["project_policy_dir"])
    merged["attach_policy_excerpts"] = _env_bool(
        "RELGATE_ATTACH_POLICY_EXCERPTS", merged["attach_policy_excerpts"]
    )
    merged["log_level"] = _env_str("RELGATE_LOG_LEVEL", merged["log_level"]).upper() or "INFO"
    merged["log_json"] = _env_bool("RELGATE_LOG_JSON", merged["log_json"])
    merged["metrics_enabled"] = _env_bool("RELGATE_METRICS_ENABLED", merged["metrics_enabled"])
    if merged != env_before:
        origin = "env" if origin == "defaults" else f"{origin}+env"

    merged["config_origin"] = origin
    return Settings(**merged)


# ---------------------------------------------------------------------------
# Reloadable wrapper
# ---------------------------------------------------------------------------


class ReloadableSettings:
    """
    Thread-safe wrapper around Settings.

      - get(): returns the current immutable Settings snapshot.
      - refresh(): reloads from file and environment, preserving immutable_fields.
      - set(): in-memory overrides with the same immutability rule.
    """

    def __init__(self, initial: Optional[Settings] = None) -> None:
        self._lock = threading.RLock()
        self._settings = initial or _load_settings()

    def get(self) -> Settings:
        with self._lock:
            return self._settings

    def refresh(self) -> Settings:
        with self._lock:
            old = self._settings
            new_data = _load_settings().model_dump()
            for key in old.immutable_fields:
                new_data[key] = getattr(old, key)
            new_data["immutable_fields"] = old.immutable_fields
            self._settings = Settings(**new_data)
            return self._settings

    def set(self, **overrides: Any) -> Settings:
        """
        Apply in-memory overrides. Unknown keys and immutable fields are
        ignored (with a warning).
        """
        with self._lock:
            current = self._settings
            data = current.model_dump()
            for key, value in overrides.items():
                if key not in data:
                    _log.warning("ignoring unknown settings override %r", key)
                    continue
                if key in current.immutable_fields or key == "immutable_fields":
                    _log.warning("ignoring override of immutable setting %r", key)
                    continue
                data[key] = value
            self._settings = Settings(**data)
            return self._settings


def make_reloadable_settings() -> ReloadableSettings:
    return ReloadableSettings(_load_settings())
