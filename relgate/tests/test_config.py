# relgate/tests/test_config.py
import os

import pytest
from pydantic import ValidationError

from relgate.config import ReloadableSettings, Settings, make_reloadable_settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("RELGATE_"):
            monkeypatch.delenv(key)


def test_defaults():
    s = make_reloadable_settings().get()
    assert s.creator_id == "relgate"
    assert s.attach_policy_excerpts is True
    assert s.config_origin == "defaults"


def test_yaml_then_env(monkeypatch, tmp_path):
    cfg = tmp_path / "relgate.yaml"
    cfg.write_text("creator_id: deployer\ncreator_version: '2.1'\nlog_level: DEBUG\n")
    monkeypatch.setenv("RELGATE_CONFIG_PATH", str(cfg))

    s = make_reloadable_settings().get()
    assert s.creator_id == "deployer"
    assert s.creator_version == "2.1"
    assert s.config_origin == "yaml"

    monkeypatch.setenv("RELGATE_CREATOR_VERSION", "3.0")
    monkeypatch.setenv("RELGATE_ATTACH_POLICY_EXCERPTS", "false")
    s = make_reloadable_settings().get()
    assert s.creator_version == "3.0"
    assert s.attach_policy_excerpts is False
    assert s.config_origin == "yaml+env"


def test_yaml_typo_rejected(monkeypatch, tmp_path):
    cfg = tmp_path / "relgate.yaml"
    cfg.write_text("creator_idd: deployer\n")
    monkeypatch.setenv("RELGATE_CONFIG_PATH", str(cfg))
    with pytest.raises(ValidationError):
        make_reloadable_settings()


def test_missing_yaml_falls_back(monkeypatch, tmp_path):
    monkeypatch.setenv("RELGATE_CONFIG_PATH", str(tmp_path / "absent.yaml"))
    assert make_reloadable_settings().get().config_origin == "defaults"


def test_creator_id_is_immutable(monkeypatch):
    rs = ReloadableSettings(Settings(creator_id="first"))
    monkeypatch.setenv("RELGATE_CREATOR_ID", "second")
    monkeypatch.setenv("RELGATE_LOG_LEVEL", "warning")
    s = rs.refresh()
    assert s.creator_id == "first"
    assert s.log_level == "WARNING"

    s = rs.set(creator_id="third", creator_version="9", bogus=1)
    assert s.creator_id == "first"
    assert s.creator_version == "9"
    assert rs.get() is s


def test_config_hash_tracks_content():
    a = Settings()
    assert a.config_hash() == Settings().config_hash()
    assert a.config_hash() != Settings(creator_version="other").config_hash()
