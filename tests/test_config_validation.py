"""
Tests for config validation in memconf.config.

Tests validate() methods on all config dataclasses and strict mode
in load_config().
"""

import json
import pytest

from memconf.config import (
    DefaultsConfig,
    LoggingConfig,
    MemoryConfig,
    ProjectConfig,
    SyncConfig,
    ValidationError,
    WatcherConfig,
    load_config,
    parse_config,
)


# ---------------------------------------------------------------------------
# ProjectConfig validation
# ---------------------------------------------------------------------------


class TestProjectConfigValidation:
    def test_minimal_valid(self):
        assert ProjectConfig(code_path="/dev/brain").validate("brain") == []

    def test_code_path_required(self):
        errors = ProjectConfig().validate("brain")
        assert any("projects.brain.code_path" in e for e in errors)

    def test_custom_requires_path(self):
        errors = ProjectConfig(code_path="/x", memories_mode="CUSTOM").validate("p")
        assert any("CUSTOM mode requires memories_path" in e for e in errors)

    def test_custom_with_path(self):
        cfg = ProjectConfig(code_path="/x", memories_mode="CUSTOM", memories_path="/m")
        assert cfg.validate("p") == []

    def test_unknown_mode_rejected(self):
        errors = ProjectConfig(code_path="/x", memories_mode="SIDECAR").validate("p")
        assert any("memories_mode" in e for e in errors)

    def test_unknown_mode_resolves_default(self):
        assert ProjectConfig(code_path="/x", memories_mode="SIDECAR").effective_mode == "DEFAULT"

    def test_empty_mode_resolves_default(self):
        p = ProjectConfig.from_dict({"code_path": "/x", "memories_mode": ""})
        assert p.memories_mode is None
        assert p.effective_mode == "DEFAULT"


# ---------------------------------------------------------------------------
# Section validation
# ---------------------------------------------------------------------------


class TestSectionValidation:
    def test_defaults_valid(self):
        assert DefaultsConfig().validate() == []

    def test_empty_location(self):
        errors = DefaultsConfig(memories_location="").validate()
        assert any("memories_location" in e for e in errors)

    def test_bad_default_mode(self):
        errors = DefaultsConfig(memories_mode="code").validate()
        assert any("defaults.memories_mode" in e for e in errors)

    def test_sync_negative_delay(self):
        errors = SyncConfig(delay_ms=-1).validate()
        assert any("sync.delay_ms" in e for e in errors)

    def test_sync_delay_wrong_type(self):
        errors = SyncConfig(delay_ms="500").validate()
        assert any("expected int" in e for e in errors)

    def test_sync_bool_is_not_int(self):
        errors = SyncConfig(delay_ms=True).validate()
        assert any("sync.delay_ms" in e for e in errors)

    def test_sync_enabled_wrong_type(self):
        errors = SyncConfig(enabled="yes").validate()
        assert any("sync.enabled" in e for e in errors)

    def test_log_level(self):
        assert LoggingConfig(level="warn").validate() == []
        assert LoggingConfig(level="warning").validate() != []

    def test_watcher_debounce(self):
        assert WatcherConfig(debounce_ms=0).validate() == []
        assert WatcherConfig(debounce_ms=-5).validate() != []


# ---------------------------------------------------------------------------
# MemoryConfig validation
# ---------------------------------------------------------------------------


class TestMemoryConfigValidation:
    def test_defaults_valid(self):
        assert MemoryConfig().validate() == []

    def test_wrong_version(self):
        errors = MemoryConfig(version="1.0.0").validate()
        assert any("version" in e for e in errors)

    def test_collects_all_errors(self):
        cfg = MemoryConfig(
            sync=SyncConfig(delay_ms=-1),
            logging=LoggingConfig(level="loud"),
            projects={"p": ProjectConfig()},
        )
        errors = cfg.validate()
        assert len(errors) == 3

    def test_check_raises_with_errors(self):
        cfg = MemoryConfig(logging=LoggingConfig(level="loud"))
        with pytest.raises(ValidationError, match="logging.level") as exc:
            cfg.check()
        assert exc.value.errors == cfg.validate()

    def test_parse_rejects_non_object_section(self):
        with pytest.raises(ValidationError, match="sync"):
            parse_config({"version": "2.0.0", "sync": [1, 2]})

    def test_parse_rejects_non_object_project(self):
        with pytest.raises(ValidationError, match="projects.p"):
            parse_config({"version": "2.0.0", "projects": {"p": "/x"}})

    def test_parse_missing_version(self):
        with pytest.raises(ValidationError, match="version"):
            parse_config({})

    @pytest.mark.parametrize("section,field,value", [
        ("logging", "level", ["debug"]),
        ("logging", "level", {"name": "debug"}),
        ("defaults", "memories_mode", ["CODE"]),
    ])
    def test_parse_rejects_non_string_choice(self, section, field, value):
        data = MemoryConfig().to_dict()
        data[section][field] = value
        with pytest.raises(ValidationError) as exc:
            parse_config(data)
        assert f"{section}.{field}: expected str" in exc.value.errors[0]

    @pytest.mark.parametrize("mode", [["CODE"], {"mode": "CODE"}])
    def test_non_string_project_mode(self, mode):
        p = ProjectConfig(code_path="/x", memories_mode=mode)
        errors = p.validate("p")
        assert errors == [f"projects.p.memories_mode: expected str, got {type(mode).__name__}"]
        assert p.effective_mode == "DEFAULT"


# ---------------------------------------------------------------------------
# Strict mode
# ---------------------------------------------------------------------------


class TestStrictMode:
    def test_strict_valid(self, tmp_path):
        path = str(tmp_path / "config.json")
        with open(path, "w") as f:
            json.dump(MemoryConfig().to_dict(), f)
        cfg = load_config(path, strict=True)
        assert cfg.version == "2.0.0"

    def test_strict_invalid(self, tmp_path):
        path = str(tmp_path / "config.json")
        data = MemoryConfig().to_dict()
        data["watcher"]["debounce_ms"] = -1
        with open(path, "w") as f:
            json.dump(data, f)
        with pytest.raises(ValidationError, match="watcher.debounce_ms"):
            load_config(path, strict=True)

    def test_lenient_invalid(self, tmp_path):
        path = str(tmp_path / "config.json")
        data = MemoryConfig().to_dict()
        data["watcher"]["debounce_ms"] = -1
        with open(path, "w") as f:
            json.dump(data, f)
        cfg = load_config(path)
        assert cfg.watcher.debounce_ms == -1
