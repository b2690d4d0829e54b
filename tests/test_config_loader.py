"""Tests for config_loader.py: discovery, reading, layered merge."""

import logging

import pytest
import yaml

from tbd.config_loader import (
    discover_config_files,
    ensure_config,
    load_hierarchical_config,
    merge_config_layers,
    project_config_path,
    read_config_file,
    user_config_path,
)


@pytest.fixture(autouse=True)
def isolated_home(monkeypatch, tmp_path):
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.delenv("TBD_CONFIG", raising=False)
    return home


def _write(path, text):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


class TestDiscoverConfigFiles:
    """Precedence: TBD_CONFIG > project > ~/.config/tbd."""

    def test_nothing_found(self, tmp_path):
        assert discover_config_files(tmp_path) == []

    def test_order(self, tmp_path, monkeypatch):
        project = _write(project_config_path(tmp_path), "{}\n")
        user = _write(user_config_path(), "{}\n")
        explicit = _write(tmp_path / "explicit.yml", "{}\n")
        monkeypatch.setenv("TBD_CONFIG", str(explicit))

        assert discover_config_files(tmp_path) == [
            explicit.resolve(),
            project,
            user,
        ]

    def test_missing_explicit_file_warned(self, tmp_path, monkeypatch, caplog):
        monkeypatch.setenv("TBD_CONFIG", str(tmp_path / "gone.yml"))

        with caplog.at_level(logging.WARNING):
            assert discover_config_files(tmp_path) == []
        assert "gone.yml" in caplog.text


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------


class TestReadConfigFile:
    def test_sections(self, tmp_path):
        path = _write(
            tmp_path / "c.yml", "sync:\n  branch: mine\ndisplay:\n"
        )

        assert read_config_file(path) == {
            "sync": {"branch": "mine"},
            "display": {},
        }

    def test_empty_file(self, tmp_path):
        assert read_config_file(_write(tmp_path / "c.yml", "")) == {}

    def test_list_root_rejected(self, tmp_path):
        path = _write(tmp_path / "c.yml", "- a\n- b\n")

        with pytest.raises(ValueError, match="top level"):
            read_config_file(path)

    def test_scalar_section_rejected(self, tmp_path):
        path = _write(tmp_path / "c.yml", "sync: tbd-sync\n")

        with pytest.raises(ValueError, match="section 'sync'"):
            read_config_file(path)

    def test_invalid_yaml(self, tmp_path):
        path = _write(tmp_path / "c.yml", "sync: [unclosed\n")

        with pytest.raises(ValueError, match="invalid YAML"):
            read_config_file(path)


# ---------------------------------------------------------------------------
# Merging
# ---------------------------------------------------------------------------


class TestMergeConfigLayers:
    def test_later_layer_overrides_single_keys(self, tmp_path):
        user = {"sync": {"remote": "up", "branch": "a"}}
        project = {"sync": {"branch": "b"}}

        merged = merge_config_layers(
            [(tmp_path / "user.yml", user), (tmp_path / "project.yml", project)]
        )

        assert merged == {"sync": {"remote": "up", "branch": "b"}}

    def test_inputs_not_mutated(self, tmp_path):
        user = {"display": {"id_prefix": "me"}}

        merge_config_layers(
            [
                (tmp_path / "user.yml", user),
                (tmp_path / "project.yml", {"display": {"id_prefix": "pr"}}),
            ]
        )

        assert user == {"display": {"id_prefix": "me"}}


class TestLoadHierarchicalConfig:
    def test_zero_config(self, tmp_path):
        assert load_hierarchical_config(tmp_path) == {}

    def test_user_and_project_combined(self, tmp_path):
        _write(
            user_config_path(),
            "sync:\n  remote: upstream\ndisplay:\n  id_prefix: glob\n",
        )
        _write(project_config_path(tmp_path), "sync:\n  branch: mine\n")

        data = load_hierarchical_config(tmp_path)

        assert data["sync"] == {"remote": "upstream", "branch": "mine"}
        assert data["display"] == {"id_prefix": "glob"}

    def test_explicit_file_wins(self, tmp_path, monkeypatch):
        _write(project_config_path(tmp_path), "sync:\n  branch: mine\n")
        explicit = _write(tmp_path / "ci.yml", "sync:\n  branch: ci-sync\n")
        monkeypatch.setenv("TBD_CONFIG", str(explicit))

        data = load_hierarchical_config(tmp_path)

        assert data["sync"]["branch"] == "ci-sync"

    def test_broken_file_raises(self, tmp_path):
        _write(project_config_path(tmp_path), "- not\n- sections\n")

        with pytest.raises(ValueError, match="config.yml"):
            load_hierarchical_config(tmp_path)


# ---------------------------------------------------------------------------
# Bootstrapping
# ---------------------------------------------------------------------------


class TestEnsureConfig:
    def test_writes_settings(self, tmp_path):
        path = ensure_config(
            tmp_path, id_prefix="proj", remote="origin", branch="tbd-sync"
        )

        data = yaml.safe_load(path.read_text(encoding="utf-8"))
        assert data == {
            "display": {"id_prefix": "proj"},
            "sync": {"branch": "tbd-sync", "remote": "origin"},
        }

    def test_existing_config_kept(self, tmp_path):
        path = _write(project_config_path(tmp_path), "sync: {}\n")

        ensure_config(tmp_path, id_prefix="x", remote="o", branch="b")

        assert path.read_text(encoding="utf-8") == "sync: {}\n"
