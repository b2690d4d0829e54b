"""Tests for project.py: init/open and cross-component operations."""

from __future__ import annotations

import random

import pytest

from tbd.errors import IntegrityError, NotInitializedError, ValidationError
from tbd.project import init_project, open_project, read_schema_version
from tbd.sync.models import AtticContext, AtticEntry


class TestReadSchemaVersion:
    def test_missing_file(self, tmp_path):
        assert read_schema_version(tmp_path) is None

    def test_current_version(self, tmp_path):
        (tmp_path / "meta.yml").write_text(
            "schema_version: 1\n", encoding="utf-8"
        )

        assert read_schema_version(tmp_path) == 1

    def test_newer_version_refused(self, tmp_path):
        (tmp_path / "meta.yml").write_text(
            "schema_version: 2\n", encoding="utf-8"
        )

        with pytest.raises(IntegrityError, match="newer"):
            read_schema_version(tmp_path)

    def test_non_integer(self, tmp_path):
        (tmp_path / "meta.yml").write_text(
            "schema_version: one\n", encoding="utf-8"
        )

        with pytest.raises(IntegrityError, match="integer"):
            read_schema_version(tmp_path)


@pytest.mark.git
class TestInitProject:
    """Tests for init_project() and open_project()."""

    def test_creates_layout(self, make_repo, clock):
        root = make_repo("project")

        project = init_project(root, id_prefix="Proj", clock=clock)

        config_text = (root / ".tbd" / "config.yml").read_text(
            encoding="utf-8"
        )
        assert "id_prefix: proj" in config_text
        assert (root / ".tbd" / ".gitignore").exists()
        assert project.config.id_prefix == "proj"
        assert project.data_dir == root.resolve() / ".tbd" / (
            "data-sync-worktree"
        )

    def test_rerun_keeps_config(self, make_repo, clock):
        root = make_repo("project")
        init_project(root, id_prefix="first", clock=clock)

        project = init_project(root, id_prefix="second", clock=clock)

        assert project.config.id_prefix == "first"

    def test_invalid_prefix(self, make_repo):
        root = make_repo("project")

        with pytest.raises(ValidationError, match="id_prefix"):
            init_project(root, id_prefix="not a prefix!")

        assert not (root / ".tbd").exists()

    def test_open_from_subdirectory(self, make_repo, clock):
        root = make_repo("project")
        init_project(root, clock=clock)
        nested = root / "src" / "deep"
        nested.mkdir(parents=True)

        project = open_project(nested, clock=clock)

        assert project.root == root.resolve()

    def test_open_without_project(self, tmp_path, git_env):
        with pytest.raises(NotInitializedError):
            open_project(tmp_path)

    def test_open_refuses_newer_schema(self, make_repo, clock):
        root = make_repo("project")
        project = init_project(root, clock=clock)
        (project.data_dir / "meta.yml").write_text(
            "schema_version: 99\n", encoding="utf-8"
        )

        with pytest.raises(IntegrityError):
            open_project(root)


@pytest.mark.git
class TestProjectOperations:
    @pytest.fixture
    def project(self, make_repo, clock):
        return init_project(
            make_repo("project"), clock=clock, rng=random.Random(7)
        )

    def test_doctor_on_fresh_project(self, project):
        project.service.create("Check me")

        report = project.doctor()

        assert report.ok
        assert report.issues_checked == 1

    def test_restore_by_short_id(self, project):
        issue = project.service.update(
            project.service.create("Old title").id, title="New title"
        )
        short = project.service.load_mapping().short_for(issue.id)
        project.attic.record(
            AtticEntry(
                internal_id=issue.id,
                field="title",
                timestamp="2025-01-07T12:00:00.000Z",
                lost_value="Lost title",
                winner_value="New title",
                winner_source="local",
                loser_source="remote",
                context=AtticContext(
                    local_version=2,
                    remote_version=2,
                    local_updated_at=issue.updated_at,
                    remote_updated_at=issue.updated_at,
                ),
            )
        )

        restored = project.restore(f"tbd-{short}", "2025-01-07T12:00:00.000Z")

        assert restored.title == "Lost title"
        assert restored.version == issue.version + 1
        assert project.attic.list() == []
