"""Tests for issues/doctor.py: the consistency check."""

from __future__ import annotations

import random

from tbd.issues.doctor import FindingKind, check_consistency
from tbd.issues.mapping import IdMapping, save_mapping
from tbd.issues.parser import serialize_issue
from tbd.paths import ids_file

ID_A = "is-01hx5zzkbkactav9wevgemmva0"
ID_B = "is-01hx5zzkbkactav9wevgemmvb0"
MISSING = "is-01hx5zzkbkactav9wevgemmvzz"


def _kinds(report):
    return sorted(f.kind for f in report.findings)


class TestCheckConsistency:
    """Tests for check_consistency()."""

    def test_clean_store(self, service):
        service.create("One")
        service.create("Two")

        report = check_consistency(service.store.data_dir)

        assert report.ok
        assert report.findings == []
        assert report.issues_checked == 2
        assert "no problems" in report.summary()

    def test_missing_mapping_reported(self, store, make_issue):
        store.write(make_issue(id=ID_A))

        report = check_consistency(store.data_dir)

        assert _kinds(report) == [FindingKind.MISSING_MAPPING]
        assert not report.ok

    def test_missing_mapping_fixed(self, store, make_issue):
        store.write(make_issue(id=ID_A))

        report = check_consistency(
            store.data_dir, fix=True, rng=random.Random(1)
        )

        assert report.ok
        assert report.fixed[0].internal_id == ID_A
        assert check_consistency(store.data_dir).findings == []

    def test_orphaned_references(self, store, make_issue):
        store.write(
            make_issue(
                id=ID_A,
                parent_id=MISSING,
                dependencies=[{"type": "blocks", "target": MISSING}],
            )
        )
        mapping = IdMapping()
        mapping.add("aaaa", ID_A)
        save_mapping(ids_file(store.data_dir), mapping)

        report = check_consistency(store.data_dir)

        assert _kinds(report) == sorted(
            [FindingKind.ORPHANED_DEPENDENCY, FindingKind.ORPHANED_PARENT]
        )

    def test_invalid_file(self, store, make_issue):
        store.issues_dir.mkdir(parents=True)
        store.path_for(ID_A).write_text("not an issue", encoding="utf-8")

        report = check_consistency(store.data_dir)

        assert _kinds(report) == [FindingKind.INVALID_FILE]
        assert report.findings[0].path == f"issues/{ID_A}.md"

    def test_duplicate_id_never_fixed(self, store, make_issue):
        """Two files holding one id are reported but left alone."""
        issue = make_issue(id=ID_A)
        store.write(issue)
        store.path_for(ID_B).write_text(
            serialize_issue(issue), encoding="utf-8"
        )
        mapping = IdMapping()
        mapping.add("aaaa", ID_A)
        save_mapping(ids_file(store.data_dir), mapping)

        report = check_consistency(store.data_dir, fix=True)

        kinds = _kinds(report)
        assert FindingKind.DUPLICATE_ID in kinds
        assert FindingKind.ID_MISMATCH in kinds
        assert not report.ok
        assert store.path_for(ID_B).exists()

    def test_duplicate_mapping(self, store, make_issue):
        store.write(make_issue(id=ID_A))
        path = ids_file(store.data_dir)
        path.parent.mkdir(parents=True, exist_ok=True)
        ulid = ID_A.removeprefix("is-")
        path.write_text(f"aaaa: {ulid}\nbbbb: {ulid}\n", encoding="utf-8")

        report = check_consistency(store.data_dir)

        assert _kinds(report) == [FindingKind.DUPLICATE_MAPPING]

    def test_temp_files_removed(self, store, make_issue):
        store.write(make_issue(id=ID_A))
        mapping = IdMapping()
        mapping.add("aaaa", ID_A)
        save_mapping(ids_file(store.data_dir), mapping)
        leftover = store.issues_dir / f".{ID_A}.md.abc123.tmp"
        leftover.write_text("partial", encoding="utf-8")

        before = check_consistency(store.data_dir)
        after = check_consistency(store.data_dir, fix=True)

        assert _kinds(before) == [FindingKind.TEMP_FILE]
        assert after.ok
        assert not leftover.exists()
