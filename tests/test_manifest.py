"""
Tests for memconf.manifest — copy ledger, rollback, recovery and copy driver.
"""

import hashlib
import json
import os
import pytest

from memconf.manifest import (
    CopyManifest,
    ManifestEntry,
    ManifestError,
    ManifestLedger,
    copy_manifest_entries,
    is_incomplete,
)


@pytest.fixture
def ledger(tmp_path):
    return ManifestLedger(str(tmp_path / "manifests"))


@pytest.fixture
def tree(tmp_path):
    """Source tree with three files; empty target root."""
    src = tmp_path / "src"
    (src / "sub").mkdir(parents=True)
    (src / "a.md").write_text("alpha")
    (src / "b.md").write_text("bravo")
    (src / "sub" / "c.md").write_text("charlie")
    return str(src), str(tmp_path / "dst")


FILES = ["a.md", "b.md", os.path.join("sub", "c.md")]


def _copy(entry):
    os.makedirs(os.path.dirname(entry.target_path), exist_ok=True)
    with open(entry.source_path, "rb") as s, open(entry.target_path, "wb") as d:
        d.write(s.read())


class TestCreate:
    def test_entries_pending_with_checksums(self, ledger, tree):
        src, dst = tree
        m = ledger.create_manifest("brain", src, dst, FILES)
        assert m.id.startswith("migration-")
        assert [e.status for e in m.entries] == ["pending"] * 3
        assert m.entries[0].source_checksum == hashlib.sha256(b"alpha").hexdigest()
        assert m.entries[0].target_path == os.path.join(dst, "a.md")
        assert m.completed_at is None

    def test_persisted_before_copy(self, ledger, tree):
        src, dst = tree
        m = ledger.create_manifest("brain", src, dst, FILES)
        assert os.path.exists(ledger.manifest_path(m.id))
        assert not os.path.exists(dst)
        assert ledger.get_manifest(m.id) == m

    def test_unreadable_source_empty_checksum(self, ledger, tree):
        src, dst = tree
        m = ledger.create_manifest("brain", src, dst, ["missing.md"])
        assert m.entries[0].source_checksum == ""

    def test_escape_rejected(self, ledger, tree):
        src, dst = tree
        with pytest.raises(ManifestError, match="escapes"):
            ledger.create_manifest("brain", src, dst, ["../outside.md"])

    def test_get_missing(self, ledger):
        assert ledger.get_manifest("migration-nope") is None

    def test_id_sanitized_in_filename(self, ledger):
        path = ledger.manifest_path("../x/y")
        assert os.path.basename(path) == "___x_y.manifest.json"


class TestTransitions:
    def test_copy_then_verify(self, ledger, tree):
        src, dst = tree
        m = ledger.create_manifest("brain", src, dst, FILES)
        e = m.entries[0]
        _copy(e)
        ledger.mark_entry_copied(m, e)
        assert e.status == "copied"
        assert e.target_checksum == e.source_checksum
        assert e.copied_at
        assert ledger.verify_entry(m, e)
        assert e.status == "verified"

    def test_each_transition_persisted(self, ledger, tree):
        src, dst = tree
        m = ledger.create_manifest("brain", src, dst, FILES)
        e = m.entries[1]
        _copy(e)
        ledger.mark_entry_copied(m, e)
        on_disk = ledger.get_manifest(m.id)
        assert on_disk.entries[1].status == "copied"

    def test_corrupted_target_fails_verification(self, ledger, tree):
        src, dst = tree
        m = ledger.create_manifest("brain", src, dst, FILES)
        e = m.entries[0]
        _copy(e)
        ledger.mark_entry_copied(m, e)
        with open(e.target_path, "w") as f:
            f.write("alp")
        assert not ledger.verify_entry(m, e)
        assert e.status == "failed"
        assert e.error.startswith("Checksum mismatch: expected ")

    def test_copied_without_target_fails(self, ledger, tree):
        src, dst = tree
        m = ledger.create_manifest("brain", src, dst, FILES)
        e = m.entries[0]
        ledger.mark_entry_copied(m, e)
        assert e.status == "failed"
        assert "target checksum" in e.error

    def test_verify_pending_is_noop(self, ledger, tree):
        src, dst = tree
        m = ledger.create_manifest("brain", src, dst, FILES)
        assert not ledger.verify_entry(m, m.entries[0])
        assert m.entries[0].status == "pending"

    def test_mark_failed(self, ledger, tree):
        src, dst = tree
        m = ledger.create_manifest("brain", src, dst, FILES)
        ledger.mark_entry_failed(m, m.entries[2], "disk full")
        assert m.entries[2].status == "failed"
        assert m.entries[2].error == "disk full"

    def test_no_regression_from_verified(self, ledger, tree):
        src, dst = tree
        m = ledger.create_manifest("brain", src, dst, FILES)
        e = m.entries[0]
        _copy(e)
        ledger.mark_entry_copied(m, e)
        ledger.verify_entry(m, e)
        with pytest.raises(ManifestError, match="Illegal transition"):
            ledger.mark_entry_failed(m, e, "late")


class TestIncomplete:
    def _manifest(self, completed_at, statuses):
        return CopyManifest(
            id="m", project="p", source_root="/s", target_root="/t",
            started_at="now", completed_at=completed_at,
            entries=[ManifestEntry(f"/s/{i}", f"/t/{i}", "", status=s)
                     for i, s in enumerate(statuses)],
        )

    def test_not_completed(self):
        assert is_incomplete(self._manifest(None, ["verified"]))

    def test_completed_but_not_all_verified(self):
        assert is_incomplete(self._manifest("t", ["verified", "copied"]))
        assert is_incomplete(self._manifest("t", ["verified", "failed"]))

    def test_completed_all_verified(self):
        assert not is_incomplete(self._manifest("t", ["verified", "verified"]))

    def test_completed_empty(self):
        assert not is_incomplete(self._manifest("t", []))


class TestRollbackPartialCopy:
    def test_three_entries_two_removed(self, ledger, tree):
        """verified + copied targets go; the pending target is untouched."""
        src, dst = tree
        m = ledger.create_manifest("brain", src, dst, FILES)
        verified, pending, copied = m.entries

        _copy(verified)
        ledger.mark_entry_copied(m, verified)
        ledger.verify_entry(m, verified)
        _copy(copied)
        ledger.mark_entry_copied(m, copied)
        # A pre-existing file at the pending entry's target must survive
        _copy(pending)

        result = ledger.rollback_partial_copy(m)
        assert result.success
        assert result.files_rolled_back == 2
        assert result.failures == []
        assert not os.path.exists(verified.target_path)
        assert not os.path.exists(copied.target_path)
        assert os.path.exists(pending.target_path)
        assert not os.path.exists(ledger.manifest_path(m.id))
        assert not os.path.exists(os.path.dirname(copied.target_path))
        assert os.path.isdir(dst)

    def test_target_root_removed_when_empty(self, ledger, tree):
        src, dst = tree
        m = ledger.create_manifest("brain", src, dst, FILES)
        copy_manifest_entries(ledger, m)
        result = ledger.rollback_partial_copy(m)
        assert result.files_rolled_back == 3
        assert not os.path.exists(dst)

    def test_sources_untouched(self, ledger, tree):
        src, dst = tree
        m = ledger.create_manifest("brain", src, dst, FILES)
        copy_manifest_entries(ledger, m)
        ledger.rollback_partial_copy(m)
        assert sorted(os.listdir(src)) == ["a.md", "b.md", "sub"]

    def test_deletion_failure_collected(self, ledger, tree, monkeypatch):
        src, dst = tree
        m = ledger.create_manifest("brain", src, dst, FILES)
        copy_manifest_entries(ledger, m)
        real_unlink = os.unlink
        blocked = m.entries[0].target_path

        def flaky(path, *args, **kwargs):
            if path == blocked:
                raise PermissionError("denied")
            return real_unlink(path, *args, **kwargs)

        monkeypatch.setattr(os, "unlink", flaky)
        result = ledger.rollback_partial_copy(m)
        assert not result.success
        assert result.files_rolled_back == 2
        assert len(result.failures) == 1
        assert blocked in result.failures[0]


class TestRecovery:
    def test_incomplete_rolled_back_complete_kept(self, ledger, tree, tmp_path):
        src, dst = tree
        done = ledger.create_manifest("a", src, dst, FILES)
        copy_manifest_entries(ledger, done)

        other_dst = str(tmp_path / "dst2")
        crashed = ledger.create_manifest("b", src, other_dst, FILES)
        e = crashed.entries[0]
        _copy(e)
        ledger.mark_entry_copied(crashed, e)

        result = ledger.recover_incomplete_migrations()
        assert result.found == 1
        assert result.recovered == 1
        assert result.failures == []
        assert not os.path.exists(e.target_path)
        assert ledger.get_manifest(crashed.id) is None
        assert ledger.get_manifest(done.id) is not None
        assert os.path.exists(os.path.join(dst, "a.md"))

    def test_malformed_manifest_skipped(self, ledger, tree):
        src, dst = tree
        os.makedirs(ledger.manifest_dir, exist_ok=True)
        bad = os.path.join(ledger.manifest_dir, "broken.manifest.json")
        with open(bad, "w") as f:
            f.write("{")
        crashed = ledger.create_manifest("b", src, dst, FILES)

        result = ledger.recover_incomplete_migrations()
        assert result.found == 1
        assert result.recovered == 1
        assert len(result.failures) == 1
        assert "broken.manifest.json" in result.failures[0]
        assert ledger.get_manifest(crashed.id) is None

    def test_nothing_to_recover(self, ledger):
        result = ledger.recover_incomplete_migrations()
        assert (result.found, result.recovered, result.failures) == (0, 0, [])

    def test_list_manifests_skips_malformed(self, ledger, tree):
        src, dst = tree
        m = ledger.create_manifest("b", src, dst, FILES)
        with open(os.path.join(ledger.manifest_dir, "x.manifest.json"), "w") as f:
            json.dump({"id": "x"}, f)
        assert [x.id for x in ledger.list_manifests()] == [m.id]


class TestProgress:
    def test_counts(self, ledger, tree):
        src, dst = tree
        m = ledger.create_manifest("brain", src, dst, FILES)
        e0, e1, e2 = m.entries
        _copy(e0)
        ledger.mark_entry_copied(m, e0)
        ledger.verify_entry(m, e0)
        _copy(e1)
        ledger.mark_entry_copied(m, e1)
        ledger.mark_entry_failed(m, e2, "x")

        counts = ledger.get_status_counts(m)
        assert counts == {"pending": 0, "copied": 1, "verified": 1, "failed": 1}
        progress = ledger.get_progress(m)
        assert progress.total == 3
        assert progress.completed == 2
        assert progress.failed == 1
        assert progress.percent_complete == 67
        assert ledger.get_failed_entries(m) == [e2]
        assert ledger.get_pending_entries(m) == []

    def test_empty(self, ledger, tree):
        src, dst = tree
        m = ledger.create_manifest("brain", src, dst, [])
        assert ledger.get_progress(m).percent_complete == 0


class TestCopyDriver:
    def test_full_copy(self, ledger, tree):
        src, dst = tree
        m = ledger.create_manifest("brain", src, dst, FILES)
        result = copy_manifest_entries(ledger, m)
        assert result.completed
        assert (result.copied, result.verified, result.failed) == (3, 3, 0)
        assert not ledger.is_incomplete(m)
        with open(os.path.join(dst, "sub", "c.md")) as f:
            assert f.read() == "charlie"
        assert ledger.get_manifest(m.id).completed_at is not None

    def test_missing_source_fails_entry(self, ledger, tree):
        src, dst = tree
        m = ledger.create_manifest("brain", src, dst, ["a.md", "gone.md"])
        result = copy_manifest_entries(ledger, m)
        assert not result.completed
        assert result.failed == 1
        assert m.entries[1].status == "failed"
        assert m.entries[1].error.startswith("Copy failed")

    def test_resume_after_crash(self, ledger, tree):
        src, dst = tree
        m = ledger.create_manifest("brain", src, dst, FILES)
        e = m.entries[0]
        _copy(e)
        ledger.mark_entry_copied(m, e)

        resumed = ledger.get_manifest(m.id)
        result = copy_manifest_entries(ledger, resumed)
        assert result.completed
        assert result.copied == 2
        assert result.verified == 3
