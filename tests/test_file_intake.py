# tests/test_file_intake.py

import pytest

from file_intake import FileIntake


@pytest.fixture
def intake(tmp_path):
    intake = FileIntake(tmp_path)
    intake.ensure_layout()
    return intake


def touch(path, text="x"):
    path.write_text(text)
    return path


class TestFileIntake:
    def test_layout_created(self, intake, tmp_path):
        for name in ("incoming", "processing", "archive", "error"):
            assert (tmp_path / name).is_dir()

    def test_pending_order(self, intake):
        touch(intake.incoming / "b.csv")
        touch(intake.incoming / "a.CSV")
        touch(intake.incoming / "notes.md")
        touch(intake.processing / "z.csv")

        assert [p.name for p in intake.pending()] == ["z.csv", "a.CSV", "b.csv"]

    def test_pending_without_layout(self, tmp_path):
        assert FileIntake(tmp_path / "missing").pending() == []

    def test_claim_moves_to_processing(self, intake):
        source = touch(intake.incoming / "tx.csv")
        claimed = intake.claim(source)
        assert claimed == intake.processing / "tx.csv"
        assert claimed.exists()
        assert not source.exists()

    def test_claim_leftover_is_noop(self, intake):
        leftover = touch(intake.processing / "tx.csv")
        assert intake.claim(leftover) == leftover

    def test_archive_does_not_overwrite(self, intake):
        touch(intake.archive / "tx.csv", "old")
        current = touch(intake.processing / "tx.csv", "new")

        target = intake.archive_file(current)

        assert target.parent == intake.archive
        assert target.name != "tx.csv"
        assert target.name.startswith("tx_")
        assert target.read_text() == "new"
        assert (intake.archive / "tx.csv").read_text() == "old"

    def test_reject_file(self, intake):
        current = touch(intake.processing / "tx.csv")
        target = intake.reject_file(current)
        assert target == intake.error / "tx.csv"
        assert not current.exists()
