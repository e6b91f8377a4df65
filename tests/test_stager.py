import os
import string
import time
from datetime import datetime, timedelta, timezone

import pytest

from tierstore.stager import StageMeta, Stager


@pytest.fixture
def stager(tmp_path):
    return Stager(str(tmp_path))


def now():
    return datetime.now(timezone.utc)


def test_stage_path_no_collision(stager):
    assert stager.stage_path("a/b__c") != stager.stage_path("a__b/c")


def test_stage_path_deterministic(tmp_path):
    first = Stager(str(tmp_path)).stage_path("foo/bar.mp4")
    second = Stager(str(tmp_path)).stage_path("foo/bar.mp4")
    assert first == second
    name = os.path.basename(first)
    prefix, _, rest = name.partition("_")
    assert rest == "bar.mp4"
    assert len(prefix) == 16
    assert set(prefix) <= set(string.hexdigits.lower())


def test_stage_path_preserves_basename(stager, tmp_path):
    path = stager.stage_path("recordings/cam1/clip.mp4")
    assert os.path.basename(path).endswith("_clip.mp4")
    assert os.path.dirname(path) == str(tmp_path)
    prefix = os.path.basename(path).split("_", 1)[0]
    assert len(prefix) == 16


def test_meta_path(stager):
    assert stager.meta_path("/x/y") == "/x/y.meta"


def test_is_stale_no_sidecar(stager):
    assert stager.is_stale("/nonexistent", "abc", now(), 100) is True


def test_is_stale_matching_meta(stager, tmp_path):
    stage = str(tmp_path / "test")
    moment = now()
    stager.write_meta(stage, StageMeta(digest="abc123", mod_time=moment, size=100))
    assert stager.is_stale(stage, "abc123", moment, 100) is False


def test_is_stale_digest_mismatch(stager, tmp_path):
    stage = str(tmp_path / "test")
    moment = now()
    stager.write_meta(stage, StageMeta(digest="abc123", mod_time=moment, size=100))
    assert stager.is_stale(stage, "different", moment, 100) is True


def test_is_stale_size_mismatch(stager, tmp_path):
    stage = str(tmp_path / "test")
    moment = now()
    stager.write_meta(stage, StageMeta(digest="abc", mod_time=moment, size=100))
    assert stager.is_stale(stage, "abc", moment, 999) is True


def test_is_stale_mtime_mismatch(stager, tmp_path):
    stage = str(tmp_path / "test")
    moment = now()
    stager.write_meta(stage, StageMeta(digest="abc", mod_time=moment, size=100))
    assert stager.is_stale(stage, "abc", moment + timedelta(seconds=1), 100) is True


def test_is_stale_ignores_unset_values(stager, tmp_path):
    stage = str(tmp_path / "test")
    stager.write_meta(stage, StageMeta(digest="abc", mod_time=now(), size=100))
    assert stager.is_stale(stage, "", None, 0) is False


def test_is_stale_malformed_sidecar(stager, tmp_path):
    stage = str(tmp_path / "bad")
    (tmp_path / "bad.meta").write_text("not json")
    assert stager.is_stale(stage, "", None, 0) is True


def test_write_and_read_meta_round_trip(stager, tmp_path):
    stage = str(tmp_path / "roundtrip")
    original = StageMeta(digest="deadbeef", mod_time=now(), size=42)
    stager.write_meta(stage, original)
    assert stager.read_meta(stage) == original


def test_read_meta_missing_raises(stager, tmp_path):
    with pytest.raises(FileNotFoundError):
        stager.read_meta(str(tmp_path / "missing"))


def test_stage_meta_json_round_trip_without_mtime():
    meta = StageMeta(digest="d", mod_time=None, size=3)
    assert StageMeta.from_json(meta.to_json()) == meta


def test_clean_stale_removes_both(stager, tmp_path):
    stage = tmp_path / "staged"
    other = tmp_path / "other.bin"
    stage.write_bytes(b"data")
    other.write_bytes(b"keep")
    stager.write_meta(str(stage), StageMeta(digest="d", size=4))
    meta_file = tmp_path / "staged.meta"
    assert meta_file.exists()

    stager.clean_stale(str(stage))

    assert stage.exists() is False
    assert meta_file.exists() is False
    assert other.read_bytes() == b"keep"
    assert stager.is_stale(str(stage), "d", None, 4) is True

    stager.clean_stale(str(stage))
    assert sorted(os.listdir(tmp_path)) == ["other.bin"]


def test_sweep_removes_only_old_files(stager, tmp_path):
    old = tmp_path / "old.bin"
    fresh = tmp_path / "fresh.bin"
    old.write_bytes(b"o")
    fresh.write_bytes(b"f")
    stager.write_meta(str(old), StageMeta(size=1))
    stager.write_meta(str(fresh), StageMeta(size=1))
    (tmp_path / "subdir").mkdir()
    past = time.time() - 7200
    os.utime(old, (past, past))
    os.utime(str(old) + ".meta", (past, past))

    removed = stager.sweep_staging_dir(3600)

    assert removed == 1
    assert sorted(os.listdir(tmp_path)) == ["fresh.bin", "fresh.bin.meta", "subdir"]


def test_sweep_missing_dir_returns_zero(tmp_path):
    assert Stager(str(tmp_path / "absent")).sweep_staging_dir(1) == 0