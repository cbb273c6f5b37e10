import io
import os

import pytest

from asset_staging import AssetStager, StagingError, StagingSession


def test_stage_persists_bytes_and_metadata(stager, upload_dir):
    asset = stager.stage(io.BytesIO(b"\x00\x01video"), "../../etc/Promo Clip.MOV", "video/quicktime")

    assert asset.filename == "Promo Clip.MOV"
    assert asset.stem == "Promo Clip"
    assert asset.size == 7
    assert asset.content_type == "video/quicktime"
    assert asset.path.endswith(".MOV")
    assert os.path.dirname(asset.path) == str(upload_dir)
    with open(asset.path, "rb") as fh:
        assert fh.read() == b"\x00\x01video"
    assert stager.live_paths() == [asset.path]


def test_staged_file_can_be_read_more_than_once(stager):
    asset = stager.stage(io.BytesIO(b"abc"), "a.mp4")
    for _ in range(2):
        with open(asset.path, "rb") as fh:
            assert fh.read() == b"abc"


def test_empty_upload_is_rejected_and_nothing_is_left_behind(stager, upload_dir):
    with pytest.raises(StagingError) as exc:
        stager.stage(io.BytesIO(b""), "empty.mp4")
    assert exc.value.filename == "empty.mp4"
    assert os.listdir(upload_dir) == []


def test_unwritable_upload_dir_raises_staging_error(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x")
    stager = AssetStager(str(blocker / "uploads"))

    with pytest.raises(StagingError):
        stager.stage(io.BytesIO(b"abc"), "a.mp4")


def test_release_is_idempotent(stager):
    asset = stager.stage(io.BytesIO(b"abc"), "a.mp4")

    assert stager.release(asset) is True
    assert stager.release(asset) is False
    assert not os.path.exists(asset.path)
    assert stager.live_paths() == []


def test_stage_path_copies_local_file(stager, tmp_path):
    src = tmp_path / "local.mp4"
    src.write_bytes(b"local video")

    asset = stager.stage_path(str(src))

    assert asset.filename == "local.mp4"
    assert asset.path != str(src)
    stager.release(asset)
    assert src.exists()


def test_stage_path_missing_file(stager, tmp_path):
    with pytest.raises(StagingError):
        stager.stage_path(str(tmp_path / "missing.mp4"))


def test_session_releases_everything_on_error(stager, upload_dir):
    with pytest.raises(RuntimeError):
        with stager.session() as session:
            session.stage(io.BytesIO(b"a"), "a.mp4")
            session.stage(io.BytesIO(b"b"), "b.mp4")
            raise RuntimeError("handler crashed")
    assert os.listdir(upload_dir) == []


def test_session_releases_each_asset_once(stager, monkeypatch):
    asset = stager.stage(io.BytesIO(b"a"), "a.mp4")
    calls = []
    original = stager.release

    def counting_release(a):
        calls.append(a.path)
        return original(a)

    monkeypatch.setattr(stager, "release", counting_release)
    session = StagingSession(stager, [asset, asset])
    session.adopt(asset)

    assert session.release_all() == []
    assert session.release_all() == []
    assert calls == [asset.path]


def test_session_reports_release_failures(stager):
    asset = stager.stage(io.BytesIO(b"a"), "a.mp4")

    class BrokenStager:
        def release(self, a):
            raise StagingError("permission denied", filename=a.filename)

    errors = StagingSession(BrokenStager(), [asset]).release_all()

    assert errors == ["Failed to release staged file a.mp4: permission denied"]
    stager.release(asset)


def test_truncated_upload_is_rejected(stager, upload_dir):
    with pytest.raises(StagingError) as exc:
        stager.stage(io.BytesIO(b"abc"), "short.mp4", "video/mp4", declared_size=10)

    assert "got 3 of 10 bytes" in str(exc.value)
    assert os.listdir(upload_dir) == []
    assert stager.live_paths() == []


def test_matching_declared_size_is_accepted(stager):
    asset = stager.stage(io.BytesIO(b"abc"), "ok.mp4", declared_size=3)
    assert asset.size == 3
    stager.release(asset)
