import io
import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT_DIR))

from asset_staging import AssetStager
from bulk_ads import BatchSettings
from fakes import FakeMetaClient


@pytest.fixture()
def upload_dir(tmp_path):
    d = tmp_path / "uploads"
    d.mkdir()
    return d


@pytest.fixture()
def stager(upload_dir):
    return AssetStager(str(upload_dir))


@pytest.fixture()
def settings():
    # No polling in tests: fake videos are ready immediately and carry no Meta thumbnail.
    return BatchSettings(max_workers=1, wait_for_ready=False, thumbnail_timeout_s=0)


@pytest.fixture()
def fake_client():
    return FakeMetaClient()


@pytest.fixture()
def stage_videos(stager):
    def _stage(*names: str):
        return [stager.stage(io.BytesIO(f"video bytes of {n}".encode()), n, "video/mp4") for n in names]

    return _stage


@pytest.fixture(autouse=True)
def _no_api_key(monkeypatch):
    monkeypatch.delenv("SERVICE_API_KEY", raising=False)
