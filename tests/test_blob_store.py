import io

import pytest
from botocore.exceptions import ClientError

import blob_store
from blob_store import BlobStore, BlobStoreConfig, BlobStoreError


class FakeS3:
    def __init__(self, fail=False):
        self.fail = fail
        self.objects = {}

    def put_object(self, **kwargs):
        if self.fail:
            raise ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject")
        self.objects[(kwargs["Bucket"], kwargs["Key"])] = kwargs

    def upload_fileobj(self, fh, bucket, key, ExtraArgs=None):
        if self.fail:
            raise ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject")
        self.objects[(bucket, key)] = {"Body": fh.read(), "ExtraArgs": ExtraArgs}

    def generate_presigned_url(self, ClientMethod, Params, ExpiresIn):
        return f"https://s3.example.com/{Params['Bucket']}/{Params['Key']}?expires={ExpiresIn}"


def test_put_returns_presigned_url():
    s3 = FakeS3()
    store = BlobStore(BlobStoreConfig(bucket="videos", presign_ttl_s=120), client=s3)

    url = store.put("other-bucket", "k/a.mp4", b"data", content_type="video/mp4")

    assert url == "https://s3.example.com/other-bucket/k/a.mp4?expires=120"
    assert s3.objects[("other-bucket", "k/a.mp4")]["ContentType"] == "video/mp4"


def test_put_file_uses_default_bucket_and_public_url():
    s3 = FakeS3()
    store = BlobStore(BlobStoreConfig(bucket="videos", public_base_url="https://cdn.example.com"), client=s3)

    url = store.put_file(None, "bulk-ads/a.mp4", io.BytesIO(b"stream"), content_type="video/mp4")

    assert url == "https://cdn.example.com/bulk-ads/a.mp4"
    assert s3.objects[("videos", "bulk-ads/a.mp4")]["Body"] == b"stream"


def test_storage_errors_are_wrapped():
    store = BlobStore(BlobStoreConfig(bucket="videos"), client=FakeS3(fail=True))
    with pytest.raises(BlobStoreError):
        store.put(None, "k", b"x")
    with pytest.raises(BlobStoreError):
        store.put_file(None, "k", io.BytesIO(b"x"))


def test_build_key_is_unique_and_prefixed():
    store = BlobStore(BlobStoreConfig(bucket="videos", prefix="campaign-uploads"), client=FakeS3())

    k1 = store.build_key("dir/clip.mp4")
    k2 = store.build_key("clip.mp4")

    assert k1.startswith("campaign-uploads/") and k1.endswith("-clip.mp4")
    assert k1 != k2


def test_config_from_env(monkeypatch):
    monkeypatch.setattr(blob_store, "load_dotenv", lambda **kw: None)
    monkeypatch.setenv("BLOB_BUCKET", "videos")
    monkeypatch.setenv("BLOB_PREFIX", "/ads/")
    monkeypatch.setenv("BLOB_PUBLIC_BASE_URL", "https://cdn.example.com/")
    monkeypatch.delenv("BLOB_ENDPOINT_URL", raising=False)

    cfg = BlobStoreConfig.from_env()

    assert cfg.bucket == "videos"
    assert cfg.prefix == "ads"
    assert cfg.public_base_url == "https://cdn.example.com"
    assert cfg.endpoint_url is None


def test_config_requires_bucket(monkeypatch):
    monkeypatch.setattr(blob_store, "load_dotenv", lambda **kw: None)
    monkeypatch.delenv("BLOB_BUCKET", raising=False)
    with pytest.raises(ValueError):
        BlobStoreConfig.from_env()
