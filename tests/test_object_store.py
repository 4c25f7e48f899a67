from __future__ import annotations

import io

import pytest
from botocore.exceptions import ClientError

from photo_diary.errors import ObjectStoreError
from photo_diary.hasher import CONTENT_HASH_ALGO
from photo_diary.object_store import LocalObjectStore, S3ObjectStore


def test_local_store_put_get_remove_is_idempotent(tmp_path) -> None:
    store = LocalObjectStore(tmp_path / "bucket")
    store.put("owner/p/thumbnail.webp", b"thumb", "image/webp")

    assert store.get("owner/p/thumbnail.webp") == b"thumb"
    store.remove(["owner/p/thumbnail.webp", "owner/p/never-written.webp"])
    store.remove(["owner/p/thumbnail.webp"])
    assert not store.exists("owner/p/thumbnail.webp")


def test_local_store_rejects_path_traversal(tmp_path) -> None:
    store = LocalObjectStore(tmp_path / "bucket")

    with pytest.raises(ObjectStoreError):
        store.put("../escape.txt", b"x", "text/plain")


def test_local_signed_urls_verify_until_expiry(tmp_path, clock) -> None:
    store = LocalObjectStore(tmp_path / "bucket", secret="s3cret", clock=clock)
    store.put("owner/p/medium.webp", b"medium", "image/webp")

    url = store.sign_url("owner/p/medium.webp", 60)

    assert store.verify_signed_url(url)
    assert not store.verify_signed_url(url.replace("medium.webp", "original.jpg"))
    clock.advance(61)
    assert not store.verify_signed_url(url)
    with pytest.raises(ObjectStoreError):
        store.sign_url("owner/p/missing.webp", 60)


def test_local_public_url_only_when_public(tmp_path) -> None:
    private = LocalObjectStore(tmp_path / "a")
    public = LocalObjectStore(tmp_path / "b", base_url="https://media.test", public=True)

    assert private.public_url("o/p/thumbnail.webp") is None
    assert public.public_url("o/p/thumbnail.webp") == "https://media.test/o/p/thumbnail.webp"


class _FakeS3Client:
    def __init__(self) -> None:
        self.objects: dict[str, dict] = {}
        self.delete_batches: list[list[str]] = []
        self.fail_put = False

    def put_object(self, **params):
        if self.fail_put:
            raise ClientError({"Error": {"Code": "SlowDown", "Message": "slow down"}}, "PutObject")
        self.objects[params["Key"]] = params

    def delete_objects(self, Bucket, Delete):
        keys = [item["Key"] for item in Delete["Objects"]]
        self.delete_batches.append(keys)
        for key in keys:
            self.objects.pop(key, None)
        return {"Deleted": [{"Key": key} for key in keys]}

    def generate_presigned_url(self, operation, Params, ExpiresIn):
        return f"https://{Params['Bucket']}.s3.test/{Params['Key']}?X-Amz-Expires={ExpiresIn}"

    def get_object(self, Bucket, Key):
        return {"Body": io.BytesIO(self.objects[Key]["Body"])}


def test_s3_store_sets_cache_headers_and_chunks_deletes() -> None:
    client = _FakeS3Client()
    store = S3ObjectStore("diary", client=client)

    store.put("o/p/thumbnail.webp", b"t", "image/webp", cache_control="31536000")
    store.remove(["o/p/thumbnail.webp"] + [f"o/p{index}/thumbnail.webp" for index in range(1499)])

    assert client.objects == {}
    assert client.delete_batches[0][0] == "o/p/thumbnail.webp"
    assert [len(batch) for batch in client.delete_batches] == [1000, 500]
    assert store.sign_url("o/p/medium.webp", 300).endswith("X-Amz-Expires=300")


def test_s3_store_maps_client_errors() -> None:
    client = _FakeS3Client()
    client.fail_put = True
    store = S3ObjectStore("diary", client=client)

    with pytest.raises(ObjectStoreError):
        store.put("o/p/thumbnail.webp", b"t", "image/webp")


def test_s3_put_uses_max_age_header() -> None:
    client = _FakeS3Client()
    S3ObjectStore("diary", client=client).put("o/p/medium.webp", b"m", "image/webp", cache_control="31536000")

    assert client.objects["o/p/medium.webp"]["CacheControl"] == "max-age=31536000"
    assert client.objects["o/p/medium.webp"]["ContentType"] == "image/webp"


def test_s3_put_stores_content_hash_as_object_metadata() -> None:
    client = _FakeS3Client()
    store = S3ObjectStore("diary", client=client)

    store.put("o/p/thumbnail.webp", b"t", "image/webp", checksum="00000000deadbeef")
    store.put("o/p/medium.webp", b"m", "image/webp")

    assert client.objects["o/p/thumbnail.webp"]["Metadata"] == {
        "content-hash": "00000000deadbeef",
        "content-hash-algo": CONTENT_HASH_ALGO,
    }
    assert "Metadata" not in client.objects["o/p/medium.webp"]
