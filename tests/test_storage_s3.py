"""Tests for S3StorageProvider against an in-process fake boto3 client."""

from __future__ import annotations

import sys
from datetime import UTC, datetime

import pytest

from kgvault.errors import CapabilityMissingError, NotFoundError, StorageError, StorageUnavailableError
from kgvault.storage import ReadOptions, S3StorageProvider, WriteOptions
from kgvault.storage.s3 import S3Credentials, is_not_found


class FakeClientError(Exception):
    """Shape of botocore.exceptions.ClientError: carries a ``response`` dict."""

    def __init__(self, code: str, status: int = 400) -> None:
        super().__init__(code)
        self.response = {"Error": {"Code": code}, "ResponseMetadata": {"HTTPStatusCode": status}}


class FakeBody:
    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0
        self.closed = False

    def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            size = len(self._data) - self._pos
        chunk = self._data[self._pos : self._pos + size]
        self._pos += len(chunk)
        return chunk

    def close(self) -> None:
        self.closed = True


class FakeS3Client:
    def __init__(self, *, bucket_exists: bool = True) -> None:
        self.bucket_exists = bucket_exists
        self.objects: dict[str, dict] = {}
        self.calls: list[tuple[str, dict]] = []
        self.bodies: list[FakeBody] = []
        self.fail_with: Exception | None = None

    def _record(self, name: str, params: dict) -> None:
        self.calls.append((name, params))
        if self.fail_with is not None:
            raise self.fail_with

    def head_bucket(self, **params):
        self._record("head_bucket", params)
        if not self.bucket_exists:
            raise FakeClientError("404", 404)
        return {}

    def create_bucket(self, **params):
        self._record("create_bucket", params)
        self.bucket_exists = True
        return {}

    def put_object(self, **params):
        self._record("put_object", params)
        self.objects[params["Key"]] = {
            "Body": params["Body"],
            "ContentType": params.get("ContentType"),
            "Metadata": params.get("Metadata", {}),
            "LastModified": datetime(2026, 1, 1, tzinfo=UTC),
        }
        return {}

    def put_object_acl(self, **params):
        self._record("put_object_acl", params)
        return {}

    def get_object(self, **params):
        self._record("get_object", params)
        stored = self.objects.get(params["Key"])
        if stored is None:
            raise FakeClientError("NoSuchKey", 404)
        body = FakeBody(stored["Body"])
        self.bodies.append(body)
        return {"Body": body}

    def head_object(self, **params):
        self._record("head_object", params)
        stored = self.objects.get(params["Key"])
        if stored is None:
            raise FakeClientError("404", 404)
        return {"ContentLength": len(stored["Body"]), "LastModified": stored["LastModified"]}

    def delete_object(self, **params):
        self._record("delete_object", params)
        self.objects.pop(params["Key"], None)
        return {}

    def list_objects_v2(self, **params):
        self._record("list_objects_v2", params)
        keys = sorted(k for k in self.objects if k.startswith(params["Prefix"]))
        start = int(params.get("ContinuationToken", 0))
        page = keys[start : start + params["MaxKeys"]]
        end = start + len(page)
        response = {"Contents": [{"Key": k} for k in page], "IsTruncated": end < len(keys)}
        if end < len(keys):
            response["NextContinuationToken"] = str(end)
        return response


@pytest.fixture
def client() -> FakeS3Client:
    return FakeS3Client()


@pytest.fixture
def provider(client) -> S3StorageProvider:
    return S3StorageProvider("vault", prefix="kg/backups", client=client, list_page_size=2)


async def _collect(provider, prefix: str = "") -> list[str]:
    return [path async for path in provider.list(prefix)]


# ---------------------------------------------------------------------------
# Core operations
# ---------------------------------------------------------------------------


class TestS3Operations:
    async def test_write_uses_prefixed_key(self, provider, client):
        await provider.write_file("checkpoints/c1.json", b"{}")
        assert "kg/backups/checkpoints/c1.json" in client.objects

    async def test_round_trip_and_body_closed(self, provider, client):
        await provider.write_file("a.json", b'{"x": 1}')
        assert await provider.read_file("a.json") == b'{"x": 1}'
        assert client.bodies[-1].closed

    async def test_content_type_and_metadata_forwarded(self, provider, client):
        await provider.write_file(
            "a.json",
            "{}",
            WriteOptions(content_type="application/json", metadata={"reason": "manual"}),
        )
        stored = client.objects["kg/backups/a.json"]
        assert stored["ContentType"] == "application/json"
        assert stored["Metadata"] == {"reason": "manual"}

    async def test_encryption_params(self, client):
        provider = S3StorageProvider(
            "vault", client=client, server_side_encryption="aws:kms", kms_key_id="key-1"
        )
        await provider.write_file("a.json", b"{}")
        _, params = client.calls[-1]
        assert params["ServerSideEncryption"] == "aws:kms"
        assert params["SSEKMSKeyId"] == "key-1"

    async def test_make_public_sets_acl(self, client):
        provider = S3StorageProvider("vault", client=client, make_public=True)
        await provider.write_file("a.json", b"{}")
        assert client.calls[-1][0] == "put_object_acl"
        assert client.calls[-1][1]["ACL"] == "public-read"

    async def test_read_missing_raises_not_found(self, provider):
        with pytest.raises(NotFoundError) as info:
            await provider.read_file("missing.json")
        assert info.value.provider_id == "s3:vault/kg/backups"

    async def test_remove_is_idempotent(self, provider, client):
        await provider.write_file("a.json", b"{}")
        await provider.remove_file("a.json")
        await provider.remove_file("a.json")
        assert client.objects == {}

    async def test_remove_treats_not_found_as_success(self, provider, client):
        client.fail_with = FakeClientError("NoSuchKey", 404)
        await provider.remove_file("a.json")

    async def test_exists_and_stat(self, provider):
        await provider.write_file("s.json", b"12345")
        assert await provider.exists("s.json")
        info = await provider.stat("s.json")
        assert info.size == 5
        assert info.path == "s.json"
        assert info.modified_at == datetime(2026, 1, 1, tzinfo=UTC)
        assert await provider.stat("other.json") is None
        assert not await provider.exists("other.json")

    async def test_backend_failure_wrapped(self, provider, client):
        client.fail_with = FakeClientError("AccessDenied", 403)
        with pytest.raises(StorageError) as info:
            await provider.write_file("a.json", b"{}")
        assert not isinstance(info.value, NotFoundError)
        assert isinstance(info.value.cause, FakeClientError)


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------


class TestS3Listing:
    async def test_paginates_and_strips_prefix(self, provider, client):
        for name in ("a/1.json", "a/2.json", "a/3.json", "b/1.json"):
            await provider.write_file(name, b"x")
        assert await _collect(provider, "a") == ["a/1.json", "a/2.json", "a/3.json"]
        list_calls = [params for name, params in client.calls if name == "list_objects_v2"]
        assert len(list_calls) == 2
        assert list_calls[1]["ContinuationToken"] == "2"

    async def test_trailing_slash_prefix(self, provider, client):
        await provider.write_file("a/1.json", b"x")
        await provider.write_file("ab.json", b"x")
        assert await _collect(provider, "a/") == ["a/1.json"]

    async def test_list_everything(self, provider):
        await provider.write_file("x.json", b"x")
        await provider.write_file("y/z.json", b"x")
        assert await _collect(provider) == ["x.json", "y/z.json"]


# ---------------------------------------------------------------------------
# Readiness
# ---------------------------------------------------------------------------


class TestS3EnsureReady:
    async def test_existing_bucket(self, provider, client):
        await provider.ensure_ready()
        assert [name for name, _ in client.calls] == ["head_bucket"]

    async def test_missing_bucket_without_auto_create(self):
        provider = S3StorageProvider("vault", client=FakeS3Client(bucket_exists=False))
        with pytest.raises(StorageUnavailableError):
            await provider.ensure_ready()

    async def test_missing_bucket_auto_created_with_region(self):
        client = FakeS3Client(bucket_exists=False)
        provider = S3StorageProvider("vault", client=client, auto_create=True, region="eu-west-1")
        await provider.ensure_ready()
        name, params = client.calls[-1]
        assert name == "create_bucket"
        assert params["CreateBucketConfiguration"] == {"LocationConstraint": "eu-west-1"}

    async def test_access_denied_is_unavailable(self, client):
        client.fail_with = FakeClientError("AccessDenied", 403)
        provider = S3StorageProvider("vault", client=client, auto_create=True)
        with pytest.raises(StorageUnavailableError):
            await provider.ensure_ready()


# ---------------------------------------------------------------------------
# Streaming and helpers
# ---------------------------------------------------------------------------


class TestS3Misc:
    async def test_read_stream_chunks_and_closes(self, provider, client):
        await provider.write_file("big.bin", b"y" * 10)
        chunks = [c async for c in provider.open_read_stream("big.bin", ReadOptions(chunk_size=4))]
        assert chunks == [b"yyyy", b"yyyy", b"yy"]
        assert client.bodies[-1].closed

    async def test_read_stream_missing(self, provider):
        with pytest.raises(NotFoundError):
            async for _ in provider.open_read_stream("missing.bin"):
                pass

    def test_is_not_found(self):
        assert is_not_found(FakeClientError("NoSuchKey"))
        assert is_not_found(FakeClientError("404"))
        assert not is_not_found(FakeClientError("AccessDenied"))
        assert not is_not_found(ValueError("plain"))

    def test_credentials_repr_redacts_secret(self):
        creds = S3Credentials("AKIA123", "super-secret")
        assert "super-secret" not in repr(creds)

    def test_bucket_required(self):
        with pytest.raises(ValueError):
            S3StorageProvider("")

    def test_option_bounds(self):
        provider = S3StorageProvider(
            "vault", upload_concurrency=0, upload_part_size=1, list_page_size=5000
        )
        assert provider.upload_concurrency == 1
        assert provider.upload_part_size == 5 * 1024 * 1024
        assert provider.list_page_size == 1000

    async def test_missing_boto3_raises_capability_error(self, monkeypatch):
        monkeypatch.setitem(sys.modules, "boto3", None)
        provider = S3StorageProvider("vault")
        with pytest.raises(CapabilityMissingError) as info:
            await provider.write_file("a.json", b"{}")
        assert "s3" in str(info.value)
