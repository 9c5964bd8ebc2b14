from __future__ import annotations

import io
import os
from collections import Counter
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import pytest
from s3_prism.errors import NotFound
from s3_prism.gateway import (
    BucketInfo,
    ByteRange,
    ObjectBody,
    ObjectMetadata,
    ObjectPage,
    ObjectRef,
    ObjectSummary,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Generator

    from botocore.client import BaseClient
    from litestar.response import Stream
    from pytest_databases._service import DockerService


class FakeBody:
    """Blocking file-like body that records how it was consumed."""

    def __init__(self, data: bytes) -> None:
        self._buffer = io.BytesIO(data)
        self.reads = 0
        self.closed = False

    def read(self, size: int = -1) -> bytes:
        self.reads += 1
        return self._buffer.read(size)

    def close(self) -> None:
        self.closed = True


class FakeGateway:
    """In-memory storage gateway counting every upstream call."""

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str], tuple[bytes, str]] = {}
        self.calls: Counter[str] = Counter()
        self.bodies: list[FakeBody] = []
        self.ranges: list[ByteRange | None] = []
        self.failures: dict[str, tuple[int, Exception]] = {}
        self.closed = False

    def put(
        self,
        bucket: str,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> None:
        self.objects[bucket, key] = (data, content_type)

    def fail(self, operation: str, error: Exception, *, on_call: int = 1) -> None:
        self.failures[operation] = (on_call, error)

    @property
    def total_calls(self) -> int:
        return sum(self.calls.values())

    def _record(self, operation: str) -> None:
        self.calls[operation] += 1
        failure = self.failures.get(operation)
        if failure is not None and self.calls[operation] >= failure[0]:
            raise failure[1]

    def _lookup(self, ref: ObjectRef) -> tuple[bytes, str]:
        try:
            return self.objects[ref.bucket, ref.key]
        except KeyError:
            raise NotFound from None

    async def list_buckets(self) -> list[BucketInfo]:
        self._record("list_buckets")
        names = dict.fromkeys(bucket for bucket, _ in self.objects)
        return [BucketInfo(name=name) for name in names]

    async def list_objects(
        self,
        bucket: str,
        *,
        prefix: str = "",
        delimiter: str | None = None,
        max_keys: int = 1000,
        continuation_token: str | None = None,
    ) -> ObjectPage:
        self._record("list_objects")
        objects: list[ObjectSummary] = []
        folders: list[str] = []
        for (obj_bucket, key), (data, _) in self.objects.items():
            if obj_bucket != bucket or not key.startswith(prefix):
                continue
            rest = key[len(prefix) :]
            if delimiter and delimiter in rest:
                folder = prefix + rest.split(delimiter, 1)[0] + delimiter
                if folder not in folders:
                    folders.append(folder)
                continue
            objects.append(ObjectSummary(key=key, size=len(data), etag='"fake"'))
        offset = int(continuation_token or 0)
        page = objects[offset : offset + max_keys]
        more = offset + max_keys < len(objects)
        return ObjectPage(
            objects=page,
            common_prefixes=folders,
            next_continuation_token=str(offset + max_keys) if more else None,
            is_truncated=more,
            key_count=len(page) + len(folders),
        )

    async def head_object(self, ref: ObjectRef) -> ObjectMetadata:
        self._record("head_object")
        data, content_type = self._lookup(ref)
        return ObjectMetadata(
            content_type=content_type,
            content_length=len(data),
            etag='"fake"',
            storage_class="STANDARD",
        )

    async def get_object(
        self, ref: ObjectRef, byte_range: ByteRange | None = None
    ) -> ObjectBody:
        self._record("get_object")
        data, _ = self._lookup(ref)
        self.ranges.append(byte_range)
        if byte_range is not None:
            data = data[byte_range.start : byte_range.end + 1]
        body = FakeBody(data)
        self.bodies.append(body)
        return ObjectBody(body, len(data))

    async def presign_get(self, ref: ObjectRef, expires_in: int) -> str:
        self._record("presign_get")
        return f"https://storage.test/{ref.bucket}/{ref.key}?X-Amz-Expires={expires_in}"

    def describe(self) -> str:
        return "fake"

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def read_stream() -> Callable[[Stream], Any]:
    """Return a coroutine function collecting a ``Stream`` response body."""

    async def read(response: Stream) -> bytes:
        iterator: Any = response.iterator
        if callable(iterator):
            iterator = iterator()
        chunks: list[bytes] = [chunk async for chunk in iterator]
        return b"".join(chunks)

    return read


@pytest.fixture
def server_env(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Environment for the HTTP surface, without an allow-list."""
    env = {
        "CORS_ORIGIN": "http://explorer.test",
        "S3_PRISM_API_PREFIX": "/api/s3",
        "S3_PRISM_STREAM_CHUNK_SIZE": "8",
    }
    for name in ("ALLOWED_BUCKETS", "S3_PRISM_ALLOWED_BUCKETS", "S3_PRISM_CORS_ORIGIN"):
        monkeypatch.delenv(name, raising=False)
    for name, value in env.items():
        monkeypatch.setenv(name, value)
    return env


@dataclass
class MinioService:
    endpoint: str
    access_key: str
    secret_key: str
    secure: bool


@pytest.fixture(scope="session")
def minio_access_key() -> str:
    return os.getenv("MINIO_ACCESS_KEY", "minio")


@pytest.fixture(scope="session")
def minio_secret_key() -> str:
    return os.getenv("MINIO_SECRET_KEY", "minio123")


@pytest.fixture(scope="session")
def minio_secure() -> bool:
    return os.getenv("MINIO_SECURE", "false").lower() in {
        "true",
        "1",
        "yes",
        "y",
        "t",
        "on",
    }


@pytest.fixture(scope="session")
def minio_service_name() -> str:
    return "minio-s3-prism"


@pytest.fixture(scope="session")
def minio_service(
    docker_service: DockerService,
    minio_access_key: str,
    minio_secret_key: str,
    minio_secure: bool,
    minio_service_name: str,
) -> Generator[MinioService]:
    from urllib.error import URLError
    from urllib.request import Request, urlopen

    from pytest_databases.types import ServiceContainer

    def check(_service: ServiceContainer) -> bool:
        scheme = "https" if minio_secure else "http"
        url = f"{scheme}://{_service.host}:{_service.port}/minio/health/ready"
        if not url.startswith(("http:", "https:")):
            msg = "URL must start with 'http:' or 'https:'"
            raise ValueError(msg)
        try:
            with urlopen(url=Request(url, method="GET"), timeout=10) as response:
                return response.status == 200
        except (URLError, ConnectionError):
            return False

    with docker_service.run(
        image="quay.io/minio/minio",
        name=minio_service_name,
        command="server /data",
        container_port=9000,
        timeout=20,
        pause=0.5,
        env={
            "MINIO_ROOT_USER": minio_access_key,
            "MINIO_ROOT_PASSWORD": minio_secret_key,
        },
        check=check,
    ) as service:
        yield MinioService(
            endpoint=f"{service.host}:{service.port}",
            access_key=minio_access_key,
            secret_key=minio_secret_key,
            secure=minio_secure,
        )


@pytest.fixture
def storage_env(
    minio_service: MinioService, monkeypatch: pytest.MonkeyPatch
) -> dict[str, str]:
    """Point the upstream storage settings at the MinIO container."""
    scheme = "https" if minio_service.secure else "http"
    env = {
        "S3_PRISM_ENDPOINT": f"{scheme}://{minio_service.endpoint}",
        "S3_PRISM_ACCESS_KEY_ID": minio_service.access_key,
        "S3_PRISM_SECRET_ACCESS_KEY": minio_service.secret_key,
        "S3_PRISM_REGION": "us-east-1",
        "S3_PRISM_ADDRESSING_STYLE": "path",
    }
    for name, value in env.items():
        monkeypatch.setenv(name, value)
    return env


@pytest.fixture
def minio_client(minio_service: MinioService) -> BaseClient:
    """Create a boto3 S3 client for seeding the MinIO container."""
    import boto3
    from botocore.config import Config

    scheme = "https" if minio_service.secure else "http"
    return boto3.client(
        "s3",
        endpoint_url=f"{scheme}://{minio_service.endpoint}",
        aws_access_key_id=minio_service.access_key,
        aws_secret_access_key=minio_service.secret_key,
        region_name="us-east-1",
        config=Config(s3={"addressing_style": "path"}),
    )


def _ensure_bucket(client: BaseClient, bucket: str) -> None:
    from botocore.exceptions import ClientError

    try:
        client.head_bucket(Bucket=bucket)
    except ClientError as exc:
        code = exc.response.get("Error", {}).get("Code", "")
        if code not in {"404", "NoSuchBucket", "NotFound"}:
            raise
        client.create_bucket(Bucket=bucket)


def _empty_bucket(client: BaseClient, bucket: str) -> None:
    paginator = client.get_paginator("list_objects_v2")
    for page in paginator.paginate(Bucket=bucket):
        for obj in page.get("Contents", []):
            client.delete_object(Bucket=bucket, Key=obj["Key"])
    client.delete_bucket(Bucket=bucket)


@pytest.fixture
def s3_helpers() -> dict[str, Callable[..., None]]:
    return {
        "ensure_bucket": _ensure_bucket,
        "empty_bucket": _empty_bucket,
    }

