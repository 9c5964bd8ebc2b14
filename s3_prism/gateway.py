from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import TYPE_CHECKING, Any, Protocol

from anyio import CancelScope, to_thread
from boto3.session import Session
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .errors import NotFound, UpstreamError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Mapping

    from .settings import StorageSettings
else:  # pragma: no cover
    AsyncIterator = Mapping = Any

LOG = logging.getLogger("s3_prism.gateway")

#: Largest page S3 returns from a single ListObjectsV2 call.
MAX_PAGE_SIZE = 1000

_NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NotFound", "NoSuchBucket"})


async def _run_sync(func: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Any:
    return await to_thread.run_sync(partial(func, *args, **kwargs))


@dataclass(frozen=True)
class ObjectRef:
    bucket: str
    key: str

    def __str__(self) -> str:
        return f"s3://{self.bucket}/{self.key}"


@dataclass(frozen=True)
class ByteRange:
    """Inclusive byte range within an object."""

    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def header_value(self) -> str:
        return f"bytes={self.start}-{self.end}"


@dataclass(frozen=True)
class ObjectMetadata:
    content_type: str
    content_length: int
    last_modified: datetime | None = None
    etag: str | None = None
    storage_class: str | None = None
    version_id: str | None = None
    user_metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ObjectSummary:
    """One entry of a bucket listing."""

    key: str
    size: int
    last_modified: datetime | None = None
    etag: str | None = None
    storage_class: str | None = None


@dataclass(frozen=True)
class ObjectPage:
    objects: list[ObjectSummary]
    common_prefixes: list[str] = field(default_factory=list)
    next_continuation_token: str | None = None
    is_truncated: bool = False
    key_count: int = 0


@dataclass(frozen=True)
class BucketInfo:
    name: str
    creation_date: datetime | None = None


class ObjectBody:
    """Incremental reader over an upstream object body.

    Wraps any blocking file-like object with ``read(size)`` and ``close()``,
    such as botocore's ``StreamingBody``. Reads happen in a worker thread, one
    chunk per pull, so a slow consumer stops upstream reads.
    """

    def __init__(self, stream: Any, content_length: int) -> None:
        self._stream = stream
        self.content_length = content_length
        self.closed = False

    async def iter_chunks(self, chunk_size: int) -> AsyncIterator[bytes]:
        try:
            while True:
                try:
                    chunk = await _run_sync(self._stream.read, chunk_size)
                except BotoCoreError as error:
                    msg = f"upstream read failed: {error}"
                    raise UpstreamError(msg) from error
                if not chunk:
                    break
                yield chunk
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        # Runs during cancellation when the client disconnects.
        with CancelScope(shield=True):
            await _run_sync(self._stream.close)


class StorageGateway(Protocol):
    """Storage operations the proxy, search and browsing routes depend on."""

    async def list_buckets(self) -> list[BucketInfo]: ...

    async def list_objects(
        self,
        bucket: str,
        *,
        prefix: str = "",
        delimiter: str | None = None,
        max_keys: int = MAX_PAGE_SIZE,
        continuation_token: str | None = None,
    ) -> ObjectPage: ...

    async def head_object(self, ref: ObjectRef) -> ObjectMetadata: ...

    async def get_object(
        self, ref: ObjectRef, byte_range: ByteRange | None = None
    ) -> ObjectBody: ...

    async def presign_get(self, ref: ObjectRef, expires_in: int) -> str: ...

    def describe(self) -> str: ...

    async def aclose(self) -> None: ...


class S3Gateway:
    """Storage gateway backed by a boto3 S3 client.

    Upstream failures are never retried: a missing object or bucket raises
    ``NotFound`` and everything else raises ``UpstreamError``.
    """

    def __init__(self, settings: StorageSettings, client: Any = None) -> None:
        self._settings = settings
        self._client = client if client is not None else self._build_client()

    def _build_client(self):
        session = Session(
            aws_access_key_id=self._settings.access_key,
            aws_secret_access_key=self._settings.secret_key,
            aws_session_token=self._settings.session_token,
            region_name=self._settings.region,
        )
        return session.client(
            "s3",
            endpoint_url=self._settings.endpoint,
            config=BotoConfig(
                signature_version="s3v4",
                retries={"total_max_attempts": 1},
                connect_timeout=self._settings.connect_timeout,
                read_timeout=self._settings.read_timeout,
                s3={"addressing_style": self._settings.addressing_style},
            ),
        )

    def describe(self) -> str:
        endpoint = self._settings.endpoint or "aws"
        return f"{endpoint} ({self._settings.region})"

    async def aclose(self) -> None:
        await _run_sync(self._client.close)

    async def _call(self, operation: str, **kwargs: Any) -> Any:
        method = getattr(self._client, operation)
        try:
            return await _run_sync(method, **kwargs)
        except ClientError as error:
            raise self._translate_client_error(error, operation, kwargs) from error
        except BotoCoreError as error:
            LOG.warning("upstream %s failed: %s", operation, error)
            msg = f"Storage request failed: {error}"
            raise UpstreamError(msg) from error

    @staticmethod
    def _translate_client_error(
        error: ClientError, operation: str, params: Mapping[str, Any]
    ) -> NotFound | UpstreamError:
        code = str(error.response.get("Error", {}).get("Code", ""))
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        target = "/".join(
            str(params[name]) for name in ("Bucket", "Key") if name in params
        )
        if code in _NOT_FOUND_CODES or status == 404:
            LOG.debug("upstream miss for %s (%s)", target, code)
            if code == "NoSuchBucket":
                return NotFound("Bucket not found")
            return NotFound()
        LOG.warning(
            "upstream %s failed for %s: %s",
            operation,
            target or "<account>",
            error,
        )
        message = error.response.get("Error", {}).get(
            "Message", "Storage request failed"
        )
        return UpstreamError(message)

    async def list_buckets(self) -> list[BucketInfo]:
        result = await self._call("list_buckets")
        return [
            BucketInfo(name=bucket["Name"], creation_date=bucket.get("CreationDate"))
            for bucket in result.get("Buckets", [])
        ]

    async def list_objects(
        self,
        bucket: str,
        *,
        prefix: str = "",
        delimiter: str | None = None,
        max_keys: int = MAX_PAGE_SIZE,
        continuation_token: str | None = None,
    ) -> ObjectPage:
        list_kwargs: dict[str, Any] = {
            "Bucket": bucket,
            "Prefix": prefix,
            "MaxKeys": max_keys,
        }
        if delimiter:
            list_kwargs["Delimiter"] = delimiter
        if continuation_token:
            list_kwargs["ContinuationToken"] = continuation_token
        result = await self._call("list_objects_v2", **list_kwargs)
        return ObjectPage(
            objects=[
                ObjectSummary(
                    key=obj["Key"],
                    size=obj.get("Size", 0),
                    last_modified=obj.get("LastModified"),
                    etag=obj.get("ETag"),
                    storage_class=obj.get("StorageClass"),
                )
                for obj in result.get("Contents", [])
            ],
            common_prefixes=[
                entry["Prefix"] for entry in result.get("CommonPrefixes", [])
            ],
            next_continuation_token=result.get("NextContinuationToken"),
            is_truncated=bool(result.get("IsTruncated", False)),
            key_count=result.get("KeyCount", 0),
        )

    async def head_object(self, ref: ObjectRef) -> ObjectMetadata:
        result = await self._call("head_object", Bucket=ref.bucket, Key=ref.key)
        return ObjectMetadata(
            content_type=result.get("ContentType") or "application/octet-stream",
            content_length=int(result.get("ContentLength", 0)),
            last_modified=result.get("LastModified"),
            etag=result.get("ETag"),
            storage_class=result.get("StorageClass"),
            version_id=result.get("VersionId"),
            user_metadata=dict(result.get("Metadata") or {}),
        )

    async def get_object(
        self, ref: ObjectRef, byte_range: ByteRange | None = None
    ) -> ObjectBody:
        get_kwargs: dict[str, Any] = {"Bucket": ref.bucket, "Key": ref.key}
        if byte_range is not None:
            get_kwargs["Range"] = byte_range.header_value()
        result = await self._call("get_object", **get_kwargs)
        return ObjectBody(result["Body"], int(result.get("ContentLength", 0)))

    async def presign_get(self, ref: ObjectRef, expires_in: int) -> str:
        return await self._call(
            "generate_presigned_url",
            ClientMethod="get_object",
            Params={
                "Bucket": ref.bucket,
                "Key": ref.key,
                "ResponseContentDisposition": "inline",
            },
            ExpiresIn=expires_in,
        )
