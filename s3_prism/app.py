from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from http import HTTPStatus
from typing import TYPE_CHECKING, Annotated, Any
from urllib.parse import quote, unquote

from litestar import Litestar, Request, Router, get, route
from litestar.config.cors import CORSConfig
from litestar.enums import HttpMethod
from litestar.exceptions import HTTPException, NotFoundException
from litestar.logging.config import LoggingConfig
from litestar.params import FromPath, FromQuery, QueryParameter
from litestar.plugins.prometheus import PrometheusConfig, PrometheusController
from litestar.response import Response

from .errors import PrismError, check_bucket_access
from .gateway import MAX_PAGE_SIZE, ObjectRef, S3Gateway
from .proxy import EXPOSED_HEADERS, PREFLIGHT_HEADERS, PREFLIGHT_METHODS, RangeProxy
from .search import DEFAULT_MAX_RESULTS, search_objects
from .settings import load_server_settings_from_env, load_storage_settings_from_env

if TYPE_CHECKING:
    from litestar.types import Scope

    from .gateway import ObjectSummary, StorageGateway
    from .settings import ServerSettings

LOG = logging.getLogger("s3_prism.app")

SERVICE_NAME = "s3-prism-backend"

prometheus_config = PrometheusConfig(app_name="s3_prism", prefix="s3_prism")


def _isoformat(value: datetime | None) -> str | None:
    if value is None:
        return None
    aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return aware.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _summary_to_dict(obj: ObjectSummary) -> dict[str, Any]:
    return {
        "key": obj.key,
        "size": obj.size,
        "lastModified": _isoformat(obj.last_modified),
        "etag": obj.etag,
        "storageClass": obj.storage_class,
    }


def _split_object_path(scope: Scope, bucket: str) -> tuple[str, str] | None:
    """Split ``.../buckets/<bucket>/objects/<key>/<action>`` into key and action.

    Routing collapses repeated slashes and drops trailing ones, so the key is
    cut from the undecoded ``raw_path`` and unquoted once. Folder markers such
    as ``photos/`` and keys like ``a//b.mp4`` are addressed unchanged.
    """
    raw_path = scope.get("raw_path")
    if raw_path:
        path = raw_path.decode("latin-1").partition("?")[0]
    else:
        path = quote(scope["path"])
    _, marker, tail = path.partition(f"/buckets/{bucket}/objects/")
    if not marker:
        return None
    key, _, action = tail.rpartition("/")
    if not key:
        return None
    return unquote(key), unquote(action)


def create_app(
    gateway: StorageGateway | None = None,
    settings: ServerSettings | None = None,
) -> Litestar:
    """Create the bucket explorer ASGI application."""
    settings = settings or load_server_settings_from_env()
    if gateway is None:
        gateway = S3Gateway(load_storage_settings_from_env())
    allowed_buckets = settings.allowed_buckets
    proxy = RangeProxy(
        gateway,
        cors_origin=settings.cors_origin,
        allowed_buckets=allowed_buckets,
        chunk_size=settings.stream_chunk_size,
        cache_max_age=settings.cache_max_age,
    )

    @get("/health", include_in_schema=False)
    async def health() -> dict[str, str]:
        return {
            "status": "ok",
            "timestamp": _isoformat(datetime.now(UTC)) or "",
            "service": SERVICE_NAME,
        }

    @get("/buckets")
    async def list_buckets() -> dict[str, Any]:
        buckets = await gateway.list_buckets()
        if allowed_buckets is not None:
            buckets = [bucket for bucket in buckets if bucket.name in allowed_buckets]
        return {
            "buckets": [
                {"name": bucket.name, "creationDate": _isoformat(bucket.creation_date)}
                for bucket in buckets
            ],
            "count": len(buckets),
        }

    @get("/buckets/{bucket:str}/objects")
    async def list_objects(
        bucket: FromPath[str],
        prefix: FromQuery[str] = "",
        delimiter: FromQuery[str] = "/",
        max_keys: Annotated[
            int, QueryParameter(name="maxKeys", ge=1, le=MAX_PAGE_SIZE)
        ] = MAX_PAGE_SIZE,
        continuation_token: Annotated[
            str | None, QueryParameter(name="continuationToken")
        ] = None,
    ) -> dict[str, Any]:
        check_bucket_access(bucket, allowed_buckets)
        page = await gateway.list_objects(
            bucket,
            prefix=prefix,
            delimiter=delimiter,
            max_keys=max_keys,
            continuation_token=continuation_token,
        )
        return {
            "bucket": bucket,
            "prefix": prefix,
            "objects": [_summary_to_dict(obj) for obj in page.objects],
            "folders": [{"prefix": folder} for folder in page.common_prefixes],
            "isTruncated": page.is_truncated,
            "continuationToken": page.next_continuation_token,
            "keyCount": page.key_count,
        }

    @get("/buckets/{bucket:str}/search")
    async def search(
        bucket: FromPath[str],
        search_query: Annotated[str, QueryParameter(name="query")] = "",
        prefix: FromQuery[str] = "",
        max_results: Annotated[
            int, QueryParameter(name="maxResults", ge=1)
        ] = DEFAULT_MAX_RESULTS,
    ) -> dict[str, Any]:
        result = await search_objects(
            gateway,
            bucket,
            search_query,
            prefix=prefix,
            max_results=max_results,
            allowed_buckets=allowed_buckets,
        )
        return {
            "bucket": result.bucket,
            "query": result.query,
            "results": [_summary_to_dict(obj) for obj in result.results],
            "count": result.count,
            "hasMore": result.has_more,
        }

    async def object_metadata(ref: ObjectRef) -> dict[str, Any]:
        check_bucket_access(ref.bucket, allowed_buckets)
        metadata = await gateway.head_object(ref)
        return {
            "bucket": ref.bucket,
            "key": ref.key,
            "metadata": {
                "contentType": metadata.content_type,
                "contentLength": metadata.content_length,
                "lastModified": _isoformat(metadata.last_modified),
                "etag": metadata.etag,
                "versionId": metadata.version_id,
                "storageClass": metadata.storage_class,
                "metadata": metadata.user_metadata,
            },
        }

    async def view_url(ref: ObjectRef, expires_in: int) -> dict[str, Any]:
        check_bucket_access(ref.bucket, allowed_buckets)
        metadata = await gateway.head_object(ref)
        url = await gateway.presign_get(ref, expires_in)
        expires_at = datetime.now(UTC) + timedelta(seconds=expires_in)
        return {
            "bucket": ref.bucket,
            "key": ref.key,
            "url": url,
            "expiresIn": expires_in,
            "expiresAt": _isoformat(expires_at),
            "contentType": metadata.content_type,
            "size": metadata.content_length,
        }

    def _resolve(request: Request, bucket: str, *actions: str) -> tuple[ObjectRef, str]:
        parts = _split_object_path(request.scope, bucket)
        if parts is None or parts[1] not in actions:
            raise NotFoundException
        key, action = parts
        return ObjectRef(bucket=bucket, key=key), action

    @get("/buckets/{bucket:str}/objects/{object_path:path}")
    async def object_route(
        request: Request,
        bucket: FromPath[str],
        expires_in: Annotated[int, QueryParameter(name="expiresIn", ge=1)] = 3600,
    ) -> Response:
        ref, action = _resolve(request, bucket, "content", "metadata", "view")
        if action == "content":
            return await proxy.handle(ref, request.headers.get("range"))
        if action == "metadata":
            return Response(content=await object_metadata(ref))
        return Response(content=await view_url(ref, expires_in))

    @route(
        "/buckets/{bucket:str}/objects/{object_path:path}",
        http_method=HttpMethod.OPTIONS,
        include_in_schema=False,
    )
    async def object_preflight(request: Request, bucket: FromPath[str]) -> Response:
        # Requests carrying an Origin are answered by the CORS middleware before
        # routing; this answers bare OPTIONS requests.
        _resolve(request, bucket, "content")
        return proxy.preflight()

    def prism_error_handler(request: Request, exc: PrismError) -> Response:
        LOG.debug(
            "%s %s failed: %s %s",
            request.method,
            request.url.path,
            exc.status_code,
            exc.message,
        )
        headers = {
            "Access-Control-Allow-Origin": settings.cors_origin,
            "Access-Control-Allow-Credentials": "true",
        }
        return Response(
            content=exc.to_dict(), status_code=exc.status_code, headers=headers
        )

    def http_error_handler(request: Request, exc: HTTPException) -> Response:
        message = exc.detail
        if isinstance(exc, NotFoundException):
            message = f"Cannot {request.method} {request.url.path}"
        return Response(
            content={
                "error": HTTPStatus(exc.status_code).phrase,
                "message": message,
            },
            status_code=exc.status_code,
        )

    async def startup(app: Litestar) -> None:
        LOG.info(
            "S3 prism ready (upstream=%s, buckets=%s, cors=%s)",
            gateway.describe(),
            ", ".join(sorted(allowed_buckets)) if allowed_buckets else "all",
            settings.cors_origin,
        )

    async def shutdown(app: Litestar) -> None:
        await gateway.aclose()

    cors_config = CORSConfig(
        allow_origins=[settings.cors_origin],
        allow_methods=list(PREFLIGHT_METHODS),
        allow_headers=list(PREFLIGHT_HEADERS),
        allow_credentials=True,
        expose_headers=list(EXPOSED_HEADERS),
        max_age=86400,
    )

    api = Router(
        path=settings.api_prefix or "/",
        route_handlers=[
            list_buckets,
            list_objects,
            search,
            object_route,
            object_preflight,
        ],
    )

    return Litestar(
        route_handlers=[health, api, PrometheusController],
        on_startup=[startup],
        on_shutdown=[shutdown],
        cors_config=cors_config,
        exception_handlers={
            PrismError: prism_error_handler,
            HTTPException: http_error_handler,
        },
        logging_config=LoggingConfig(
            loggers={"s3_prism": {"level": settings.log_level, "propagate": True}},
        ),
        middleware=[prometheus_config.middleware],
    )


app = create_app()
