"""FastAPI middleware for request context and GET response caching."""

import json
import re
import time
import uuid
from typing import Callable, Optional, Sequence

import structlog
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from readthrough.cache.keys import KeyTemplate
from readthrough.cache.manager import CacheManager, get_cache_manager
from readthrough.config.settings import settings
from readthrough.context import clear_request_context, get_principal_id, set_request_context
from readthrough.logging import log_api_request

logger = structlog.get_logger()

DEFAULT_SKIP_PATHS = ("/health", "/metrics", "/docs", "/openapi.json", "/api/cache")
DEFAULT_RESPONSE_TTL_MS = 300_000  # 5 minutes
RESPONSE_KEY = KeyTemplate("api:{path}:{principal_id}:{query}")

_MAX_AGE = re.compile(r"max-age=(\d+)")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind the caller's principal and a request id for the whole request."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())[:8]
        principal_id = request.headers.get("X-User-ID")

        # Set request context for cache keys and all logs in this request
        set_request_context(request_id=request_id, principal_id=principal_id)

        start_time = time.perf_counter()

        try:
            response = await call_next(request)

            log_api_request(
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=(time.perf_counter() - start_time) * 1000,
                cache=response.headers.get("X-Cache"),
            )

            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as e:
            log_api_request(
                method=request.method,
                path=request.url.path,
                status_code=500,
                duration_ms=(time.perf_counter() - start_time) * 1000,
                error=str(e),
            )
            raise

        finally:
            clear_request_context()


def parse_max_age_ms(cache_control: Optional[str], default_ms: int) -> int:
    """TTL requested by a ``Cache-Control: max-age=N`` header, in ms."""
    if not cache_control:
        return default_ms
    match = _MAX_AGE.search(cache_control)
    return int(match.group(1)) * 1000 if match else default_ms


class ResponseCacheMiddleware(BaseHTTPMiddleware):
    """Cache successful JSON GET responses per path, principal and query.

    Responses carry ``X-Cache: HIT`` or ``X-Cache: MISS``. A request with
    ``Cache-Control: max-age=0`` is not stored.
    """

    def __init__(
        self,
        app: ASGIApp,
        manager: Optional[CacheManager] = None,
        skip_paths: Sequence[str] = DEFAULT_SKIP_PATHS,
        default_ttl_ms: int = DEFAULT_RESPONSE_TTL_MS,
    ):
        super().__init__(app)
        self._manager = manager
        self.skip_paths = tuple(skip_paths)
        self.default_ttl_ms = default_ttl_ms

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if (
            request.method != "GET"
            or not settings.cache_enabled
            or request.url.path.startswith(self.skip_paths)
        ):
            return await call_next(request)

        cache = self._manager or get_cache_manager()
        key = RESPONSE_KEY.resolve({
            "path": request.url.path,
            "principal_id": get_principal_id(),
            "query": _query_dict(request),
        })

        cached_response = await cache.get(key)
        if cached_response is not None:
            logger.debug("response_cache_hit", path=request.url.path)
            return JSONResponse(
                cached_response["body"],
                status_code=cached_response["status_code"],
                headers={"X-Cache": "HIT"},
            )

        response = await call_next(request)

        ttl_ms = parse_max_age_ms(request.headers.get("Cache-Control"), self.default_ttl_ms)
        if (
            200 <= response.status_code < 300
            and ttl_ms > 0
            and response.headers.get("content-type", "").startswith("application/json")
        ):
            body = b"".join([chunk async for chunk in response.body_iterator])
            try:
                payload = json.loads(body)
            except ValueError as e:
                logger.warning("response_cache_unparseable", path=request.url.path, error=str(e))
            else:
                await cache.set(key, {"status_code": response.status_code, "body": payload}, ttl_ms)

            rebuilt = Response(content=body, status_code=response.status_code)
            # Raw headers keep repeated fields such as Set-Cookie
            rebuilt.raw_headers = list(response.raw_headers)
            response = rebuilt

        response.headers["X-Cache"] = "MISS"
        return response


def _query_dict(request: Request) -> dict:
    params = {}
    for name in request.query_params.keys():
        values = request.query_params.getlist(name)
        params[name] = values[0] if len(values) == 1 else values
    return params
