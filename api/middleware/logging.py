"""
请求/响应日志中间件

记录每个 API 请求的方法、路径、状态码与耗时。请求体只在 DEBUG 下记录，
且只处理 JSON；网关回调原文一律不记录。
"""
import json
import time
from typing import Any

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from core.logging_config import get_logger
from core.config import settings


logger = get_logger(__name__)

# 跳过日志的路径
SKIP_PATHS = frozenset({"/health", "/docs", "/redoc", "/openapi.json"})

# 请求体中需要脱敏的字段
SENSITIVE_FIELDS = frozenset({
    "password",
    "token",
    "secret",
    "api_key",
    "access_token",
    "client_secret",
    "card",
    "payment_method",
})


def sanitize(data: Any) -> Any:
    """递归脱敏 dict / list 中的敏感字段"""
    if isinstance(data, dict):
        return {k: ("***" if str(k).lower() in SENSITIVE_FIELDS else sanitize(v)) for k, v in data.items()}
    if isinstance(data, list):
        return [sanitize(v) for v in data]
    return data


class LoggingMiddleware(BaseHTTPMiddleware):
    """请求日志中间件"""

    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.log_body: bool = settings.LOG_REQUEST_BODY_ENABLE_BY_DEFAULT and settings.DEBUG
        self.max_body_bytes: int = settings.LOG_REQUEST_BODY_MAX_BYTES

    async def dispatch(self, request: Request, call_next):
        if request.url.path in SKIP_PATHS:
            return await call_next(request)

        start = time.perf_counter()
        request_info = {
            "method": request.method,
            "path": request.url.path,
            "query_params": dict(request.query_params),
        }
        if self.should_log_body(request):
            body = await self._read_json_body(request)
            if body is not None:
                request_info["body"] = body
        logger.info("request_started", **request_info)

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "request_failed",
                duration=time.perf_counter() - start,
                error_type=type(exc).__name__,
                **request_info,
                exc_info=True,
            )
            raise

        duration = time.perf_counter() - start
        self._log_response(response, duration, request_info)
        response.headers["X-Process-Time"] = f"{duration:.3f}"
        return response

    def should_log_body(self, request: Request) -> bool:
        if request.method not in {"POST", "PUT", "PATCH"}:
            return False
        # 网关回调原文含签名数据
        if "/webhooks/" in request.url.path:
            return False
        return self.log_body

    async def _read_json_body(self, request: Request) -> Any:
        if "application/json" not in request.headers.get("content-type", "").lower():
            return None
        body = await request.body()
        if not body:
            return None
        snippet = body[: self.max_body_bytes].decode("utf-8", errors="ignore")
        try:
            return sanitize(json.loads(snippet))
        except ValueError:
            # 超长被截断或不是合法 JSON
            return {"truncated": True, "bytes": len(body)}

    @staticmethod
    def _log_response(response: Response, duration: float, request_info: dict) -> None:
        status_code = response.status_code
        if status_code < 400:
            logger.info("request_completed", status_code=status_code, duration=duration, **request_info)
        elif status_code < 500:
            logger.warning("request_client_error", status_code=status_code, duration=duration, **request_info)
        else:
            logger.error("request_server_error", status_code=status_code, duration=duration, **request_info)
