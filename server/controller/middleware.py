# middleware.py
import logging
import math
import threading
import time

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

RATE_LIMIT_MESSAGE = "Too many requests from this IP, please try again later"
DEFAULT_RATE_LIMIT_WINDOW_MS = 15 * 60 * 1000
DEFAULT_RATE_LIMIT_MAX_REQUESTS = 100


# ------------------------------------------------------------
# Error Types
# ------------------------------------------------------------
class NetworkControlError(Exception):
    """
    An error with a client-facing message and HTTP status.

    Rendered as ``{"error": message}``; `code` is kept for the server log.
    """

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        code: str = "INTERNAL_ERROR",
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code


class ValidationError(NetworkControlError):
    def __init__(self, message: str):
        super().__init__(message, status.HTTP_400_BAD_REQUEST, "VALIDATION_ERROR")


class AuthenticationError(NetworkControlError):
    def __init__(self, message: str):
        super().__init__(message, status.HTTP_401_UNAUTHORIZED, "AUTHENTICATION_ERROR")


class AuthorizationError(NetworkControlError):
    def __init__(self, message: str):
        super().__init__(message, status.HTTP_403_FORBIDDEN, "AUTHORIZATION_ERROR")


class RateLimitError(NetworkControlError):
    def __init__(self, message: str = RATE_LIMIT_MESSAGE):
        super().__init__(
            message, status.HTTP_429_TOO_MANY_REQUESTS, "RATE_LIMIT_EXCEEDED"
        )


# ------------------------------------------------------------
# Exception Handlers
# ------------------------------------------------------------
def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


async def network_control_error_handler(request: Request, exc: NetworkControlError):
    logger.warning(
        f"{request.method} {request.url.path} failed: {exc.code} ({exc.status_code})"
    )
    return error_response(exc.status_code, exc.message)


async def request_validation_error_handler(
    request: Request, exc: RequestValidationError
):
    return error_response(status.HTTP_400_BAD_REQUEST, "Invalid request")


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(
        f"Unhandled error on {request.method} {request.url.path}: {exc}",
        exc_info=exc,
    )
    return error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error"
    )


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(NetworkControlError, network_control_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)


# ------------------------------------------------------------
# Middleware
# ------------------------------------------------------------
def client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def format_request_log(request: Request) -> str:
    return f"{request.method} {request.url.path} - {client_address(request)}"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Fixed-window request limiter keyed by client address.

    Every response carries RateLimit-Limit, RateLimit-Remaining and
    RateLimit-Reset (seconds until the window resets) headers.
    """

    def __init__(
        self,
        app,
        window_ms: int = DEFAULT_RATE_LIMIT_WINDOW_MS,
        max_requests: int = DEFAULT_RATE_LIMIT_MAX_REQUESTS,
        clock=time.monotonic,
    ):
        super().__init__(app)
        self.window = window_ms / 1000.0
        self.max_requests = max_requests
        self.clock = clock
        self._hits: dict[str, tuple[float, int]] = {}
        self._lock = threading.Lock()

    def _hit(self, key: str) -> tuple[int, float]:
        """Counts a request and returns (count, window_reset_time)."""
        now = self.clock()
        with self._lock:
            started, count = self._hits.get(key, (now, 0))
            if now - started >= self.window:
                started, count = now, 0
            count += 1
            self._hits[key] = (started, count)
            # Drop expired windows so the table does not grow unbounded
            if len(self._hits) > 10000:
                self._hits = {
                    k: v for k, v in self._hits.items() if now - v[0] < self.window
                }
        return count, started + self.window

    async def dispatch(self, request: Request, call_next):
        count, reset_at = self._hit(client_address(request))
        headers = {
            "RateLimit-Limit": str(self.max_requests),
            "RateLimit-Remaining": str(max(self.max_requests - count, 0)),
            "RateLimit-Reset": str(max(math.ceil(reset_at - self.clock()), 0)),
        }

        if count > self.max_requests:
            logger.warning(f"Rate limit exceeded for {client_address(request)}")
            error = RateLimitError()
            response = error_response(error.status_code, error.message)
        else:
            response = await call_next(request)

        response.headers.update(headers)
        return response


SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Cache-Control": "no-store",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
    "Cross-Origin-Resource-Policy": "same-origin",
}


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds conservative security headers to every response, errors included."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request on arrival and again with its status and duration."""

    async def dispatch(self, request: Request, call_next):
        summary = format_request_log(request)
        logger.info(summary)
        start = time.perf_counter()
        # Stays 500 if the downstream app raises
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            duration = round((time.perf_counter() - start) * 1000)
            level = logging.WARNING if status_code >= 400 else logging.INFO
            logger.log(
                level,
                f"{summary} - {status_code} - {duration}ms",
                extra={
                    "status_code": status_code,
                    "duration_ms": duration,
                    "user_agent": request.headers.get("user-agent"),
                    "referer": request.headers.get("referer"),
                },
            )

        return response
