# core.py
import os
import logging
import jwt

from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from typing import Mapping, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request
from fastapi.security.utils import get_authorization_scheme_param
from jwt.exceptions import PyJWTError
from pydantic import BaseModel, ConfigDict

from middleware import AuthenticationError, AuthorizationError
from models import Principal

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_MAX_BYTES = 5 * 1024 * 1024
LOG_BACKUP_COUNT = 5

JWT_ALGORITHMS = ["HS256"]
PARENT_ROLE = "parent"


# ------------------------------------------------------------
# Configuration
# ------------------------------------------------------------
class ControllerSettings(BaseModel):
    """
    Startup configuration for the network controller.

    Built once by load_settings() and never mutated afterwards.
    """

    model_config = ConfigDict(frozen=True)

    host: str = "0.0.0.0"
    port: int = 3000
    jwt_secret: Optional[str] = None
    network_interface: str = "eth0"
    iptables_binary: str = "iptables"
    use_sudo: bool = True
    command_timeout: float = 10.0
    rate_limit_window_ms: int = 15 * 60 * 1000
    rate_limit_max_requests: int = 100
    cors_origins: tuple[str, ...] = ("*",)
    log_level: str = "INFO"
    log_file: Optional[str] = None


def _env_str(environ: Mapping[str, str], name: str, default=None):
    value = environ.get(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    value = _env_str(environ, name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}.")


def _env_float(environ: Mapping[str, str], name: str, default: float) -> float:
    value = _env_str(environ, name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}.")


def _env_list(environ: Mapping[str, str], name: str, default: tuple) -> tuple:
    value = _env_str(environ, name)
    if value is None:
        return default
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _env_bool(environ: Mapping[str, str], name: str, default: bool) -> bool:
    value = _env_str(environ, name)
    if value is None:
        return default
    if value.lower() in ("1", "true", "yes", "on"):
        return True
    if value.lower() in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"{name} must be a boolean, got {value!r}.")


def load_settings(environ: Optional[Mapping[str, str]] = None) -> ControllerSettings:
    """
    Reads the controller configuration from the environment.

    When `environ` is omitted, a `.env` file in the working directory is
    loaded first; variables already set in the process environment win.

    Parameters:
        environ (Mapping[str, str], optional): Variables to read instead of os.environ.

    Returns:
        ControllerSettings: The frozen configuration.

    Raises:
        ValueError: If a numeric or boolean variable cannot be parsed.
    """
    if environ is None:
        load_dotenv(override=False)
        environ = os.environ

    return ControllerSettings(
        host=_env_str(environ, "HOST", "0.0.0.0"),
        port=_env_int(environ, "PORT", 3000),
        jwt_secret=_env_str(environ, "JWT_SECRET"),
        network_interface=_env_str(environ, "NETWORK_INTERFACE", "eth0"),
        iptables_binary=_env_str(environ, "IPTABLES_BINARY", "iptables"),
        use_sudo=_env_bool(environ, "IPTABLES_USE_SUDO", True),
        command_timeout=_env_float(environ, "IPTABLES_TIMEOUT", 10.0),
        rate_limit_window_ms=_env_int(environ, "RATE_LIMIT_WINDOW_MS", 15 * 60 * 1000),
        rate_limit_max_requests=_env_int(environ, "RATE_LIMIT_MAX", 100),
        cors_origins=_env_list(environ, "CORS_ORIGINS", ("*",)),
        log_level=_env_str(environ, "LOG_LEVEL", "INFO").upper(),
        log_file=_env_str(environ, "LOG_FILE"),
    )


# ------------------------------------------------------------
# Logging
# ------------------------------------------------------------
def configure_logging(settings: ControllerSettings) -> None:
    """
    Configures root logging to the console and, if LOG_FILE is set, to a
    rotating log file. Safe to call more than once.
    """
    handlers = [logging.StreamHandler()]
    if settings.log_file:
        handlers.append(
            RotatingFileHandler(
                settings.log_file,
                maxBytes=LOG_MAX_BYTES,
                backupCount=LOG_BACKUP_COUNT,
                encoding="utf-8",
            )
        )
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


# ------------------------------------------------------------
# Application Lifespan
# ------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Logs the effective configuration on startup and the shutdown on exit.

    The shared secret itself is never logged; only whether it is present.
    """
    settings: ControllerSettings = app.state.settings
    logger.info(
        f"Network controller starting on {settings.host}:{settings.port} "
        f"(interface={settings.network_interface}, "
        f"iptables={settings.iptables_binary}, sudo={settings.use_sudo})"
    )
    if not settings.jwt_secret:
        logger.warning(
            "JWT_SECRET is not set. All authenticated routes will be rejected."
        )
    yield
    logger.info("Shutting down!")


# ------------------------------------------------------------
# Security & Authentication
# ------------------------------------------------------------
def get_settings(request: Request) -> ControllerSettings:
    return request.app.state.settings


def verify_token(token: str, secret: Optional[str]) -> Principal:
    """
    Verifies a signed bearer token and extracts its claims.

    Parameters:
        token (str): The encoded token.
        secret (str): The shared HMAC secret. If unset, verification fails.

    Returns:
        Principal: The verified role, subject and claims.

    Raises:
        AuthorizationError: If the secret is missing or the token does not verify.
    """
    if not secret:
        raise AuthorizationError("Invalid token")
    try:
        claims = jwt.decode(token, secret, algorithms=JWT_ALGORITHMS)
    except PyJWTError as e:
        logger.warning(f"Token verification failed: {type(e).__name__}")
        raise AuthorizationError("Invalid token")
    if not isinstance(claims, dict):
        raise AuthorizationError("Invalid token")

    role = claims.get("role")
    subject = claims.get("sub")
    return Principal(
        role=role if isinstance(role, str) else None,
        subject=subject if isinstance(subject, str) else None,
        claims=claims,
    )


def authenticate(
    request: Request, settings: ControllerSettings = Depends(get_settings)
) -> Principal:
    """
    Authenticates the request's bearer token.

    A missing token is rejected with 401; a token that does not verify,
    including any token while JWT_SECRET is unset, is rejected with 403.

    Returns:
        Principal: The verified caller.
    """
    authorization = request.headers.get("Authorization")
    if not authorization or not authorization.strip():
        raise AuthenticationError("Authentication required")

    scheme, token = get_authorization_scheme_param(authorization)
    if scheme.lower() != "bearer":
        logger.warning("Rejected Authorization header without Bearer scheme.")
        raise AuthorizationError("Invalid token")
    if not token:
        raise AuthenticationError("Authentication required")

    return verify_token(token, settings.jwt_secret)


def require_parent(principal: Principal = Depends(authenticate)) -> Principal:
    """Rejects any verified caller whose role is not exactly 'parent'."""
    if principal.role != PARENT_ROLE:
        logger.warning(f"Denied network control to role {principal.role!r}.")
        raise AuthorizationError("Only parents can control network access")
    return principal
