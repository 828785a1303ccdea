# test.py

import logging
import time
import jwt
import pydantic
import pytest

from logging.handlers import RotatingFileHandler
from unittest import mock
from fastapi import FastAPI

import core

from core import (
    ControllerSettings,
    authenticate,
    configure_logging,
    lifespan,
    load_settings,
    require_parent,
    verify_token,
)
from middleware import AuthenticationError, AuthorizationError
from models import Principal

SECRET = "test-secret-for-network-controller-tokens"


def _request_with(headers):
    request = mock.MagicMock()
    request.headers = headers
    return request


# ------------------------------------------------------------
# Settings
# ------------------------------------------------------------
def test_load_settings_defaults():
    settings = load_settings({})

    assert settings.port == 3000
    assert settings.host == "0.0.0.0"
    assert settings.jwt_secret is None
    assert settings.network_interface == "eth0"
    assert settings.iptables_binary == "iptables"
    assert settings.use_sudo is True
    assert settings.command_timeout == 10.0
    assert settings.rate_limit_window_ms == 15 * 60 * 1000
    assert settings.rate_limit_max_requests == 100
    assert settings.log_level == "INFO"
    assert settings.log_file is None


def test_load_settings_from_environment():
    settings = load_settings(
        {
            "PORT": "8080",
            "JWT_SECRET": SECRET,
            "NETWORK_INTERFACE": "wlan0",
            "IPTABLES_BINARY": "/usr/sbin/iptables-nft",
            "IPTABLES_USE_SUDO": "false",
            "IPTABLES_TIMEOUT": "2.5",
            "RATE_LIMIT_WINDOW_MS": "60000",
            "RATE_LIMIT_MAX": "10",
            "LOG_LEVEL": "debug",
            "LOG_FILE": "/var/log/network-controller.log",
        }
    )

    assert settings.port == 8080
    assert settings.jwt_secret == SECRET
    assert settings.network_interface == "wlan0"
    assert settings.iptables_binary == "/usr/sbin/iptables-nft"
    assert settings.use_sudo is False
    assert settings.command_timeout == 2.5
    assert settings.rate_limit_window_ms == 60000
    assert settings.rate_limit_max_requests == 10
    assert settings.log_level == "DEBUG"
    assert settings.log_file == "/var/log/network-controller.log"


def test_load_settings_empty_secret_is_unset():
    assert load_settings({"JWT_SECRET": "   "}).jwt_secret is None


@pytest.mark.parametrize(
    "env",
    [{"PORT": "http"}, {"RATE_LIMIT_MAX": "ten"}, {"IPTABLES_USE_SUDO": "maybe"}, {"IPTABLES_TIMEOUT": "soon"}],
)
def test_load_settings_rejects_malformed_values(env):
    with pytest.raises(ValueError):
        load_settings(env)


def test_settings_are_immutable():
    settings = load_settings({})
    with pytest.raises(pydantic.ValidationError):
        settings.network_interface = "wlan0"


@mock.patch("core.load_dotenv")
def test_load_settings_reads_dotenv_when_no_environ_given(mock_load_dotenv, monkeypatch):
    monkeypatch.setenv("NETWORK_INTERFACE", "br0")

    settings = load_settings()

    mock_load_dotenv.assert_called_once_with(override=False)
    assert settings.network_interface == "br0"


# ------------------------------------------------------------
# Logging
# ------------------------------------------------------------
def test_configure_logging_with_file(tmp_path):
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        settings = ControllerSettings(log_level="DEBUG", log_file=str(tmp_path / "nc.log"))
        configure_logging(settings)
        configure_logging(settings)

        file_handlers = [h for h in root.handlers if isinstance(h, RotatingFileHandler)]
        assert len(file_handlers) == 1
        assert file_handlers[0].maxBytes == core.LOG_MAX_BYTES
        assert root.level == logging.DEBUG

        logging.getLogger("iptables").info("Allowed device 00:11:22:33:44:55 on eth0.")
        file_handlers[0].flush()
        assert "Allowed device" in (tmp_path / "nc.log").read_text()
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers = saved_handlers
        root.setLevel(saved_level)


# ------------------------------------------------------------
# Token verification
# ------------------------------------------------------------
def test_verify_token_parent():
    token = jwt.encode({"role": "parent", "sub": "user-1"}, SECRET, algorithm="HS256")

    principal = verify_token(token, SECRET)

    assert principal.role == "parent"
    assert principal.subject == "user-1"
    assert principal.claims["role"] == "parent"


def test_verify_token_missing_secret():
    token = jwt.encode({"role": "parent"}, SECRET, algorithm="HS256")

    with pytest.raises(AuthorizationError) as excinfo:
        verify_token(token, None)
    assert excinfo.value.status_code == 403
    assert excinfo.value.message == "Invalid token"


def test_verify_token_wrong_secret():
    token = jwt.encode({"role": "parent"}, "another-secret-that-is-long-enough!", algorithm="HS256")

    with pytest.raises(AuthorizationError):
        verify_token(token, SECRET)


def test_verify_token_expired():
    token = jwt.encode(
        {"role": "parent", "exp": int(time.time()) - 60}, SECRET, algorithm="HS256"
    )

    with pytest.raises(AuthorizationError):
        verify_token(token, SECRET)


def test_verify_token_rejects_unsigned_algorithm():
    token = jwt.encode({"role": "parent"}, None, algorithm="none")

    with pytest.raises(AuthorizationError):
        verify_token(token, SECRET)


def test_verify_token_without_role():
    token = jwt.encode({"sub": "user-1"}, SECRET, algorithm="HS256")

    assert verify_token(token, SECRET).role is None


# ------------------------------------------------------------
# Gate dependencies
# ------------------------------------------------------------
def test_authenticate_missing_header():
    settings = ControllerSettings(jwt_secret=SECRET)

    with pytest.raises(AuthenticationError) as excinfo:
        authenticate(_request_with({}), settings)
    assert excinfo.value.status_code == 401
    assert excinfo.value.message == "Authentication required"


def test_authenticate_empty_bearer():
    settings = ControllerSettings(jwt_secret=SECRET)

    with pytest.raises(AuthenticationError):
        authenticate(_request_with({"Authorization": "Bearer "}), settings)


def test_authenticate_valid_token():
    settings = ControllerSettings(jwt_secret=SECRET)
    token = jwt.encode({"role": "kid"}, SECRET, algorithm="HS256")

    principal = authenticate(_request_with({"Authorization": f"Bearer {token}"}), settings)

    assert principal.role == "kid"


def test_require_parent():
    parent = Principal(role="parent")
    assert require_parent(parent) is parent

    with pytest.raises(AuthorizationError) as excinfo:
        require_parent(Principal(role="kid"))
    assert excinfo.value.message == "Only parents can control network access"

    for role in (None, "Parent", "parent ", "admin"):
        with pytest.raises(AuthorizationError):
            require_parent(Principal(role=role))


# ------------------------------------------------------------
# Lifespan
# ------------------------------------------------------------
@pytest.mark.asyncio
async def test_lifespan_startup_and_shutdown():
    app = FastAPI()
    app.state.settings = ControllerSettings(jwt_secret=None)

    with mock.patch.object(core.logger, "warning") as mock_warning:
        async with lifespan(app):
            pass

    mock_warning.assert_called_once()
    assert "JWT_SECRET" in mock_warning.call_args[0][0]


@pytest.mark.asyncio
async def test_lifespan_does_not_log_secret():
    app = FastAPI()
    app.state.settings = ControllerSettings(jwt_secret=SECRET)

    with mock.patch.object(core.logger, "info") as mock_info:
        async with lifespan(app):
            pass

    logged = " ".join(str(call) for call in mock_info.call_args_list)
    assert SECRET not in logged


def test_authenticate_missing_secret_does_not_log_errors(caplog):
    settings = ControllerSettings(jwt_secret=None)
    token = jwt.encode({"role": "parent"}, SECRET, algorithm="HS256")
    request = _request_with({"Authorization": f"Bearer {token}"})
    caplog.set_level(logging.DEBUG, logger="core")

    for _ in range(3):
        with pytest.raises(AuthorizationError):
            authenticate(request, settings)

    assert not [r for r in caplog.records if r.levelno >= logging.ERROR]


def test_load_settings_cors_origins():
    assert load_settings({}).cors_origins == ("*",)
    settings = load_settings(
        {"CORS_ORIGINS": "http://parent-dashboard.local, http://10.0.0.1:8080,"}
    )
    assert settings.cors_origins == ("http://parent-dashboard.local", "http://10.0.0.1:8080")
