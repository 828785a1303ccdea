# main.py
import logging

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import router as api_router
from core import ControllerSettings, configure_logging, lifespan, load_settings
from iptables import DeviceControl, Iptables
from middleware import (
    RateLimitMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
    install_error_handlers,
)

logger = logging.getLogger(__name__)

_app = None


def create_app(
    settings: ControllerSettings = None, device_control: DeviceControl = None
) -> FastAPI:
    """
    Builds the network controller application.

    Parameters:
        settings (ControllerSettings, optional): Configuration; read from the environment if omitted.
        device_control (DeviceControl, optional): Engine to use instead of one built from settings.

    Returns:
        FastAPI: The configured application.
    """
    if settings is None:
        settings = load_settings()
    if device_control is None:
        device_control = DeviceControl(
            settings.network_interface,
            Iptables(
                binary=settings.iptables_binary,
                use_sudo=settings.use_sudo,
                timeout=settings.command_timeout,
            ),
        )

    app = FastAPI(title="Network Controller", lifespan=lifespan)
    app.state.settings = settings
    app.state.device_control = device_control

    install_error_handlers(app)
    # Added last runs first: logging, CORS, security headers, rate limiting
    app.add_middleware(
        RateLimitMiddleware,
        window_ms=settings.rate_limit_window_ms,
        max_requests=settings.rate_limit_max_requests,
    )
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(api_router)
    return app


def get_app() -> FastAPI:
    """Returns the process-wide application, creating it on first use."""
    global _app
    if _app is None:
        settings = load_settings()
        configure_logging(settings)
        _app = create_app(settings)
    return _app


def main():
    app = get_app()
    settings: ControllerSettings = app.state.settings
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
