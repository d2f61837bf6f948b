"""Relay HTTP surface (Starlette).

Endpoints
    GET  /health    liveness
    POST /register  map an Identity to a push delivery token
    POST /send      verify a signed relay request and push its envelope
    POST /cleanup   evict stale registrations (requires the cleanup key)

Serve with any ASGI server, e.g. ``create_app()`` as the application object.
"""

from __future__ import annotations

import hmac
import json
import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from .config import WhispersSettings, get_config
from .delivery import ExpoPushDelivery
from .directory import InMemoryRecipientDirectory, PostgresRecipientDirectory
from .exceptions import (
    AuthenticationError,
    DeliveryError,
    MalformedRequestError,
    RecipientNotFoundError,
    WhispersError,
)
from .gateway import RelayGateway
from .request_auth import InMemoryReplayCache

logger = logging.getLogger(__name__)


class _BodyTooLarge(Exception):
    pass


_STATUS_BY_ERROR: list[tuple[type[WhispersError], int]] = [
    (MalformedRequestError, 400),
    (AuthenticationError, 401),
    (RecipientNotFoundError, 404),
    (DeliveryError, 502),
]


def _error_response(exc: WhispersError) -> JSONResponse:
    status = next((code for cls, code in _STATUS_BY_ERROR if isinstance(exc, cls)), 500)
    body = {"success": False, **exc.to_dict()}
    return JSONResponse(body, status_code=status)


def _failure(status: int, error: str, message: str) -> JSONResponse:
    return JSONResponse({"success": False, "error": error, "message": message}, status_code=status)


def build_gateway(settings: WhispersSettings) -> RelayGateway:
    """Wire a gateway from settings."""
    if settings.database_url:
        directory: Any = PostgresRecipientDirectory(settings.database_url)
    else:
        logger.warning("No database configured; registrations are kept in memory")
        directory = InMemoryRecipientDirectory()

    delivery = ExpoPushDelivery(
        push_url=settings.expo_push_url,
        access_token=settings.expo_access_token,
        timeout_seconds=settings.delivery_timeout_seconds,
    )
    return RelayGateway(
        directory=directory,
        delivery=delivery,
        tolerance_ms=settings.timestamp_tolerance_ms,
        replay_cache=InMemoryReplayCache() if settings.replay_cache else None,
    )


def create_app(settings: WhispersSettings | None = None, gateway: RelayGateway | None = None) -> Starlette:
    """Create the relay application.

    Args:
        settings: Relay settings (defaults to environment)
        gateway: Pre-built gateway (defaults to one built from settings)
    """
    settings = settings or get_config()
    gateway = gateway or build_gateway(settings)

    async def read_json(request: Request) -> Any:
        declared = request.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > settings.max_body_bytes:
            raise _BodyTooLarge()
        body = b""
        async for chunk in request.stream():
            body += chunk
            if len(body) > settings.max_body_bytes:
                raise _BodyTooLarge()
        try:
            return json.loads(body)
        except (ValueError, RecursionError) as e:
            raise MalformedRequestError("Invalid JSON") from e

    async def health(request: Request) -> JSONResponse:
        return JSONResponse({"status": "ok", "timestamp": datetime.now(UTC).isoformat()})

    async def register(request: Request) -> JSONResponse:
        try:
            data = await read_json(request)
            identity = await run_in_threadpool(gateway.register, data)
        except _BodyTooLarge:
            return _failure(413, "PayloadTooLarge", "Request body too large")
        except WhispersError as e:
            logger.warning(f"Register rejected: {e.__class__.__name__}: {e.message}")
            return _error_response(e)
        except Exception:
            logger.exception("Register failed")
            return _failure(500, "InternalError", "Failed to register recipient")
        return JSONResponse({"success": True, "recipient": identity.to_dict()})

    async def send(request: Request) -> JSONResponse:
        try:
            data = await read_json(request)
            receipt = await gateway.send(data)
        except _BodyTooLarge:
            return _failure(413, "PayloadTooLarge", "Request body too large")
        except WhispersError as e:
            logger.warning(f"Send rejected: {e.__class__.__name__}: {e.message}")
            return _error_response(e)
        except Exception:
            logger.exception("Send failed")
            return _failure(500, "InternalError", "Failed to send notification")
        return JSONResponse({"success": True, "ticket": receipt.to_dict()})

    async def cleanup(request: Request) -> JSONResponse:
        try:
            data = await read_json(request)
        except _BodyTooLarge:
            return _failure(413, "PayloadTooLarge", "Request body too large")
        except WhispersError as e:
            return _error_response(e)

        key = data.get("key") if isinstance(data, dict) else None
        if (
            not settings.cleanup_key
            or not isinstance(key, str)
            or not hmac.compare_digest(key.encode(), settings.cleanup_key.encode())
        ):
            return _failure(401, "AuthenticationError", "Invalid cleanup key")

        try:
            removed = await run_in_threadpool(gateway.cleanup, timedelta(hours=settings.stale_after_hours))
        except Exception:
            logger.exception("Cleanup failed")
            return _failure(500, "InternalError", "Failed to cleanup stale registrations")
        return JSONResponse(
            {
                "success": True,
                "deletedCount": removed,
                "message": f"Removed {removed} stale registration(s)",
            }
        )

    app = Starlette(
        routes=[
            Route("/health", health, methods=["GET"]),
            Route("/register", register, methods=["POST"]),
            Route("/send", send, methods=["POST"]),
            Route("/cleanup", cleanup, methods=["POST"]),
        ]
    )
    app.state.gateway = gateway
    app.state.settings = settings
    return app
