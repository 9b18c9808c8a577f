"""
HTTP and WebSocket server for SketchLab Server.

This module exposes CanvasService over aiohttp:
- REST endpoints for joining, note updates and file storage
- A WebSocket route carrying REGISTER-USER / REFRESHED frames and peer relay

Invariants:
    - Every persistence endpoint is scoped by a project name
    - Errors use the stable shape {"status": "error", "message", "error_code"}
    - A WebSocket disconnect always unregisters the client

How to change safely:
    - Keep the legacy /register-user and /update-data routes stable for
      existing clients
    - Add new routes under /projects/{project}/
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any, Dict, Type

from aiohttp import WSMsgType, web

from ..config import HttpConfig
from ..errors import (
    DuplicateBlobError,
    DuplicateClientError,
    InvalidIdentifierError,
    InvalidPayloadError,
    NotFoundError,
    SketchLabError,
    StorageFailureError,
    UnknownClientError,
)
from .service import CanvasService

logger = logging.getLogger(__name__)

SERVICE_KEY = web.AppKey("service", CanvasService)
CONFIG_KEY = web.AppKey("http_config", HttpConfig)

ERROR_STATUS: Dict[Type[SketchLabError], int] = {
    DuplicateClientError: 409,
    UnknownClientError: 409,
    DuplicateBlobError: 409,
    NotFoundError: 404,
    InvalidIdentifierError: 400,
    InvalidPayloadError: 400,
    StorageFailureError: 500,
}


def error_response(error: SketchLabError) -> web.Response:
    """Map a service error to its HTTP response."""
    status = ERROR_STATUS.get(type(error), 500)
    return web.json_response(error.to_dict(), status=status)


def bad_request(message: str) -> web.HTTPBadRequest:
    return web.HTTPBadRequest(
        text=json.dumps({"status": "error", "message": message, "error_code": "BAD_REQUEST"}),
        content_type="application/json",
    )


def create_http_app(
    service: CanvasService,
    config: HttpConfig | None = None,
) -> web.Application:
    """Create the aiohttp application.

    Args:
        service: CanvasService instance
        config: HTTP server configuration

    Returns:
        aiohttp Application instance
    """
    config = config or HttpConfig()

    @web.middleware
    async def cors_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        if request.method == "OPTIONS":
            response = web.Response()
        else:
            try:
                response = await handler(request)
            except web.HTTPException as e:
                response = e

        # Streamed and WebSocket responses have already sent their headers
        if response.prepared:
            return response

        origin = request.headers.get("Origin", "*")
        if "*" in config.cors_origins or origin in config.cors_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, DELETE, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"

        return response

    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except SketchLabError as e:
            if isinstance(e, StorageFailureError):
                logger.error(f"Storage failure handling {request.path}: {e}")
            else:
                logger.info(
                    f"Request rejected: {e}",
                    extra={"path": request.path, "error_code": e.code},
                )
            return error_response(e)
        except Exception as e:
            logger.error(f"HTTP handler error: {e}", exc_info=True)
            return web.json_response(
                {"status": "error", "message": "Internal server error", "error_code": "INTERNAL"},
                status=500,
            )

    app = web.Application(
        middlewares=[cors_middleware, error_middleware],
        client_max_size=config.max_request_bytes,
    )
    app[SERVICE_KEY] = service
    app[CONFIG_KEY] = config

    app.router.add_get(config.ws_path, handle_websocket)
    app.router.add_post("/register-user", handle_register_user)
    app.router.add_post("/update-data", handle_update_data)
    app.router.add_get("/projects/{project}/notes", handle_load_notes)
    app.router.add_delete("/projects/{project}/notes/{note_id}", handle_delete_note)
    app.router.add_get("/projects/{project}/files", handle_list_files)
    app.router.add_post("/projects/{project}/files/{file_id}", handle_upload_file)
    app.router.add_get("/projects/{project}/files/{file_id}", handle_download_file)
    app.router.add_delete("/projects/{project}/files/{file_id}", handle_delete_file)
    app.router.add_get("/health", handle_health)

    return app


def get_service(request: web.Request) -> CanvasService:
    return request.app[SERVICE_KEY]


async def read_json(request: web.Request) -> Dict[str, Any]:
    """Parse a JSON object body.

    Raises:
        web.HTTPBadRequest: If the body is not a JSON object
    """
    try:
        body = await request.json()
    except ValueError:
        # JSONDecodeError and UnicodeDecodeError both land here
        raise bad_request("Invalid JSON body")
    if not isinstance(body, dict):
        raise bad_request("JSON body must be an object")
    return body


async def handle_websocket(request: web.Request) -> web.WebSocketResponse:
    """Handle GET /ws - Bidirectional client channel."""
    service = get_service(request)
    config = request.app[CONFIG_KEY]

    ws = web.WebSocketResponse(heartbeat=config.ws_heartbeat_seconds or None)
    await ws.prepare(request)

    try:
        client_id = await service.connect(ws)
    except (ConnectionError, asyncio.TimeoutError):
        # Closed during the handshake; registry already cleaned up
        return ws

    try:
        async for msg in ws:
            if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                await service.relay(client_id, msg.data)
            elif msg.type == WSMsgType.ERROR:
                logger.info(
                    f"Channel error: {ws.exception()}",
                    extra={"client_id": client_id},
                )
    finally:
        await service.disconnect(client_id)

    return ws


async def handle_register_user(request: web.Request) -> web.Response:
    """Handle POST /register-user - Join a project and receive its state."""
    body = await read_json(request)
    result = await get_service(request).join(body.get("username"), body.get("project"))
    return web.json_response({"status": "ok", "success": "Register success!", "data": result})


async def handle_update_data(request: web.Request) -> web.Response:
    """Handle POST /update-data - Insert or replace a note."""
    body = await read_json(request)
    result = await get_service(request).update_note(body)
    return web.json_response({"status": "ok", **result})


async def handle_load_notes(request: web.Request) -> web.Response:
    """Handle GET /projects/{project}/notes - Current document."""
    notes = await get_service(request).load_notes(request.match_info["project"])
    return web.json_response({"status": "ok", "data": notes})


async def handle_delete_note(request: web.Request) -> web.Response:
    """Handle DELETE /projects/{project}/notes/{note_id} - Remove a note."""
    result = await get_service(request).delete_note(
        request.match_info["project"],
        request.match_info["note_id"],
        request.query.get("clientId"),
    )
    return web.json_response({"status": "ok", **result})


async def handle_list_files(request: web.Request) -> web.Response:
    """Handle GET /projects/{project}/files - List file identities."""
    files = await get_service(request).list_files(request.match_info["project"])
    return web.json_response({"status": "ok", "data": files})


async def _read_upload(request: web.Request) -> bytes:
    """Upload payload: raw body, or the 'file' field of a multipart form."""
    if not request.content_type.startswith("multipart/"):
        return await request.read()

    reader = await request.multipart()
    async for part in reader:
        if getattr(part, "name", None) == "file":
            return bytes(await part.read())
    raise bad_request("multipart upload requires a 'file' field")


async def handle_upload_file(request: web.Request) -> web.Response:
    """Handle POST /projects/{project}/files/{file_id} - Store a file."""
    payload = await _read_upload(request)
    record = await get_service(request).upload_file(
        request.match_info["project"],
        request.match_info["file_id"],
        payload,
    )
    return web.json_response(
        {"status": "ok", "message": "File uploaded successfully", "data": record.to_dict()},
        status=201,
    )


def _content_type_for(file_id: str) -> str:
    return "application/pdf" if file_id.lower().endswith(".pdf") else "application/octet-stream"


async def handle_download_file(request: web.Request) -> web.StreamResponse:
    """Handle GET /projects/{project}/files/{file_id} - Stream a file."""
    file_id = request.match_info["file_id"]
    stream = await get_service(request).open_file(request.match_info["project"], file_id)

    response = web.StreamResponse(headers={"Content-Type": _content_type_for(file_id)})
    response.content_length = stream.record.size
    await response.prepare(request)

    try:
        async for chunk in stream:
            await response.write(chunk)
    except StorageFailureError as e:
        # Headers are gone; the only signal left is a truncated body
        logger.error(f"Download aborted: {e}", extra={"file_id": file_id})
        response.force_close()
        return response

    await response.write_eof()
    return response


async def handle_delete_file(request: web.Request) -> web.Response:
    """Handle DELETE /projects/{project}/files/{file_id} - Remove a file."""
    record = await get_service(request).delete_file(
        request.match_info["project"],
        request.match_info["file_id"],
    )
    return web.json_response(
        {"status": "ok", "message": "File deleted successfully", "data": record.to_dict()}
    )


async def handle_health(request: web.Request) -> web.Response:
    """Handle GET /health - Health check."""
    result = await get_service(request).health()
    status = 200 if result.get("healthy") else 503
    return web.json_response(result, status=status)

