"""
Route registration for the voice session API.

Responsibilities:
- Define HTTP and WebSocket endpoints
- Wire a SessionGateway to each WebSocket lifecycle
- Pull dependencies from app.state

Each /ws connection runs two loops:
- reader (this coroutine): socket -> gateway
- writer (task): gateway.outbound() -> socket, in order
"""

from __future__ import annotations

import asyncio
from typing import Any

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from errors import TransportDisconnect
from observability.logger import log_exception
from protocol.messages import encode
from session.gateway import SessionGateway


def register_routes(app: FastAPI) -> None:
    """Register all routes on the FastAPI app."""

    @app.get("/health")
    async def health() -> dict[str, str]: # pyright: ignore[reportUnusedFunction]
        """Readiness check."""
        return {"status": "ok"}

    @app.websocket("/ws")
    async def websocket_endpoint(ws: WebSocket) -> None: # pyright: ignore[reportUnusedFunction]
        await ws.accept()

        gateway = SessionGateway(
            config=app.state.config,
            adapters=app.state.adapters,
        )
        reason = "client_disconnect"
        writer: asyncio.Task[None] | None = None

        try:
            await gateway.on_ws_connect()
            writer = asyncio.create_task(_write_outbound(ws, gateway))

            while True:
                msg = await _receive(ws)

                if msg.get("text") is not None:
                    await gateway.on_json_message(msg["text"])
                elif msg.get("bytes") is not None:
                    await gateway.on_binary_message(msg["bytes"])

        except WebSocketDisconnect:
            pass

        except TransportDisconnect as exc:
            reason = str(exc)

        except Exception as exc:  # pylint: disable=broad-exception-caught
            if gateway.session_ended:
                # Writer closed the socket after a fatal error
                reason = "session_ended"
            else:
                reason = "server_error"
                log_exception(
                    "WS_FATAL_ERROR",
                    exc,
                    session_id=gateway.session.session_id if gateway.session else None,
                )

        finally:
            await gateway.on_ws_disconnect(reason=reason)
            if writer is not None:
                writer.cancel()
                await asyncio.gather(writer, return_exceptions=True)


async def _receive(ws: WebSocket) -> dict[str, Any]:
    """Next inbound message; TransportDisconnect once the client is gone."""
    msg = await ws.receive()
    if msg["type"] == "websocket.disconnect":
        raise TransportDisconnect(f"client_disconnect:{msg.get('code')}")
    return msg


async def _write_outbound(ws: WebSocket, gateway: SessionGateway) -> None:
    """
    Send every outbound record in order; close the socket when the
    session ends or a send fails. The reader then sees the disconnect
    and tears the session down.
    """
    try:
        async for message in gateway.outbound():
            await ws.send_text(encode(message))
    except Exception as exc:  # pylint: disable=broad-exception-caught
        log_exception(
            "WS_SEND_FAILED",
            exc,
            session_id=gateway.session.session_id if gateway.session else None,
        )

    try:
        await ws.close()
    except RuntimeError:
        # Already closed
        pass
