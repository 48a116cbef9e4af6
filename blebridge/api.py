from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect

from blebridge.bridge import Bridge, SessionParams
from blebridge.config import BridgeSettings
from blebridge.errors import (
    CLOSE_BLE_DISCONNECTED,
    CLOSE_NORMAL,
    BridgeError,
    close_code_for,
)
from blebridge.log_buffer import LogEntry

logger = logging.getLogger(__name__)

HEALTH_COMMAND = "health"
VERSION = "0.1.0"
DEFAULT_SINCE = "30s"
DEFAULT_LIMIT = 100
MAX_LIMIT = 1000


def create_app(bridge: Bridge, *, settings: Optional[BridgeSettings] = None) -> FastAPI:
    """Build the HTTP/WebSocket surface around one :class:`Bridge`."""

    @contextlib.asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        bridge.logs.log_event("INFO", f"bridge v{VERSION} ready")
        try:
            yield
        finally:
            await bridge.shutdown()

    app = FastAPI(title="blebridge", version=VERSION, lifespan=lifespan)
    app.state.bridge = bridge
    app.state.settings = settings

    @app.websocket("/")
    async def session(ws: WebSocket):
        await ws.accept()
        query = ws.query_params
        if query.get("command") == HEALTH_COMMAND:
            await ws.send_json(bridge.health())
            await ws.close(code=CLOSE_NORMAL)
            return

        outbound: asyncio.Queue[Dict[str, Any]] = asyncio.Queue()
        hangup = asyncio.Event()

        def on_receive(data: bytes) -> None:
            outbound.put_nowait({"type": "data", "data": list(data)})

        def on_disconnect() -> None:
            outbound.put_nowait({"type": "disconnected"})
            hangup.set()

        try:
            token = await bridge.open_session(
                SessionParams.from_query(query),
                on_receive=on_receive,
                on_disconnect=on_disconnect,
            )
        except BridgeError as exc:
            logger.info("Rejected session: %s", exc)
            await _reject(ws, exc)
            return

        close_code = CLOSE_NORMAL
        cleaning = asyncio.Event()
        tasks: list[asyncio.Task[Any]] = []
        try:
            # "connected" must precede any relayed data
            await ws.send_json({"type": "connected", "device": bridge.device_name})
            reader = asyncio.create_task(_read_frames(ws, bridge, token, outbound, cleaning))
            hangup_wait = asyncio.create_task(hangup.wait())
            tasks = [reader, hangup_wait, asyncio.create_task(_pump(ws, outbound))]
            await asyncio.wait({reader, hangup_wait}, return_when=asyncio.FIRST_COMPLETED)
            if cleaning.is_set():
                # a force cleanup fires the disconnect callback before it finishes
                await asyncio.wait({reader})
            elif hangup.is_set():
                close_code = CLOSE_BLE_DISCONNECTED
            if reader.done() and not reader.cancelled() and reader.exception() is not None:
                logger.warning("Session reader failed: %s", reader.exception())
        except WebSocketDisconnect:
            logger.debug("Session socket closed before it was ready")
        finally:
            # teardown runs in its own task so cancelling this handler cannot skip it
            closing = asyncio.ensure_future(bridge.close_session(token, "websocket closed"))
            for task in tasks:
                task.cancel()
            if tasks:
                await asyncio.wait(tasks)
                for task in tasks:
                    if not task.cancelled() and task.exception() is not None:
                        logger.debug("Session task ended with %r", task.exception())
            await asyncio.shield(closing)
            with contextlib.suppress(Exception):
                while not outbound.empty():
                    await ws.send_json(outbound.get_nowait())
            with contextlib.suppress(Exception):
                await ws.close(code=close_code)

    @app.get("/health")
    async def health():
        return {**bridge.health(), "state": bridge.state.value}

    @app.get("/state")
    async def state():
        return bridge.snapshot()

    @app.get("/logs")
    async def logs(
        since: str = Query(DEFAULT_SINCE, description="Cursor 'last', duration (30s, 5m, 1h) or ISO timestamp"),
        limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
        client_id: Optional[str] = Query(None, description="Cursor owner for since=last"),
    ):
        try:
            entries = bridge.logs.query(since, limit, client_id=client_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        return {"entries": [entry.to_dict() for entry in entries], "count": len(entries)}

    @app.get("/logs/search")
    async def search(
        pattern: str = Query(..., min_length=1),
        limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    ):
        entries = bridge.logs.search(pattern, limit)
        return {"entries": [entry.to_dict() for entry in entries], "count": len(entries)}

    @app.get("/metrics")
    async def metrics():
        sample = bridge.monitor.sample()
        return {
            "metrics": bridge.metrics.snapshot(),
            "health": bridge.metrics.health_report(),
            "pressure": sample.as_dict() if sample is not None else None,
            "logs": bridge.logs.stats(),
            "state": bridge.snapshot(),
        }

    @app.post("/cleanup")
    async def cleanup():
        cleaned = await bridge.force_cleanup("requested over HTTP")
        return {"status": "ok" if cleaned else "skipped", "state": bridge.snapshot()}

    @app.websocket("/events")
    async def events(ws: WebSocket):
        queue: asyncio.Queue[LogEntry] = asyncio.Queue()
        unsubscribe = bridge.logs.subscribe(queue.put_nowait)
        await ws.accept()

        async def forward() -> None:
            while True:
                entry = await queue.get()
                await ws.send_text(json.dumps(entry.to_dict()))

        forwarder = asyncio.create_task(forward())
        try:
            while True:
                message = await ws.receive()
                if message["type"] == "websocket.disconnect":
                    break
        except WebSocketDisconnect:
            pass
        finally:
            unsubscribe()
            forwarder.cancel()
            await asyncio.wait({forwarder})

    return app


async def _reject(ws: WebSocket, exc: BaseException) -> None:
    with contextlib.suppress(Exception):
        await ws.send_json({"type": "error", "error": str(exc)})
        await ws.close(code=close_code_for(exc))


async def _pump(ws: WebSocket, outbound: "asyncio.Queue[Dict[str, Any]]") -> None:
    while True:
        message = await outbound.get()
        await ws.send_json(message)


async def _read_frames(
    ws: WebSocket,
    bridge: Bridge,
    token: str,
    outbound: "asyncio.Queue[Dict[str, Any]]",
    cleaning: asyncio.Event,
) -> None:
    while True:
        message = await ws.receive()
        if message["type"] == "websocket.disconnect":
            return
        raw = message.get("text")
        if raw is None:
            raw = (message.get("bytes") or b"").decode("utf-8", "replace")

        try:
            frame = json.loads(raw)
        except ValueError:
            outbound.put_nowait({"type": "error", "error": "Malformed frame: expected JSON"})
            continue
        if not isinstance(frame, dict):
            outbound.put_nowait({"type": "error", "error": "Malformed frame: expected an object"})
            continue

        kind = frame.get("type")
        if kind == "data":
            try:
                payload = bytes(frame.get("data") or [])
            except (TypeError, ValueError):
                outbound.put_nowait({"type": "error", "error": "Malformed data frame: expected an array of bytes"})
                continue
            try:
                await bridge.send(token, payload)
            except BridgeError as exc:
                outbound.put_nowait({"type": "error", "error": str(exc)})
        elif kind == "force_cleanup":
            cleaning.set()
            cleaned = await bridge.force_cleanup("requested by session")
            outbound.put_nowait({"type": "force_cleanup_complete", "cleaned": cleaned})
            return
        else:
            outbound.put_nowait({"type": "error", "error": f"Unknown frame type: {kind!r}"})


__all__ = ["create_app"]
