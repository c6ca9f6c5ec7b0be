"""Live channel: WebSocket push of generation events.

Protocol (JSON text frames):

  client → server
    {"type": "authenticate", "token": "..."}
    {"type": "subscribe", "channels": ["generation:{ownerId}"]}
    {"type": "unsubscribe", "channels": [...]}
    {"type": "ping"}
    {"type": "generation_status_request", "jobId": "..."}

  server → client
    connected, authenticated, subscribed, unsubscribed, pong,
    generation_status, error, and the generation_* event envelopes.

The token may also be passed as the ``token`` query parameter. A
successful authentication subscribes the connection to its own
``generation:{ownerId}`` channel; no other channel can be joined.
"""

import asyncio
import json
import logging
import uuid
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool

from vtry_jobs.api.generations import JobView
from vtry_jobs.auth.identity import Identity
from vtry_jobs.errors import GenerationError
from vtry_jobs.services.events import to_envelope
from vtry_jobs.services.gateway import RequestGateway
from vtry_jobs.services.notifications import Subscription, channel_for
from vtry_jobs.services.orchestrator import Orchestrator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["live"])


class LiveConnection:
    """State of one WebSocket client."""

    def __init__(self, websocket: WebSocket, orchestrator: Orchestrator, gateway: RequestGateway) -> None:
        self.websocket = websocket
        self.client_id = uuid.uuid4().hex
        self.identity: Identity | None = None
        self._ctx = orchestrator
        self._gateway = gateway
        self._subscription: Subscription | None = None
        self._pump: asyncio.Task | None = None
        self._send_lock = asyncio.Lock()

    async def send(self, message: dict[str, Any]) -> None:
        async with self._send_lock:
            await self.websocket.send_json(message)

    async def error(self, message: str) -> None:
        await self.send({"type": "error", "message": message})

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    async def _forward_events(self, subscription: Subscription) -> None:
        while True:
            event = await subscription.get()
            try:
                await self.send(to_envelope(event))
            except (WebSocketDisconnect, RuntimeError):
                return

    def _subscribe(self) -> None:
        if self._subscription is not None or self.identity is None:
            return
        self._subscription = self._ctx.hub.subscribe(self.identity.owner_id)
        self._pump = asyncio.create_task(self._forward_events(self._subscription))

    def _unsubscribe(self) -> None:
        if self._subscription is not None:
            self._ctx.hub.unsubscribe(self._subscription)
            self._subscription = None
        if self._pump is not None:
            self._pump.cancel()
            self._pump = None

    def _channels(self) -> list[str]:
        return [self._subscription.channel] if self._subscription is not None else []

    # ------------------------------------------------------------------
    # Message handlers
    # ------------------------------------------------------------------

    async def authenticate(self, token: str | None) -> None:
        if not token:
            await self.error("Authentication token required")
            return
        identity = self._ctx.identity.verify(token)
        if identity is None:
            await self.error("Invalid or expired token")
            return
        if self.identity is not None and self.identity.owner_id != identity.owner_id:
            self._unsubscribe()
        self.identity = identity
        self._subscribe()
        logger.info("Live client %s authenticated", self.client_id, extra={"owner_id": identity.owner_id})
        await self.send({"type": "authenticated", "userId": identity.owner_id, "channels": self._channels()})

    async def subscribe(self, channels: Any) -> None:
        if not isinstance(channels, list):
            await self.error("Invalid subscription data")
            return
        if self.identity is None:
            await self.error("Authentication required")
            return
        if channel_for(self.identity.owner_id) in channels:
            self._subscribe()
        await self.send({"type": "subscribed", "channels": self._channels()})

    async def unsubscribe(self, channels: Any) -> None:
        if not isinstance(channels, list):
            await self.error("Invalid unsubscription data")
            return
        if self._subscription is not None and self._subscription.channel in channels:
            self._unsubscribe()
        await self.send({"type": "unsubscribed", "channels": channels})

    async def status_request(self, job_id: Any) -> None:
        if self.identity is None:
            await self.error("Authentication required")
            return
        if not isinstance(job_id, str) or not job_id:
            await self.error("jobId is required")
            return
        try:
            job = await run_in_threadpool(self._gateway.get_status, job_id, self.identity.owner_id)
        except GenerationError:
            await self.error("Job not found")
            return
        await self.send({"type": "generation_status", **JobView.from_job(job).model_dump(mode="json")})

    async def dispatch(self, raw: str) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            await self.error("Invalid message format")
            return
        if not isinstance(message, dict):
            await self.error("Invalid message format")
            return

        kind = message.get("type")
        if kind == "authenticate":
            await self.authenticate(message.get("token"))
        elif kind == "subscribe":
            await self.subscribe(message.get("channels"))
        elif kind == "unsubscribe":
            await self.unsubscribe(message.get("channels"))
        elif kind == "ping":
            await self.send({"type": "pong"})
        elif kind == "generation_status_request":
            await self.status_request(message.get("jobId"))
        else:
            logger.warning("Unknown live message type: %s", kind)
            await self.error(f"Unknown message type: {kind}")

    async def serve(self) -> None:
        await self.send({"type": "connected", "clientId": self.client_id})
        token = self.websocket.query_params.get("token")
        if token:
            await self.authenticate(token)
        try:
            while True:
                await self.dispatch(await self.websocket.receive_text())
        except WebSocketDisconnect:
            logger.debug("Live client %s disconnected", self.client_id)
        finally:
            self._unsubscribe()


@router.websocket("/ws")
async def live_channel(websocket: WebSocket) -> None:
    await websocket.accept()
    connection = LiveConnection(websocket, websocket.app.state.orchestrator, websocket.app.state.gateway)
    await connection.serve()
