"""Websocket stream of a user's notifications."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Optional, Set

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status
from starlette.concurrency import run_in_threadpool

from coachnotify.notifications.realtime import Subscription
from coachnotify.pipeline import NotificationPipeline
from coachnotify.schemas.notification import NotificationResponse

router = APIRouter()

LOGGER = logging.getLogger("coachnotify.api.realtime")


async def _forward(websocket: WebSocket, subscription: Subscription, backfilled: Set[str]) -> None:
    async for message in subscription:
        # Already sent in the backfill frame.
        if message.get("type") == "notification.created" and message["data"].get("id") in backfilled:
            continue
        await websocket.send_json(message)


async def _receive(websocket: WebSocket) -> None:
    while True:
        raw = await websocket.receive_text()
        try:
            message = json.loads(raw)
        except ValueError:
            continue
        if isinstance(message, dict) and message.get("type") == "ping":
            await websocket.send_json({"type": "pong"})


@router.websocket("/notifications")
async def notifications_stream(
    websocket: WebSocket,
    user_id: Optional[str] = Query(default=None, max_length=128),
    backfill: bool = Query(default=True),
) -> None:
    """Backfill recent unread notifications, then stream ``notification.*`` messages until disconnect."""

    if not user_id:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    pipeline: NotificationPipeline = websocket.app.state.pipeline
    await websocket.accept()
    # Subscribe before reading the backfill so nothing created in between is lost.
    subscription = pipeline.hub.subscribe(user_id)
    LOGGER.info("realtime_connected", extra={"user_id": user_id})
    try:
        backfilled: Set[str] = set()
        if backfill:
            recent = await run_in_threadpool(pipeline.recent_unread, user_id)
            items = [NotificationResponse.model_validate(item).model_dump(mode="json") for item in recent]
            backfilled = {item["id"] for item in items}
            await websocket.send_json({"type": "notification.backfill", "data": items})

        tasks = {
            asyncio.create_task(_forward(websocket, subscription, backfilled)),
            asyncio.create_task(_receive(websocket)),
        }
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect):
                await task
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                raise exc
    except WebSocketDisconnect:
        pass
    finally:
        subscription.cancel()
        LOGGER.info("realtime_disconnected", extra={"user_id": user_id})
