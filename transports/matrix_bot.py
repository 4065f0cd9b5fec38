import asyncio
import logging
import time

import aiohttp

from core.config import BotConfig
from core.handlers import STALE_EVENT_MS, MessageRouter, event_timestamp_ms

from .matrix_client import MatrixClient, MatrixError

log = logging.getLogger(__name__)


class MatrixTransport:
    def __init__(self, client: MatrixClient, router: MessageRouter, config: BotConfig):
        self.client = client
        self.router = router
        self.config = config
        self._stop_event = asyncio.Event()
        self.client.on_room_event = self.handle_event
        self.client.on_invite = self.handle_invite

    async def handle_event(self, room_id: str, event: dict) -> None:
        event_type = event.get("type")
        if event_type == "m.room.message":
            await self.router.on_message(room_id, event)
        elif event_type == "m.room.encrypted":
            if time.time() * 1000 - event_timestamp_ms(event) > STALE_EVENT_MS:
                return
            log.warning("ignoring encrypted event %s in %s", event.get("event_id"), room_id)

    async def handle_invite(self, room_id: str) -> None:
        if not self.config.autojoin:
            return
        try:
            await self.client.join_room(room_id)
        except MatrixError as exc:
            log.warning("failed to join %s: %s", room_id, exc)
            return
        log.info("Bot joined room %s", room_id)
        if self.config.welcome:
            try:
                await self.client.send_notice(room_id, "👋 Hello, I'm ChatGPT bot!")
            except MatrixError as exc:
                log.warning("failed to greet %s: %s", room_id, exc)

    async def start(self):
        await self.router.prepare_profile()
        try:
            await self.client.load_direct_rooms()
        except (MatrixError, aiohttp.ClientError) as exc:
            log.warning("could not load direct rooms: %s", exc)
        log.info("Matrix bot ready as %s", self.router.user_id)
        sync_task = asyncio.create_task(self.client.sync_forever())
        try:
            await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            self.client.stop()
            sync_task.cancel()
            try:
                await sync_task
            except asyncio.CancelledError:
                pass
            await self.client.close()

    async def stop(self):
        self._stop_event.set()
