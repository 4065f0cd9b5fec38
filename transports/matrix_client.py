import asyncio
import base64
import itertools
import json
import logging
import time
from typing import Awaitable, Callable, Dict, Optional, Set
from urllib.parse import quote

import aiohttp

from core.storage import KeyValueStore

log = logging.getLogger(__name__)

SYNC_TIMEOUT_MS = 30_000
SYNC_RETRY_SECONDS = 5
MAX_RATE_LIMIT_DELAY_MS = 10_000
SYNC_TOKEN_KEY = "sync_token"

EventCallback = Callable[[str, dict], Awaitable[None]]
RoomCallback = Callable[[str], Awaitable[None]]


class MatrixError(Exception):
    def __init__(self, status: int, errcode: str = "", error: str = "", retry_after_ms: Optional[int] = None):
        self.status = status
        self.errcode = errcode
        self.error = error
        self.retry_after_ms = retry_after_ms
        super().__init__(f"{status} {errcode}: {error}".strip())


def _path(value: str) -> str:
    return quote(value, safe="")


def localpart_of(username: str) -> str:
    """Return ``bot`` for ``@bot:server``; other input is returned as-is."""
    if ":" not in username or "@" not in username:
        return username
    return username.split(":", 1)[0].split("@", 1)[1]


class MatrixClient:
    """Thin Matrix client-server API client."""

    def __init__(
        self,
        homeserver_url: str,
        access_token: str,
        storage: Optional[KeyValueStore] = None,
        *,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.homeserver_url = homeserver_url.rstrip("/")
        self.access_token = access_token
        self.storage = storage
        self._session = session
        self._owns_session = session is None
        self._txn_counter = itertools.count()
        self._txn_base = int(time.time() * 1000)
        self._direct_rooms: Set[str] = set()
        self._stop = asyncio.Event()
        self.user_id: Optional[str] = None
        self.on_room_event: Optional[EventCallback] = None
        self.on_invite: Optional[RoomCallback] = None

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        body: Optional[dict] = None,
        params: Optional[Dict[str, str]] = None,
        auth: bool = True,
        timeout: Optional[float] = None,
    ) -> dict:
        headers = {}
        if auth:
            headers["Authorization"] = f"Bearer {self.access_token}"
        client_timeout = aiohttp.ClientTimeout(total=timeout) if timeout else None
        async with self.session.request(
            method,
            f"{self.homeserver_url}{path}",
            json=body,
            params=params,
            headers=headers,
            timeout=client_timeout,
        ) as resp:
            text = await resp.text()
            try:
                payload = json.loads(text) if text else {}
            except json.JSONDecodeError:
                payload = {}
            if resp.status >= 400:
                raise MatrixError(
                    resp.status,
                    str(payload.get("errcode") or ""),
                    str(payload.get("error") or text[:200]),
                    payload.get("retry_after_ms"),
                )
            return payload

    # ----- identity -----
    async def password_login(self, username: str, password: str) -> str:
        payload = await self._request(
            "POST",
            "/_matrix/client/v3/login",
            body={
                "type": "m.login.password",
                "identifier": {"type": "m.id.user", "user": username},
                "password": password,
            },
            auth=False,
        )
        self.access_token = payload["access_token"]
        self.user_id = payload.get("user_id")
        return self.access_token

    async def whoami(self) -> str:
        if self.user_id is None:
            payload = await self._request("GET", "/_matrix/client/v3/account/whoami")
            self.user_id = str(payload["user_id"])
        return self.user_id

    async def get_display_name(self, user_id: str) -> Optional[str]:
        payload = await self._request("GET", f"/_matrix/client/v3/profile/{_path(user_id)}")
        return payload.get("displayname") or None

    # ----- rooms -----
    async def join_room(self, room_id: str) -> None:
        await self._request("POST", f"/_matrix/client/v3/join/{_path(room_id)}", body={})

    async def load_direct_rooms(self) -> None:
        """Fetch ``m.direct`` account data; incremental syncs only carry changes."""
        user_id = await self.whoami()
        try:
            content = await self._request(
                "GET", f"/_matrix/client/v3/user/{_path(user_id)}/account_data/m.direct"
            )
        except MatrixError as exc:
            if exc.errcode != "M_NOT_FOUND":
                raise
            content = {}
        self._set_direct_rooms(content)

    async def is_dm(self, room_id: str) -> bool:
        return room_id in self._direct_rooms

    # ----- sending -----
    def _next_txn_id(self) -> str:
        return f"{self._txn_base}.{next(self._txn_counter)}"

    async def send_message(self, room_id: str, content: dict) -> str:
        payload = await self._request(
            "PUT",
            f"/_matrix/client/v3/rooms/{_path(room_id)}/send/m.room.message/{_path(self._next_txn_id())}",
            body=content,
        )
        return str(payload.get("event_id") or "")

    async def send_text(self, room_id: str, text: str) -> str:
        return await self.send_message(room_id, {"msgtype": "m.text", "body": text})

    async def send_notice(self, room_id: str, text: str) -> str:
        return await self.send_message(room_id, {"msgtype": "m.notice", "body": text})

    async def set_typing(self, room_id: str, typing: bool, timeout_ms: int) -> None:
        user_id = await self.whoami()
        body: dict = {"typing": typing}
        if typing:
            body["timeout"] = timeout_ms
        await self._request(
            "PUT",
            f"/_matrix/client/v3/rooms/{_path(room_id)}/typing/{_path(user_id)}",
            body=body,
        )

    async def send_read_receipt(self, room_id: str, event_id: str) -> None:
        await self._request(
            "POST",
            f"/_matrix/client/v3/rooms/{_path(room_id)}/receipt/m.read/{_path(event_id)}",
            body={},
        )

    async def send_error(self, room_id: str, text: str, event_id: str) -> None:
        await asyncio.gather(
            self.set_typing(room_id, False, 500),
            self.send_text(room_id, text),
            self.send_read_receipt(room_id, event_id),
        )

    async def send_reply(
        self,
        room_id: str,
        text: str,
        *,
        root_event_id: Optional[str] = None,
        editing_event_id: Optional[str] = None,
    ) -> str:
        """Send a reply, or edit an earlier one in place.

        A rate-limited send is retried once after the server's suggested
        delay, capped at ten seconds.
        """
        content = build_reply_content(text, root_event_id=root_event_id, editing_event_id=editing_event_id)
        try:
            return await self.send_message(room_id, content)
        except MatrixError as exc:
            if exc.errcode != "M_LIMIT_EXCEEDED" or not exc.retry_after_ms:
                raise
            delay_ms = min(exc.retry_after_ms, MAX_RATE_LIMIT_DELAY_MS)
            log.warning("matrix send error: %s %s, retry after %sms", exc.errcode, exc.error, delay_ms)
            await asyncio.sleep(delay_ms / 1000)
            return await self.send_message(room_id, content)

    # ----- media -----
    async def download_image_data_url(self, content: dict) -> Optional[str]:
        if content.get("file"):
            log.warning("encrypted attachments are not supported")
            return None
        url = content.get("url")
        if not isinstance(url, str) or not url.startswith("mxc://"):
            return None
        server_name, _, media_id = url[len("mxc://"):].partition("/")
        if not server_name or not media_id:
            return None
        info = content.get("info") if isinstance(content.get("info"), dict) else {}
        mimetype = info.get("mimetype") or "image/png"
        async with self.session.get(
            f"{self.homeserver_url}/_matrix/client/v1/media/download/{_path(server_name)}/{_path(media_id)}",
            headers={"Authorization": f"Bearer {self.access_token}"},
        ) as resp:
            if resp.status >= 400:
                raise MatrixError(resp.status, error=f"media download failed for {url}")
            data = await resp.read()
        return f"data:{mimetype};base64,{base64.b64encode(data).decode('ascii')}"

    # ----- sync -----
    def _load_sync_token(self) -> Optional[str]:
        if self.storage is None:
            return None
        return self.storage.get(SYNC_TOKEN_KEY)

    def _save_sync_token(self, token: str) -> None:
        if self.storage is not None:
            self.storage.set(SYNC_TOKEN_KEY, token)

    def _update_direct_rooms(self, account_data: dict) -> None:
        for event in account_data.get("events") or []:
            if isinstance(event, dict) and event.get("type") == "m.direct":
                self._set_direct_rooms(event.get("content") or {})

    def _set_direct_rooms(self, content: dict) -> None:
        rooms: Set[str] = set()
        for room_ids in content.values():
            if isinstance(room_ids, list):
                rooms.update(str(room_id) for room_id in room_ids)
        self._direct_rooms = rooms

    async def process_sync(self, payload: dict) -> None:
        self._update_direct_rooms(payload.get("account_data") or {})
        rooms = payload.get("rooms") or {}
        for room_id in (rooms.get("invite") or {}):
            if self.on_invite is not None:
                await self.on_invite(room_id)
        for room_id, room in (rooms.get("join") or {}).items():
            timeline = (room or {}).get("timeline") or {}
            for event in timeline.get("events") or []:
                if not isinstance(event, dict):
                    log.warning("skipping malformed event in %s", room_id)
                    continue
                if self.on_room_event is not None:
                    await self.on_room_event(room_id, event)

    async def sync_once(self, since: Optional[str]) -> str:
        params = {"timeout": str(SYNC_TIMEOUT_MS)}
        if since:
            params["since"] = since
        payload = await self._request(
            "GET",
            "/_matrix/client/v3/sync",
            params=params,
            timeout=SYNC_TIMEOUT_MS / 1000 + 30,
        )
        await self.process_sync(payload)
        return str(payload.get("next_batch") or since or "")

    async def sync_forever(self) -> None:
        self._stop.clear()
        since = self._load_sync_token()
        while not self._stop.is_set():
            try:
                since = await self.sync_once(since)
                if since:
                    self._save_sync_token(since)
            except Exception as exc:
                log.warning("matrix sync failed: %s", exc)
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=SYNC_RETRY_SECONDS)
                except asyncio.TimeoutError:
                    pass

    def stop(self) -> None:
        self._stop.set()


def build_reply_content(
    text: str,
    *,
    root_event_id: Optional[str] = None,
    editing_event_id: Optional[str] = None,
) -> dict:
    content: dict = {"msgtype": "m.text", "body": text}
    if editing_event_id:
        content["m.new_content"] = dict(content)
        content["m.relates_to"] = {
            "rel_type": "m.replace",
            "event_id": editing_event_id,
        }
    elif root_event_id:
        content["m.relates_to"] = {
            "rel_type": "m.thread",
            "event_id": root_event_id,
            "is_falling_back": True,
            "m.in_reply_to": {"event_id": root_event_id},
        }
    return content
