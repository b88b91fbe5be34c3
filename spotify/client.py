"""
spotify/client.py
Async Spotify Web API client used to drive playback on the Spotify
Connect device whose audio output the bot captures.

Authentication uses the refresh-token flow: the app's client id/secret
plus a long-lived refresh token (from a one-time authorization-code
login) are exchanged for short-lived access tokens. The access token is
refreshed once automatically when a call comes back 401.

Transport-control calls are fire-and-forget from the command handlers:
they are wrapped with ``fire()`` and any failure is handed to the
``on_error`` callback instead of the caller.
"""

from __future__ import annotations
import asyncio
import json
import logging
import os
import re
from typing import Any, Awaitable, Callable, Optional

import aiohttp

from .errors import SpotifyAuthError, SpotifyError, SpotifyNotFound

log = logging.getLogger("spotbot.spotify")

CLIENT_ID      = os.getenv("SPOTIFY_CLIENT_ID", "")
CLIENT_SECRET  = os.getenv("SPOTIFY_CLIENT_SECRET", "")
REFRESH_TOKEN  = os.getenv("SPOTIFY_REFRESH_TOKEN", "")
DEVICE_NAME    = os.getenv("SPOTIFY_DEVICE_NAME", "")

ACCOUNTS_URL   = "https://accounts.spotify.com/api/token"
API_URL        = "https://api.spotify.com/v1"
REQUEST_TIMEOUT = 15.0   # seconds
RADIO_SIZE      = 50     # tracks queued by start_radio()

_URL_RE = re.compile(
    r"^https?://open\.spotify\.com/(?:intl-[a-z]{2}(?:-[a-z]{2})?/)?"
    r"(track|album|playlist|artist|episode|show)/([A-Za-z0-9]+)"
)
_URI_RE = re.compile(r"^spotify:(track|album|playlist|artist|episode|show):([A-Za-z0-9]+)$")

# Kinds that play as a list of items rather than as a context.
_ITEM_KINDS = ("track", "episode")

ErrorCallback = Callable[[Exception], Awaitable[None]]


def parse_spotify_url(url: str) -> tuple[str, str]:
    """Return ``(kind, uri)`` for an open.spotify.com link or spotify: URI."""
    url = url.strip()
    m = _URL_RE.match(url) or _URI_RE.match(url)
    if not m:
        raise SpotifyNotFound(f"Not a Spotify link: {url}")
    kind, item_id = m.group(1), m.group(2)
    return kind, f"spotify:{kind}:{item_id}"


def format_track(item: Optional[dict]) -> str:
    """'Title - Artist, Artist (Album)' for a track or episode object."""
    if not item:
        return "Nothing is playing"
    title = item.get("name") or "Unknown title"
    if item.get("type") == "episode":
        show = (item.get("show") or {}).get("name")
        return f"{title} - {show}" if show else title
    artists = ", ".join(a.get("name", "") for a in item.get("artists") or [] if a.get("name"))
    album = (item.get("album") or {}).get("name")
    text = f"{title} - {artists}" if artists else title
    return f"{text} ({album})" if album else text


class SpotifyClient:
    def __init__(self,
                 refresh_token: Optional[str] = None,
                 device_name: Optional[str] = None,
                 on_error: Optional[ErrorCallback] = None):
        self.refresh_token = REFRESH_TOKEN if refresh_token is None else refresh_token
        self.device_name = DEVICE_NAME if device_name is None else device_name
        self.on_error = on_error

        self._session: Optional[aiohttp.ClientSession] = None
        self._client_id: Optional[str] = None
        self._client_secret: Optional[str] = None
        self._access_token: Optional[str] = None
        self._device_id: Optional[str] = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def logged_in(self) -> bool:
        return self._access_token is not None

    # ──────────────────────────────────────────
    # Session
    # ──────────────────────────────────────────

    async def login(self, client_id: Optional[str] = None, client_secret: Optional[str] = None) -> None:
        client_id = client_id or CLIENT_ID
        client_secret = client_secret or CLIENT_SECRET
        if not client_id or not client_secret or not self.refresh_token:
            raise SpotifyAuthError("Spotify credentials are not configured.")

        self._client_id, self._client_secret = client_id, client_secret
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT)
            )
        await self._refresh_access_token()
        log.info("Logged in to Spotify.")

    async def logout(self) -> None:
        self._access_token = None
        self._device_id = None
        session, self._session = self._session, None
        if session is not None and not session.closed:
            await session.close()
        log.info("Logged out of Spotify.")

    async def restart(self) -> None:
        """Log out and back in with the same credentials."""
        client_id, client_secret = self._client_id, self._client_secret
        await self.logout()
        await self.login(client_id, client_secret)

    async def _refresh_access_token(self) -> None:
        if self._session is None:
            raise SpotifyAuthError("Not logged in to Spotify.")
        data = {"grant_type": "refresh_token", "refresh_token": self.refresh_token}
        auth = aiohttp.BasicAuth(self._client_id or "", self._client_secret or "")
        async with self._session.post(ACCOUNTS_URL, data=data, auth=auth) as resp:
            body = await _read_json(resp)
            if resp.status != 200 or not isinstance(body, dict) or "access_token" not in body:
                err = SpotifyError.from_response(resp.status, body)
                raise SpotifyAuthError(f"Token refresh failed: {err}", status=resp.status)

        self._access_token = body["access_token"]
        # Spotify may rotate the refresh token.
        if body.get("refresh_token"):
            self.refresh_token = body["refresh_token"]
        log.debug("Spotify access token refreshed (expires in %ss).", body.get("expires_in"))

    async def _request(self, method: str, path: str, *,
                       params: Optional[dict] = None,
                       payload: Optional[dict] = None,
                       retry: bool = True) -> Any:
        if self._session is None or self._access_token is None:
            raise SpotifyError("Not logged in to Spotify.")

        params = {k: str(v) for k, v in (params or {}).items() if v is not None}
        headers = {"Authorization": f"Bearer {self._access_token}"}
        async with self._session.request(method, API_URL + path, params=params,
                                         json=payload, headers=headers) as resp:
            if resp.status == 401 and retry:
                expired = True
            else:
                expired = False
                body = await _read_json(resp)
                if resp.status >= 400:
                    raise SpotifyError.from_response(resp.status, body)

        if expired:
            log.debug("Spotify access token expired; refreshing.")
            await self._refresh_access_token()
            return await self._request(method, path, params=params, payload=payload, retry=False)
        return body

    async def _device_params(self) -> dict:
        if not self.device_name:
            return {}
        if self._device_id is None:
            body = await self._request("GET", "/me/player/devices")
            for device in (body or {}).get("devices", []):
                if device.get("name", "").lower() == self.device_name.lower():
                    self._device_id = device["id"]
                    break
            else:
                raise SpotifyNotFound(f"Spotify device {self.device_name!r} is not available.")
        return {"device_id": self._device_id}

    # ──────────────────────────────────────────
    # Fire-and-forget
    # ──────────────────────────────────────────

    def fire(self, coro: Awaitable[Any]) -> asyncio.Task:
        """Run ``coro`` in the background; failures go to ``on_error``."""
        task = asyncio.create_task(self._guard(coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guard(self, coro: Awaitable[Any]) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("Spotify call failed: %s", e)
            if self.on_error is None:
                return
            try:
                await self.on_error(e)
            except Exception:
                log.exception("Spotify error callback failed.")

    # ──────────────────────────────────────────
    # Playback
    # ──────────────────────────────────────────

    async def play(self) -> None:
        await self._request("PUT", "/me/player/play", params=await self._device_params())

    async def _play_uris(self, uris: list[str]) -> None:
        await self._request("PUT", "/me/player/play",
                            params=await self._device_params(), payload={"uris": uris})

    async def play_url(self, url: str) -> None:
        kind, uri = parse_spotify_url(url)
        if kind in _ITEM_KINDS:
            payload = {"uris": [uri]}
        else:
            payload = {"context_uri": uri}
        log.info("Playing %s %s", kind, uri)
        await self._request("PUT", "/me/player/play",
                            params=await self._device_params(), payload=payload)

    async def search_and_play(self, query: str) -> None:
        body = await self._request("GET", "/search",
                                   params={"q": query, "type": "track", "limit": 1})
        items = ((body or {}).get("tracks") or {}).get("items") or []
        if not items:
            raise SpotifyNotFound(f"No results for {query!r}")
        log.info("Search %r → %s", query, format_track(items[0]))
        await self._play_uris([items[0]["uri"]])

    async def pause(self) -> None:
        await self._request("PUT", "/me/player/pause", params=await self._device_params())

    async def previous(self) -> None:
        await self._request("POST", "/me/player/previous", params=await self._device_params())

    async def next(self) -> None:
        await self._request("POST", "/me/player/next", params=await self._device_params())

    async def start_radio(self) -> None:
        """Replace the queue with tracks recommended from the current one."""
        item = await self._currently_playing()
        if not item or item.get("type") != "track":
            raise SpotifyNotFound("Play a track first to start a radio from it.")
        body = await self._request("GET", "/recommendations",
                                   params={"seed_tracks": item["id"], "limit": RADIO_SIZE})
        uris = [t["uri"] for t in (body or {}).get("tracks", []) if t.get("uri")]
        if not uris:
            raise SpotifyNotFound(f"No recommendations for {format_track(item)}")
        log.info("Starting radio from %s (%d tracks)", format_track(item), len(uris))
        await self._play_uris(uris)

    async def _currently_playing(self) -> Optional[dict]:
        body = await self._request("GET", "/me/player/currently-playing")
        return (body or {}).get("item")

    async def now_playing_info(self) -> str:
        return format_track(await self._currently_playing())


async def _read_json(resp: aiohttp.ClientResponse) -> Any:
    text = await resp.text()
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return {"error": text[:200]}
