from __future__ import annotations
import enum
import json
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

import aiohttp
from pydantic import BaseModel, ValidationError

from .errors import SpotifyError

logger = logging.getLogger(__name__)

SPOTIFY_API_URL = 'https://api.spotify.com/v1'


class Artist(BaseModel):
    id: str
    name: str


class Track(BaseModel):
    id: str
    name: str
    duration_ms: int = 0
    artists: List[Artist] = []

    @property
    def uri(self) -> str:
        return f"spotify:track:{self.id}"

    def display(self) -> str:
        if not self.artists:
            return self.name
        return f"{self.name} - {self.artists[0].name}"


class TrackResults(BaseModel):
    total: int = 0
    items: List[Track] = []


class SpotifyClient:
    def __init__(
        self,
        token_provider: Callable[[], Awaitable[str]],
        *,
        base_url: str = SPOTIFY_API_URL,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.token_provider = token_provider
        self.base = base_url.rstrip('/')
        self.session = session
        self._owns_session = session is None

    async def start(self):
        if not self.session:
            self.session = aiohttp.ClientSession()
            self._owns_session = True

    async def close(self):
        if self.session and self._owns_session:
            await self.session.close()
            self.session = None

    async def _req(self, method: str, path: str, params: Optional[Dict[str, str]] = None):
        if not self.session:
            await self.start()
        access_token = await self.token_provider()
        headers = {'Authorization': f'Bearer {access_token}'}
        url = f"{self.base}{path}"
        try:
            async with self.session.request(method, url, headers=headers, params=params) as r:
                text = await r.text()
                if r.status >= 400:
                    detail: object = text
                    try:
                        data = json.loads(text) if text else None
                    except ValueError:
                        data = None
                    if isinstance(data, dict) and isinstance(data.get('error'), dict):
                        detail = data['error'].get('message') or text
                    raise SpotifyError(r.status, detail or f"{method} {path} failed")
                if not text:
                    return None
                try:
                    return json.loads(text)
                except ValueError:
                    return text
        except aiohttp.ClientError as exc:
            raise SpotifyError(None, f"{method} {path} failed: {exc}") from exc

    async def search(self, query: str, limit: int = 5) -> TrackResults:
        data = await self._req('GET', '/search', {'q': query, 'type': 'track', 'limit': str(limit)})
        tracks = data.get('tracks') if isinstance(data, dict) else None
        if tracks is None:
            return TrackResults()
        try:
            return TrackResults.model_validate(tracks)
        except ValidationError as exc:
            raise SpotifyError(None, f'unexpected search payload: {exc}') from exc

    async def queue_track(self, track: Track) -> None:
        await self._req('POST', '/me/player/queue', {'uri': track.uri})


class ActionStatus(enum.Enum):
    SUCCESS = 'success'
    EMPTY = 'empty'
    FAILED = 'failed'


@dataclass
class ActionResult:
    status: ActionStatus
    display: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, display: str) -> 'ActionResult':
        return cls(ActionStatus.SUCCESS, display=display)

    @classmethod
    def empty(cls) -> 'ActionResult':
        return cls(ActionStatus.EMPTY)

    @classmethod
    def failed(cls, error: object) -> 'ActionResult':
        return cls(ActionStatus.FAILED, error=str(error))


class QueueTrackAction:
    """Search Spotify for the query and queue the first hit."""

    def __init__(self, client: SpotifyClient):
        self.client = client

    async def __call__(self, query: str) -> ActionResult:
        try:
            results = await self.client.search(query)
        except SpotifyError as exc:
            return ActionResult.failed(exc)
        if not results.items:
            return ActionResult.empty()
        track = results.items[0]
        try:
            await self.client.queue_track(track)
        except SpotifyError as exc:
            return ActionResult.failed(exc)
        return ActionResult.success(track.display())
