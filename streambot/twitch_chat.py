from __future__ import annotations
import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional, Tuple

import aiohttp
import twitchio
from twitchio import eventsub
from twitchio.ext import commands
from twitchio.payloads import TokenRefreshedPayload

from .config import TWITCH_VALIDATE_URL
from .errors import ChatTransportError, TokenExchangeError, TokenStorageError, TokenValidationError
from .router import COMMAND_PREFIX, ChatEvent
from .tokens import AccessToken, CredentialStore, utcnow

logger = logging.getLogger(__name__)


async def fetch_identity(session: aiohttp.ClientSession, access_token: str) -> Tuple[str, str]:
    """Return ``(login, user_id)`` of the account owning ``access_token``."""
    headers = {'Authorization': f'OAuth {access_token}'}
    try:
        async with session.get(TWITCH_VALIDATE_URL, headers=headers) as r:
            status = r.status
            data = await r.json(content_type=None) if status < 400 else None
    except (aiohttp.ClientError, ValueError) as exc:
        raise TokenExchangeError(None, f'token validation failed: {exc}') from exc
    if status >= 400:
        raise TokenExchangeError(status, 'Twitch rejected the access token')
    if not isinstance(data, dict) or not data.get('login'):
        raise TokenValidationError('validation response missing login')
    return str(data['login']), str(data.get('user_id') or '')


class TwitchChat(commands.Bot):
    """Chat transport for a single channel.

    Messages arrive through an EventSub chat subscription and are queued as
    :class:`ChatEvent` for the router. The user token comes from ``store``;
    tokens twitchio refreshes are written back through ``store.update``.
    """

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        bot_id: str,
        channel: str,
        store: CredentialStore,
        clock: Callable[[], datetime] = utcnow,
    ):
        if not client_id or not client_secret or not bot_id:
            raise ChatTransportError('client_id, client_secret and bot_id are required')
        super().__init__(
            client_id=client_id,
            client_secret=client_secret,
            bot_id=str(bot_id),
            prefix=COMMAND_PREFIX,
            fetch_client_user=False,
        )
        self._setup_chat(channel, str(bot_id), store, clock)

    def _setup_chat(
        self,
        channel: str,
        bot_user_id: str,
        store: CredentialStore,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.channel_login = channel.lstrip('#').lower()
        self.bot_user_id = bot_user_id
        self.token_store = store
        self._clock = clock
        self.broadcaster_id: Optional[str] = None
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._joined = asyncio.Event()
        self._join_error: Optional[BaseException] = None
        self._runner: Optional[asyncio.Task] = None
        self._stopping = False
        self._finished = False

    @property
    def connected(self) -> bool:
        return self.broadcaster_id is not None and not (self._stopping or self._finished)

    async def load_tokens(self, path: Optional[str] = None) -> None:
        token = self.token_store.load()
        if not token.refresh_token:
            raise ChatTransportError('chat token has no refresh token')
        payload = await super().add_token(token.access_token, token.refresh_token)
        logger.info('Chat token for %s valid for %ss', payload.login, payload.expires_in)

    async def save_tokens(self, path: Optional[str] = None) -> None:
        # Refreshed tokens already went through the store.
        return None

    async def event_token_refreshed(self, payload: TokenRefreshedPayload) -> None:
        if str(payload.user_id) != self.bot_user_id:
            return
        token = AccessToken(
            access_token=payload.token,
            refresh_token=payload.refresh_token,
            scope=[str(scope) for scope in payload.scopes],
            expires_in=payload.expires_in,
            created_at=self._clock(),
        )
        try:
            self.token_store.update(token)
        except TokenStorageError as exc:
            logger.warning('Refreshed chat token could not be saved: %s', exc)
            return
        logger.info('Refreshed chat token saved')

    async def event_ready(self) -> None:
        try:
            users = await self.fetch_users(logins=[self.channel_login])
            if not users:
                raise ChatTransportError(f'unknown channel {self.channel_login!r}')
            self.broadcaster_id = str(users[0].id)
            payload = eventsub.ChatMessageSubscription(
                broadcaster_user_id=self.broadcaster_id,
                user_id=self.bot_user_id,
            )
            await self.subscribe_websocket(payload=payload, as_bot=True)
        except Exception as exc:
            self.broadcaster_id = None
            self._join_error = exc
        else:
            logger.info('Joined #%s', self.channel_login)
        finally:
            self._joined.set()

    async def event_message(self, message) -> None:
        chatter = message.chatter
        if str(getattr(chatter, 'id', '')) == self.bot_user_id:
            return
        broadcaster = getattr(message, 'broadcaster', None)
        if self.broadcaster_id and str(getattr(broadcaster, 'id', '')) != self.broadcaster_id:
            return
        self._inbox.put_nowait(ChatEvent(
            sender=chatter.name or chatter.display_name,
            text=message.text or '',
            sender_id=str(chatter.id),
            message_id=getattr(message, 'id', None),
        ))

    async def connect(self) -> None:
        """Start the client and wait until the chat subscription is in place."""
        self._runner = asyncio.create_task(self.start(with_adapter=False), name='twitchio')
        self._runner.add_done_callback(self._on_runner_done)
        joined = asyncio.ensure_future(self._joined.wait())
        try:
            await asyncio.wait({self._runner, joined}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not joined.done():
                joined.cancel()
        if not self._joined.is_set():
            exc = None if self._runner.cancelled() else self._runner.exception()
            raise ChatTransportError(f'chat client stopped before joining: {exc}') from exc
        if self._join_error is not None:
            await self.close()
            raise ChatTransportError(f'cannot join #{self.channel_login}: {self._join_error}') from self._join_error

    def _on_runner_done(self, task: asyncio.Task) -> None:
        self._finished = True
        if self._stopping:
            return
        exc = None if task.cancelled() else task.exception()
        if exc is not None:
            logger.error('Chat client stopped: %s', exc)
        else:
            logger.warning('Chat client stopped')
        self._inbox.put_nowait(None)

    async def receive(self) -> Optional[ChatEvent]:
        """Next chat message, or ``None`` once the transport is closed."""
        if (self._stopping or self._finished) and self._inbox.empty():
            return None
        return await self._inbox.get()

    async def send(self, message: str) -> None:
        if not self.connected:
            raise ChatTransportError('not connected')
        partial = self.create_partialuser(self.broadcaster_id, self.channel_login)
        try:
            await partial.send_message(message, sender=self.bot_user_id, token_for=self.bot_user_id)
        except twitchio.HTTPException as exc:
            raise ChatTransportError(f'send failed: {exc}') from exc

    async def close(self, **options) -> None:
        if self._stopping:
            return
        self._stopping = True
        self._inbox.put_nowait(None)
        await super().close(**options)
