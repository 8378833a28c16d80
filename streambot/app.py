from __future__ import annotations
import asyncio
import logging
import webbrowser
from typing import Awaitable, Callable, Optional

import aiohttp
from dotenv import load_dotenv

from .callbacks import build_server
from .commands import CommandRegistry, load_commands
from .config import DEFAULT_LOG_LEVEL, Settings, configure_logging, load_settings
from .errors import ConfigError, StreamBotError
from .router import MessageRouter
from .shutdown import ShutdownCoordinator, ShutdownSignal
from .spotify import QueueTrackAction, SpotifyClient
from .tokens import DEFAULT_POLL_INTERVAL, AuthCodeSlot, TokenBroker, open_consent_page
from .twitch_chat import TwitchChat, fetch_identity

logger = logging.getLogger(__name__)


class Orchestrator:
    """Runs the callback listener, the bootstrap + chat loop and the shutdown watcher."""

    def __init__(
        self,
        settings: Settings,
        *,
        registry: Optional[CommandRegistry] = None,
        server=None,
        chat_factory: Callable[..., TwitchChat] = TwitchChat,
        session_factory: Callable[[], aiohttp.ClientSession] = aiohttp.ClientSession,
        browser_opener: Callable[[str], object] = webbrowser.open,
        interrupt: Optional[asyncio.Event] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self.settings = settings
        self.shutdown = ShutdownSignal()
        self.codes = AuthCodeSlot()
        self.server = server if server is not None else build_server(
            self.codes, settings.callback_host, settings.callback_port,
        )
        self.coordinator = ShutdownCoordinator(self.shutdown, self.server)
        self.registry = registry if registry is not None else CommandRegistry(load_commands(settings.commands_file))
        self.chat_factory = chat_factory
        self.session_factory = session_factory
        self.browser_opener = browser_opener
        self.interrupt = interrupt
        self.poll_interval = poll_interval

    async def run(self) -> None:
        tasks = [
            asyncio.create_task(self.serve_callbacks(), name='callback-listener'),
            asyncio.create_task(self.run_chat(), name='chat'),
            asyncio.create_task(self.coordinator.watch(self.interrupt), name='shutdown-watcher'),
        ]
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
            failed = next(
                (t for t in tasks if t in done and not t.cancelled() and t.exception() is not None),
                None,
            )
            if failed is None:
                return
            self.coordinator.trigger(f'{failed.get_name()} failed')
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            raise failed.exception()
        finally:
            self.coordinator.finish()
            logger.info('Stopped')

    async def serve_callbacks(self) -> None:
        logger.info(
            'Listening for OAuth redirects on http://%s:%s',
            self.settings.callback_host, self.settings.callback_port,
        )
        await self.server.serve()

    async def run_chat(self) -> None:
        async with self.session_factory() as session:
            brokers = {
                name: TokenBroker(
                    service, self.codes, self.shutdown,
                    session=session, poll_interval=self.poll_interval,
                )
                for name, service in self.settings.services.items()
            }
            if self.settings.open_browser:
                for broker in brokers.values():
                    open_consent_page(broker.service, self.browser_opener)
            for broker in brokers.values():
                if await broker.acquire() is None:
                    return
            twitch, spotify = brokers['twitch'], brokers['spotify']

            token = await twitch.ensure_fresh()
            login, user_id = await fetch_identity(session, token.access_token)
            logger.info('Chatting as %s in #%s', login, self.settings.channel)
            chat = self.chat_factory(
                client_id=self.settings.twitch.client_id,
                client_secret=self.settings.twitch.client_secret,
                bot_id=user_id,
                channel=self.settings.channel,
                store=twitch.store,
            )
            await chat.connect()
            logger.info('Commands: %s', ', '.join(f'!{name}' for name in self.registry.names()))

            client = SpotifyClient(_access_token_provider(spotify), session=session)
            router = MessageRouter(
                self.registry, chat, self.shutdown,
                {'spotify_queue': QueueTrackAction(client)},
            )
            closer = asyncio.create_task(self._close_on_shutdown(chat))
            try:
                await router.run()
            finally:
                closer.cancel()
                await chat.close()
        self.coordinator.trigger('chat stopped')

    async def _close_on_shutdown(self, chat: TwitchChat) -> None:
        await self.shutdown.wait()
        await chat.close()


def _access_token_provider(broker: TokenBroker) -> Callable[[], Awaitable[str]]:
    async def provider() -> str:
        token = await broker.ensure_fresh()
        return token.access_token
    return provider


def main() -> int:
    load_dotenv()
    try:
        settings = load_settings()
    except ConfigError as exc:
        configure_logging(DEFAULT_LOG_LEVEL)
        logger.error('Invalid configuration: %s', exc)
        return 1
    configure_logging(settings.log_level)
    try:
        asyncio.run(Orchestrator(settings).run())
    except StreamBotError as exc:
        logger.error('Fatal: %s', exc)
        return 1
    except Exception:
        logger.exception('Fatal error')
        return 1
    return 0
