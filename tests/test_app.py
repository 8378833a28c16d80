import asyncio
import sys
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from streambot import app
from streambot.commands import CommandRegistry, load_commands
from streambot.config import load_settings
from streambot.errors import ChatTransportError, ConfigError, TokenExchangeError
from streambot.router import ChatEvent
from streambot.shutdown import ShutdownState
from streambot.tokens import AccessToken


T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeServer:
    def __init__(self):
        self.should_exit = False
        self.served = False

    async def serve(self):
        self.served = True
        while not self.should_exit:
            await asyncio.sleep(0.01)


class FakeSession:
    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeChat:
    def __init__(self, events, on_send=None):
        self.events = list(events)
        self.on_send = on_send
        self.sent = []
        self.connect = AsyncMock()
        self.closed = asyncio.Event()
        self.kwargs = None

    def __call__(self, **kwargs):
        self.kwargs = kwargs
        return self

    async def receive(self):
        if self.events:
            return self.events.pop(0)
        await self.closed.wait()
        return None

    async def send(self, message):
        self.sent.append(message)
        if self.on_send:
            self.on_send()

    async def close(self):
        self.closed.set()


class OrchestratorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.settings = load_settings({
            'TWITCH_CLIENT_ID': 'twitch-id',
            'TWITCH_CLIENT_SECRET': 'twitch-secret',
            'SPOTIFY_CLIENT_ID': 'spotify-id',
            'SPOTIFY_SECRET': 'spotify-secret',
            'TOKEN_DIR': self.tmp.name,
            'OPEN_BROWSER': '0',
        })
        self.server = FakeServer()
        self.interrupt = asyncio.Event()

    def _persist_tokens(self) -> None:
        for service in (self.settings.twitch, self.settings.spotify):
            token = AccessToken(access_token=f'{service.name}-tok', refresh_token='r', created_at=T0)
            service.token_path.write_text(token.model_dump_json(), encoding='utf-8')

    def _orchestrator(self, chat=None) -> app.Orchestrator:
        return app.Orchestrator(
            self.settings,
            registry=CommandRegistry(load_commands(None)),
            server=self.server,
            chat_factory=chat or FakeChat([]),
            session_factory=FakeSession,
            interrupt=self.interrupt,
            poll_interval=0.01,
        )

    async def test_interrupt_during_bootstrap_stops_everything(self) -> None:
        orchestrator = self._orchestrator()

        async def interrupt_soon():
            await asyncio.sleep(0.05)
            self.interrupt.set()

        trigger = asyncio.create_task(interrupt_soon())
        await asyncio.wait_for(orchestrator.run(), 2)
        await trigger

        self.assertTrue(self.server.served)
        self.assertTrue(self.server.should_exit)
        self.assertTrue(orchestrator.shutdown.is_set())
        self.assertIs(orchestrator.coordinator.state, ShutdownState.STOPPED)

    async def test_commands_flow_end_to_end(self) -> None:
        self._persist_tokens()
        chat = FakeChat(
            [
                ChatEvent(sender='alice', text='!doesnotexist'),
                ChatEvent(sender='alice', text='!hi'),
                ChatEvent(sender='bob', text='!github'),
                ChatEvent(sender='bob', text='!sr'),
            ],
            on_send=lambda: len(chat.sent) == 3 and self.interrupt.set(),
        )
        orchestrator = self._orchestrator(chat)

        with patch.object(app, 'fetch_identity', AsyncMock(return_value=('happyebot', '99'))) as identity:
            await asyncio.wait_for(orchestrator.run(), 2)

        identity.assert_awaited_once()
        self.assertEqual(identity.await_args.args[1], 'twitch-tok')
        chat.connect.assert_awaited_once()
        self.assertEqual(chat.kwargs['channel'], 'vynny_')
        self.assertEqual(chat.kwargs['bot_id'], '99')
        self.assertEqual(chat.kwargs['client_id'], 'twitch-id')
        self.assertEqual(chat.kwargs['store'].load().access_token, 'twitch-tok')
        self.assertEqual(chat.sent, ['Salve @alice', 'https://github.com/vininew921', 'Usage: !sr <song name>'])
        self.assertTrue(chat.closed.is_set())
        self.assertTrue(self.server.should_exit)

    async def test_chat_connection_failure_is_fatal(self) -> None:
        self._persist_tokens()
        chat = FakeChat([])
        chat.connect.side_effect = ChatTransportError('Login authentication failed')
        orchestrator = self._orchestrator(chat)

        with patch.object(app, 'fetch_identity', AsyncMock(return_value=('happyebot', '99'))):
            with self.assertRaises(ChatTransportError):
                await asyncio.wait_for(orchestrator.run(), 2)

        self.assertTrue(self.server.should_exit)
        self.assertTrue(orchestrator.shutdown.is_set())
        self.assertIs(orchestrator.coordinator.state, ShutdownState.STOPPED)

    async def test_listener_failure_is_fatal(self) -> None:
        self.server.serve = AsyncMock(side_effect=OSError('address in use'))
        orchestrator = self._orchestrator()

        with self.assertRaises(OSError):
            await asyncio.wait_for(orchestrator.run(), 2)

        self.assertTrue(orchestrator.shutdown.is_set())

    async def test_both_consent_pages_open_before_waiting(self) -> None:
        self.settings.open_browser = True
        opener = MagicMock()
        orchestrator = self._orchestrator()
        orchestrator.browser_opener = opener
        orchestrator.codes.put('twitch', 'code')
        self.interrupt.set()

        with patch.object(app.TokenBroker, 'exchange_code', AsyncMock(side_effect=TokenExchangeError(400, 'Invalid authorization code'))):
            with self.assertRaises(TokenExchangeError):
                await asyncio.wait_for(orchestrator.run(), 2)

        opened = [call.args[0] for call in opener.call_args_list]
        self.assertEqual(len(opened), 2)
        self.assertIn('id.twitch.tv', opened[0])
        self.assertIn('accounts.spotify.com', opened[1])

    async def test_consent_page_skipped_for_persisted_token(self) -> None:
        self.settings.open_browser = True
        self.settings.twitch.token_path.write_text(
            AccessToken(access_token='twitch-tok', refresh_token='r', created_at=T0).model_dump_json(),
            encoding='utf-8',
        )
        opener = MagicMock()
        orchestrator = self._orchestrator()
        orchestrator.browser_opener = opener
        self.interrupt.set()

        await asyncio.wait_for(orchestrator.run(), 2)

        opener.assert_called_once()
        self.assertIn('accounts.spotify.com', opener.call_args.args[0])


class MainTests(unittest.TestCase):
    def test_missing_configuration_exits_with_error(self) -> None:
        with patch.object(app, 'load_dotenv'), \
                patch.object(app, 'configure_logging'), \
                patch.object(app, 'load_settings', side_effect=ConfigError('TWITCH_CLIENT_ID must be set')):
            self.assertEqual(app.main(), 1)

    def test_clean_shutdown_exits_zero(self) -> None:
        orchestrator = MagicMock()
        orchestrator.run = AsyncMock()
        settings = MagicMock(log_level='DEBUG')
        with patch.object(app, 'load_dotenv'), \
                patch.object(app, 'configure_logging') as configure, \
                patch.object(app, 'load_settings', return_value=settings), \
                patch.object(app, 'Orchestrator', return_value=orchestrator):
            self.assertEqual(app.main(), 0)
        configure.assert_called_once_with('DEBUG')
        orchestrator.run.assert_awaited_once()


if __name__ == "__main__":
    unittest.main()
