import sys
import tempfile
import threading
import unittest
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from streambot import commands
from streambot.errors import ConfigError


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class CommandRegistryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock(T0)
        self.registry = commands.CommandRegistry(
            [
                commands.Command(name='hi', response_template='Salve @<user>', requires_tag=True, cooldown_seconds=5),
                commands.Command(name='free', response_template='always'),
                commands.Command(
                    name='sr',
                    response_template='Queued <result>',
                    usage_template='Usage: !sr <song name>',
                    requires_arguments=True,
                    cooldown_seconds=30,
                    external_action='spotify_queue',
                ),
            ],
            clock=self.clock,
        )

    def test_unknown_command_is_absent(self) -> None:
        self.assertIsNone(self.registry.lookup('doesnotexist', False))

    def test_names_are_sorted(self) -> None:
        self.assertEqual(self.registry.names(), ['free', 'hi', 'sr'])

    def test_cooldown_blocks_until_window_elapses(self) -> None:
        first = self.registry.lookup('hi', False)
        self.assertIsNotNone(first)
        self.assertEqual(first.last_invoked, T0)

        self.clock.advance(4.999)
        self.assertIsNone(self.registry.lookup('hi', False))

        self.clock.advance(0.001)
        again = self.registry.lookup('hi', False)
        self.assertIsNotNone(again)
        self.assertEqual(again.last_invoked, T0 + timedelta(seconds=5))

        self.clock.advance(1)
        self.assertIsNone(self.registry.lookup('hi', False))

    def test_zero_cooldown_always_fires(self) -> None:
        for _ in range(20):
            self.assertIsNotNone(self.registry.lookup('free', False))

    def test_missing_arguments_bypass_cooldown(self) -> None:
        for _ in range(3):
            usage = self.registry.lookup('sr', False)
            self.assertIsNotNone(usage)
            self.assertIsNone(usage.last_invoked)

        fired = self.registry.lookup('sr', True)
        self.assertEqual(fired.last_invoked, T0)
        self.assertIsNone(self.registry.lookup('sr', True))
        # usage help stays available while the command cools down
        self.assertIsNotNone(self.registry.lookup('sr', False))

    def test_lookup_returns_copy(self) -> None:
        command = self.registry.lookup('hi', False)
        command.last_invoked = None
        self.assertIsNone(self.registry.lookup('hi', False))

    def test_last_invoked_never_moves_backwards(self) -> None:
        self.registry.lookup('free', False)
        self.clock.advance(-10)
        command = self.registry.lookup('free', False)
        self.assertEqual(command.last_invoked, T0)

    def test_concurrent_lookups_fire_once(self) -> None:
        workers = 16
        barrier = threading.Barrier(workers)

        def attempt(_):
            barrier.wait()
            return self.registry.lookup('hi', False)

        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(attempt, range(workers)))

        present = [r for r in results if r is not None]
        self.assertEqual(len(present), 1)
        self.assertEqual(results.count(None), workers - 1)


class LoadCommandsTests(unittest.TestCase):
    def _write(self, text: str) -> Path:
        handle = tempfile.NamedTemporaryFile('w', suffix='.yml', delete=False, encoding='utf-8')
        with handle:
            handle.write(text)
        self.addCleanup(Path(handle.name).unlink)
        return Path(handle.name)

    def test_defaults_when_file_missing(self) -> None:
        table = {c.name: c for c in commands.load_commands(Path('/nonexistent/commands.yml'))}
        self.assertEqual(sorted(table), ['github', 'hi', 'sr'])
        self.assertEqual(table['hi'].response_template, 'Salve @<user>')
        self.assertTrue(table['hi'].requires_tag)
        self.assertEqual(table['hi'].cooldown_seconds, 10)
        self.assertEqual(table['github'].response_template, 'https://github.com/vininew921')
        self.assertFalse(table['github'].requires_tag)
        self.assertEqual(table['sr'].external_action, 'spotify_queue')

    def test_file_overrides_and_extends(self) -> None:
        path = self._write(
            "hi:\n"
            "  cooldown_seconds: 0\n"
            "'!Discord':\n"
            "  response_template: https://discord.gg/example\n"
            "  cooldown_seconds: 120\n"
            "github: null\n"
        )
        table = {c.name: c for c in commands.load_commands(path)}
        self.assertEqual(table['hi'].cooldown_seconds, 0)
        self.assertEqual(table['hi'].response_template, 'Salve @<user>')
        self.assertEqual(table['discord'].cooldown_seconds, 120)
        self.assertNotIn('github', table)

    def test_unknown_external_action_rejected(self) -> None:
        path = self._write("run:\n  response_template: x\n  external_action: shell\n")
        with self.assertRaises(ConfigError):
            commands.load_commands(path)

    def test_negative_cooldown_rejected(self) -> None:
        with self.assertRaises(ConfigError):
            commands.build_command('bad', {'response_template': 'x', 'cooldown_seconds': -1})


if __name__ == "__main__":
    unittest.main()
