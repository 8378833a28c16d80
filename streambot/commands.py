from __future__ import annotations
import logging
import dataclasses
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from threading import Lock
from typing import Callable, Dict, Iterable, List, Optional

import yaml

from .errors import ConfigError
from .tokens import utcnow

logger = logging.getLogger(__name__)

USER_PLACEHOLDER = '<user>'
RESULT_PLACEHOLDER = '<result>'

# Identifiers the router knows how to dispatch. Command files may only refer to these.
EXTERNAL_ACTIONS = frozenset({'spotify_queue'})


@dataclass
class Command:
    name: str
    response_template: str
    requires_tag: bool = False
    requires_arguments: bool = False
    cooldown_seconds: int = 0
    external_action: Optional[str] = None
    usage_template: Optional[str] = None
    last_invoked: Optional[datetime] = None

    def ready_at(self, now: datetime) -> bool:
        if self.cooldown_seconds == 0 or self.last_invoked is None:
            return True
        return now >= self.last_invoked + timedelta(seconds=self.cooldown_seconds)


DEFAULT_COMMANDS: Dict[str, Dict[str, object]] = {
    'hi': {
        'response_template': 'Salve @<user>',
        'requires_tag': True,
        'cooldown_seconds': 10,
    },
    'github': {
        'response_template': 'https://github.com/vininew921',
        'cooldown_seconds': 60,
    },
    'sr': {
        'response_template': 'Queued <result>',
        'usage_template': 'Usage: !sr <song name>',
        'requires_arguments': True,
        'cooldown_seconds': 30,
        'external_action': 'spotify_queue',
    },
}

_FIELDS = {f.name for f in dataclasses.fields(Command)} - {'name', 'last_invoked'}


def build_command(name: str, entry: Dict[str, object]) -> Command:
    unknown = set(entry) - _FIELDS
    if unknown:
        raise ConfigError(f"command {name!r} has unknown fields: {', '.join(sorted(unknown))}")
    if 'response_template' not in entry:
        raise ConfigError(f'command {name!r} needs a response_template')
    action = entry.get('external_action')
    if action is not None and action not in EXTERNAL_ACTIONS:
        raise ConfigError(f'command {name!r} uses unknown external_action {action!r}')
    try:
        cooldown = int(entry.get('cooldown_seconds', 0) or 0)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f'command {name!r} has a non-integer cooldown') from exc
    if cooldown < 0:
        raise ConfigError(f'command {name!r} has a negative cooldown')
    usage = entry.get('usage_template')
    return Command(
        name=name.lower().lstrip('!'),
        response_template=str(entry['response_template']),
        requires_tag=bool(entry.get('requires_tag', False)),
        requires_arguments=bool(entry.get('requires_arguments', False)),
        cooldown_seconds=cooldown,
        external_action=action,
        usage_template=str(usage) if usage is not None else None,
    )


def load_commands(path: Optional[Path]) -> List[Command]:
    """Default command table merged with the overrides in ``path``.

    A command entry in the file replaces individual fields of the default with
    the same name or adds a new command. Setting an entry to ``null`` removes
    the command.
    """

    table: Dict[str, Dict[str, object]] = {name: dict(entry) for name, entry in DEFAULT_COMMANDS.items()}
    if path is not None:
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            data = {}
        except yaml.YAMLError as exc:
            raise ConfigError(f'cannot parse {path}: {exc}') from exc
        if not isinstance(data, dict):
            raise ConfigError(f'{path} must contain a mapping of command names')
        for raw_name, entry in data.items():
            name = str(raw_name).lower().lstrip('!')
            if entry is None:
                table.pop(name, None)
                continue
            if not isinstance(entry, dict):
                raise ConfigError(f'command {name!r} must be a mapping')
            table.setdefault(name, {}).update(entry)
    return [build_command(name, entry) for name, entry in table.items()]


class CommandRegistry:
    def __init__(self, commands: Iterable[Command] = (), clock: Callable[[], datetime] = utcnow):
        self._commands: Dict[str, Command] = {}
        self._lock = Lock()
        self.clock = clock
        for command in commands:
            self.register(command)

    def register(self, command: Command) -> None:
        with self._lock:
            self._commands[command.name.lower()] = command

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._commands)

    def lookup(self, name: str, arguments_provided: bool) -> Optional[Command]:
        """Return a copy of the command if it may fire now, else ``None``.

        Commands that need arguments but got none are always returned and do
        not touch the cooldown, so the usage reply is never rate limited.
        """
        with self._lock:
            command = self._commands.get(name)
            if command is None:
                return None
            if command.requires_arguments and not arguments_provided:
                return dataclasses.replace(command)
            now = self.clock()
            if not command.ready_at(now):
                logger.info('Command %s is still on cooldown', name)
                return None
            if command.last_invoked is None or now > command.last_invoked:
                command.last_invoked = now
            return dataclasses.replace(command)
