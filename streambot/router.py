from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Mapping, Optional, Protocol, Tuple

from .commands import RESULT_PLACEHOLDER, USER_PLACEHOLDER, Command, CommandRegistry
from .errors import ChatTransportError
from .shutdown import ShutdownSignal
from .spotify import ActionResult, ActionStatus

logger = logging.getLogger(__name__)

COMMAND_PREFIX = '!'
RECEIVE_RETRY_DELAY = 5.0

ExternalAction = Callable[[str], Awaitable[ActionResult]]


@dataclass
class ChatEvent:
    sender: str
    text: str
    sender_id: Optional[str] = None
    message_id: Optional[str] = None


class ChatTransport(Protocol):
    async def receive(self) -> Optional[ChatEvent]: ...

    async def send(self, message: str) -> None: ...


def parse_command(text: str, prefix: str = COMMAND_PREFIX) -> Optional[Tuple[str, str]]:
    """Split a chat line into ``(command name, argument payload)``.

    Remaining tokens are re-joined with a single space.
    """
    tokens = (text or '').split()
    if not tokens or not tokens[0].startswith(prefix):
        return None
    name = tokens[0][len(prefix):].lower()
    if not name:
        return None
    return name, ' '.join(tokens[1:])


def render(template: str, *, user: Optional[str] = None, result: Optional[str] = None) -> str:
    text = template
    if user is not None:
        text = text.replace(USER_PLACEHOLDER, user)
    if result is not None:
        text = text.replace(RESULT_PLACEHOLDER, result)
    return text


class MessageRouter:
    def __init__(
        self,
        registry: CommandRegistry,
        transport: ChatTransport,
        shutdown: ShutdownSignal,
        actions: Optional[Mapping[str, ExternalAction]] = None,
        *,
        prefix: str = COMMAND_PREFIX,
        retry_delay: float = RECEIVE_RETRY_DELAY,
    ):
        self.registry = registry
        self.transport = transport
        self.shutdown = shutdown
        self.actions: Dict[str, ExternalAction] = dict(actions or {})
        self.prefix = prefix
        self.retry_delay = retry_delay

    async def handle(self, event: ChatEvent) -> Optional[str]:
        parsed = parse_command(event.text, self.prefix)
        if parsed is None:
            return None
        name, payload = parsed
        command = self.registry.lookup(name, bool(payload))
        if command is None:
            return None
        logger.info('COMMAND: %s%s from %s', self.prefix, name, event.sender)
        user = event.sender if command.requires_tag else None

        if command.requires_arguments and not payload:
            return render(command.usage_template or command.response_template, user=user)
        if not command.external_action:
            return render(command.response_template, user=user)

        result = await self._dispatch(command, payload)
        if result.status is ActionStatus.SUCCESS:
            return render(command.response_template, user=user, result=result.display or '')
        if result.status is ActionStatus.EMPTY:
            logger.info('%s: no results for %r', command.external_action, payload)
        else:
            logger.warning('%s failed for %r: %s', command.external_action, payload, result.error)
        return None

    async def _dispatch(self, command: Command, payload: str) -> ActionResult:
        action = self.actions.get(command.external_action or '')
        if action is None:
            return ActionResult.failed(f'no handler registered for {command.external_action}')
        try:
            return await action(payload)
        except Exception as exc:
            logger.exception('External action %s raised', command.external_action)
            return ActionResult.failed(exc)

    async def process(self, event: ChatEvent) -> Optional[str]:
        logger.debug('%s: %s', event.sender, event.text)
        reply = await self.handle(event)
        if reply is None:
            return None
        try:
            await self.transport.send(reply)
        except Exception as exc:
            logger.error('Failed to send reply %r: %s', reply, exc)
        return reply

    async def run(self) -> None:
        while not self.shutdown.is_set():
            try:
                event = await self.transport.receive()
            except ChatTransportError as exc:
                logger.warning('Chat receive failed, retrying in %ss: %s', self.retry_delay, exc)
                await self.shutdown.wait(self.retry_delay)
                continue
            if event is None or self.shutdown.is_set():
                break
            await self.process(event)
        logger.info('Message router stopped')
