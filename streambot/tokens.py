from __future__ import annotations
import os
import json
import enum
import logging
import webbrowser
from datetime import datetime, timedelta, timezone
from pathlib import Path
from threading import Lock
from typing import Callable, Dict, List, Optional, Protocol, Union
from urllib.parse import quote

import aiohttp
from pydantic import BaseModel, ValidationError, field_validator, model_validator

from .config import ServiceConfig
from .errors import TokenExchangeError, TokenStorageError, TokenValidationError
from .shutdown import ShutdownSignal

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 1.0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccessToken(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    token_type: Optional[str] = None
    scope: Optional[Union[str, List[str]]] = None
    expires_in: Optional[int] = None
    created_at: datetime
    expires_at: Optional[datetime] = None

    @field_validator('created_at', 'expires_at')
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode='after')
    def _derive_expiry(self) -> 'AccessToken':
        if self.expires_at is None and self.expires_in is not None:
            self.expires_at = self.created_at + timedelta(seconds=self.expires_in)
        return self

    @classmethod
    def from_response(cls, payload: object, now: datetime) -> 'AccessToken':
        """Parse a token endpoint response, stamping ``created_at = now``."""
        if not isinstance(payload, dict):
            raise TokenValidationError('token response is not a JSON object')
        data = {key: value for key, value in payload.items() if key not in ('created_at', 'expires_at')}
        data['created_at'] = now
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise TokenValidationError(f'malformed token response: {exc}') from exc

    def is_expired(self, now: datetime, margin: timedelta = timedelta(0)) -> bool:
        if self.expires_at is None:
            return False
        return now + margin >= self.expires_at


class CredentialStore(Protocol):
    def load(self) -> AccessToken: ...

    def update(self, token: AccessToken) -> None: ...


class FileTokenStore:
    """In-memory credential backed by a JSON file."""

    def __init__(self, path: Path, token: Optional[AccessToken] = None):
        self.path = Path(path)
        self._token = token

    @property
    def token(self) -> Optional[AccessToken]:
        return self._token

    def read(self) -> Optional[AccessToken]:
        if not self.path.exists():
            return None
        try:
            raw = self.path.read_text(encoding='utf-8')
        except OSError as exc:
            raise TokenStorageError(f'cannot read {self.path}: {exc}') from exc
        try:
            token = AccessToken.model_validate_json(raw)
        except ValidationError as exc:
            raise TokenValidationError(f'{self.path} does not hold a valid token: {exc}') from exc
        self._token = token
        return token

    def load(self) -> AccessToken:
        if self._token is None:
            raise TokenStorageError(f'no token loaded for {self.path.name}')
        return self._token

    def update(self, token: AccessToken) -> None:
        self._token = token
        tmp = self.path.with_name(self.path.name + '.tmp')
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(token.model_dump_json(indent=2), encoding='utf-8')
            os.replace(tmp, self.path)
        except OSError as exc:
            raise TokenStorageError(f'cannot write {self.path}: {exc}') from exc


class AuthCodeSlot:
    """Pending authorization codes, one per service.

    Written from the callback endpoints (worker threads) and consumed by the
    brokers on the event loop.
    """

    def __init__(self) -> None:
        self._codes: Dict[str, str] = {}
        self._lock = Lock()

    def put(self, service: str, code: str) -> None:
        with self._lock:
            self._codes[service] = code

    def take(self, service: str) -> Optional[str]:
        with self._lock:
            return self._codes.pop(service, None)

    def peek(self, service: str) -> Optional[str]:
        with self._lock:
            return self._codes.get(service)


class AuthBootstrapState(enum.Enum):
    WAITING_FOR_CODE = 'waiting_for_code'
    EXCHANGING = 'exchanging'
    READY = 'ready'
    LOADED = 'loaded'
    FAILED = 'failed'
    ABORTED = 'aborted'


def authorize_url(service: ServiceConfig, state: Optional[str] = None) -> str:
    scope_param = quote(" ".join(service.scopes), safe="")
    client_id_param = quote(service.client_id, safe="")
    redirect_param = quote(service.redirect_uri, safe="")
    url = (
        f"{service.authorize_url}"
        f"?response_type=code&client_id={client_id_param}"
        f"&redirect_uri={redirect_param}&scope={scope_param}"
    )
    if state:
        url += f"&state={quote(state, safe='')}"
    return url


def open_consent_page(service: ServiceConfig, opener: Callable[[str], object] = webbrowser.open) -> Optional[str]:
    """Open the provider consent page unless a token file already exists."""
    if service.token_path.exists():
        return None
    url = authorize_url(service)
    logger.info('Authorize %s at %s', service.name, url)
    try:
        opener(url)
    except webbrowser.Error as exc:
        logger.warning('Could not open a browser for %s: %s', service.name, exc)
    return url


class TokenBroker:
    def __init__(
        self,
        service: ServiceConfig,
        codes: AuthCodeSlot,
        shutdown: ShutdownSignal,
        *,
        store: Optional[FileTokenStore] = None,
        session: Optional[aiohttp.ClientSession] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.service = service
        self.codes = codes
        self.shutdown = shutdown
        self.store = store or FileTokenStore(service.token_path)
        self.session = session
        self._owns_session = session is None
        self.poll_interval = poll_interval
        self.clock = clock
        self.state = AuthBootstrapState.WAITING_FOR_CODE

    @property
    def token(self) -> Optional[AccessToken]:
        return self.store.token

    async def start(self) -> None:
        if not self.session:
            self.session = aiohttp.ClientSession()
            self._owns_session = True

    async def close(self) -> None:
        if self.session and self._owns_session:
            await self.session.close()
            self.session = None

    async def acquire(self) -> Optional[AccessToken]:
        """Load the persisted token or run the authorization code flow.

        Returns ``None`` when shutdown is requested before a code arrives.
        Exchange failures propagate and are fatal to the bootstrap.
        """
        persisted = self.store.read()
        if persisted is not None:
            self.state = AuthBootstrapState.LOADED
            logger.info('Loaded persisted %s token from %s', self.service.name, self.store.path)
            return persisted

        self.state = AuthBootstrapState.WAITING_FOR_CODE
        logger.info('Waiting for %s authorization code', self.service.name)
        while True:
            code = self.codes.take(self.service.name)
            if code:
                break
            if self.shutdown.is_set() or await self.shutdown.wait(self.poll_interval):
                self.state = AuthBootstrapState.ABORTED
                logger.info('%s bootstrap aborted', self.service.name)
                return None

        self.state = AuthBootstrapState.EXCHANGING
        try:
            token = await self.exchange_code(code)
            self.store.update(token)
        except Exception:
            self.state = AuthBootstrapState.FAILED
            raise
        self.state = AuthBootstrapState.READY
        logger.info('Acquired %s token', self.service.name)
        return token

    async def exchange_code(self, code: str) -> AccessToken:
        payload = await self._request_token({
            'code': code,
            'grant_type': 'authorization_code',
            'redirect_uri': self.service.redirect_uri,
        })
        return AccessToken.from_response(payload, self.clock())

    async def exchange_refresh_token(self, refresh_token: str) -> AccessToken:
        """Run a refresh grant. The result is not persisted."""
        payload = await self._request_token({
            'grant_type': 'refresh_token',
            'refresh_token': refresh_token,
        })
        token = AccessToken.from_response(payload, self.clock())
        if not token.refresh_token:
            # Spotify only rotates the refresh token occasionally
            token = token.model_copy(update={'refresh_token': refresh_token})
        return token

    async def refresh(self) -> AccessToken:
        current = self.store.load()
        if not current.is_expired(self.clock()):
            return current
        if not current.refresh_token:
            raise TokenValidationError(f'{self.service.name} token expired and has no refresh token')
        token = await self.exchange_refresh_token(current.refresh_token)
        self.store.update(token)
        logger.info('Refreshed %s token', self.service.name)
        return token

    async def ensure_fresh(self) -> AccessToken:
        try:
            return await self.refresh()
        except (TokenExchangeError, TokenValidationError, TokenStorageError) as exc:
            logger.warning('Failed to refresh %s token, using the stale one: %s', self.service.name, exc)
            return self.store.load()

    async def _request_token(self, form: Dict[str, str]) -> Dict[str, object]:
        if not self.session:
            await self.start()
        data = dict(form)
        auth = None
        if self.service.basic_auth:
            auth = aiohttp.BasicAuth(self.service.client_id, self.service.client_secret)
        else:
            data['client_id'] = self.service.client_id
            data['client_secret'] = self.service.client_secret
        try:
            async with self.session.post(self.service.token_url, data=data, auth=auth) as r:
                body = await r.text()
                status = r.status
        except aiohttp.ClientError as exc:
            raise TokenExchangeError(None, f'{self.service.name} token request failed: {exc}') from exc
        try:
            payload = json.loads(body) if body else None
        except ValueError:
            payload = None
        if status >= 400:
            detail: object = body
            if isinstance(payload, dict):
                detail = payload.get('message') or payload.get('error_description') or payload.get('error') or body
            raise TokenExchangeError(status, detail or f'{self.service.name} token request failed')
        if not isinstance(payload, dict):
            raise TokenValidationError(f'{self.service.name} token endpoint returned a non-JSON body')
        return payload
