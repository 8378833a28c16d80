from __future__ import annotations
import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from .errors import ConfigError

# ---- Defaults ----
DEFAULT_CHANNEL = 'vynny_'
DEFAULT_CALLBACK_HOST = '127.0.0.1'
DEFAULT_CALLBACK_PORT = 42069
DEFAULT_COMMANDS_FILE = 'commands.yml'
DEFAULT_LOG_LEVEL = 'INFO'
LOG_FORMAT = '%(asctime)s %(levelname)s %(name)s: %(message)s'

TWITCH_AUTHORIZE_URL = 'https://id.twitch.tv/oauth2/authorize'
TWITCH_TOKEN_URL = 'https://id.twitch.tv/oauth2/token'
TWITCH_VALIDATE_URL = 'https://id.twitch.tv/oauth2/validate'
TWITCH_SCOPES = ['user:read:chat', 'user:write:chat', 'user:bot']

SPOTIFY_AUTHORIZE_URL = 'https://accounts.spotify.com/authorize'
SPOTIFY_TOKEN_URL = 'https://accounts.spotify.com/api/token'
SPOTIFY_SCOPES = ['user-modify-playback-state', 'user-read-playback-state']


def _env_flag(value: Optional[str], default: bool = True) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized in {"1", "true", "yes", "on"}


@dataclass
class ServiceConfig:
    """OAuth client settings for one identity provider.

    ``basic_auth`` selects how the client credentials reach the token
    endpoint: Twitch takes them as form fields, Spotify as an HTTP Basic header.
    """

    name: str
    client_id: str
    client_secret: str
    authorize_url: str
    token_url: str
    redirect_uri: str
    scopes: List[str]
    token_path: Path
    basic_auth: bool = False


@dataclass
class Settings:
    twitch: ServiceConfig
    spotify: ServiceConfig
    channel: str = DEFAULT_CHANNEL
    callback_host: str = DEFAULT_CALLBACK_HOST
    callback_port: int = DEFAULT_CALLBACK_PORT
    commands_file: Path = Path(DEFAULT_COMMANDS_FILE)
    open_browser: bool = True
    log_level: str = DEFAULT_LOG_LEVEL
    services: Dict[str, ServiceConfig] = field(init=False)

    def __post_init__(self) -> None:
        self.services = {self.twitch.name: self.twitch, self.spotify.name: self.spotify}


def _required(env: Mapping[str, str], key: str) -> str:
    value = (env.get(key) or '').strip()
    if not value:
        raise ConfigError(f'{key} must be set')
    return value


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build :class:`Settings` from environment variables.

    Dependencies: reads ``os.environ`` unless a mapping is supplied.
    Code customers: ``streambot.app.main`` before any task starts.
    Used variables/origin: client credentials are mandatory; port, channel,
    token directory, commands file and browser flag fall back to defaults.
    """

    env = os.environ if env is None else env
    try:
        port = int(env.get('CALLBACK_PORT') or DEFAULT_CALLBACK_PORT)
    except ValueError as exc:
        raise ConfigError(f"CALLBACK_PORT must be an integer, got {env.get('CALLBACK_PORT')!r}") from exc
    token_dir = Path(env.get('TOKEN_DIR') or '.')
    base = f"http://localhost:{port}"
    twitch = ServiceConfig(
        name='twitch',
        client_id=_required(env, 'TWITCH_CLIENT_ID'),
        client_secret=_required(env, 'TWITCH_CLIENT_SECRET'),
        authorize_url=TWITCH_AUTHORIZE_URL,
        token_url=TWITCH_TOKEN_URL,
        redirect_uri=f"{base}/auth",
        scopes=list(TWITCH_SCOPES),
        token_path=token_dir / 'twitch_token.json',
    )
    spotify = ServiceConfig(
        name='spotify',
        client_id=_required(env, 'SPOTIFY_CLIENT_ID'),
        client_secret=_required(env, 'SPOTIFY_SECRET'),
        authorize_url=SPOTIFY_AUTHORIZE_URL,
        token_url=SPOTIFY_TOKEN_URL,
        redirect_uri=f"{base}/spotify-auth",
        scopes=list(SPOTIFY_SCOPES),
        token_path=token_dir / 'spotify_token.json',
        basic_auth=True,
    )
    return Settings(
        twitch=twitch,
        spotify=spotify,
        channel=(env.get('TWITCH_CHANNEL') or DEFAULT_CHANNEL).lstrip('#').lower(),
        callback_host=env.get('CALLBACK_HOST') or DEFAULT_CALLBACK_HOST,
        callback_port=port,
        commands_file=Path(env.get('COMMANDS_FILE') or DEFAULT_COMMANDS_FILE),
        open_browser=_env_flag(env.get('OPEN_BROWSER')),
        log_level=(env.get('LOG_LEVEL') or DEFAULT_LOG_LEVEL).upper(),
    )


def configure_logging(level: str = DEFAULT_LOG_LEVEL) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
