from __future__ import annotations
import contextlib
import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI, Query
from fastapi.responses import PlainTextResponse

from .tokens import AuthCodeSlot

logger = logging.getLogger(__name__)

CONFIRMATION_BODY = 'You can close this now 🎉'


def create_app(codes: AuthCodeSlot) -> FastAPI:
    """FastAPI app receiving the OAuth redirects for both services.

    Dependencies: FastAPI query parsing; the handlers are sync so they run in
    the threadpool, which is why :class:`AuthCodeSlot` locks.
    Code customers: :class:`CallbackServer` and the callback tests.
    Used variables/origin: ``code`` comes from the provider redirect;
    ``state`` and ``scope`` are accepted and logged only.
    """

    app = FastAPI(title='streambot callbacks', docs_url=None, redoc_url=None, openapi_url=None)

    def _store(service: str, code: str, scope: Optional[str]) -> PlainTextResponse:
        codes.put(service, code)
        logger.info('Received %s authorization code (scope=%s)', service, scope or '-')
        return PlainTextResponse(CONFIRMATION_BODY)

    @app.get('/auth', response_class=PlainTextResponse)
    def twitch_auth(
        code: str,
        state: Optional[str] = Query(None),
        scope: Optional[str] = Query(None),
    ):
        return _store('twitch', code, scope)

    @app.get('/spotify-auth', response_class=PlainTextResponse)
    def spotify_auth(
        code: str,
        state: Optional[str] = Query(None),
        scope: Optional[str] = Query(None),
    ):
        return _store('spotify', code, scope)

    return app


class CallbackServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the shutdown coordinator."""

    def install_signal_handlers(self) -> None:
        return None

    def capture_signals(self):
        return contextlib.nullcontext()


def build_server(codes: AuthCodeSlot, host: str, port: int) -> CallbackServer:
    config = uvicorn.Config(create_app(codes), host=host, port=port, log_level='warning', lifespan='off')
    return CallbackServer(config)
