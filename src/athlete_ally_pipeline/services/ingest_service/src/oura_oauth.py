"""Oura OAuth account linking: authorize redirect, code exchange and refresh."""

import logging
import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urlencode

import aiohttp
from aiohttp import web, web_request
from aiohttp.web_response import Response

from .config.settings import OuraConfig
from .crypto import DecryptionError, TokenCipher
from .token_store import TokenRecord, TokenStore


logger = logging.getLogger(__name__)


class OuraOAuthError(Exception):
    """The Oura token endpoint refused or failed a request."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class StateCache:
    """Single-use OAuth state values with a fixed lifetime."""

    def __init__(self, ttl_seconds: float = 600, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}

    def issue(self, user_id: str) -> str:
        self._evict_expired()
        state = secrets.token_hex(16)
        self._entries[state] = (user_id, self._clock() + self.ttl_seconds)
        return state

    def pop(self, state: str) -> Optional[str]:
        """Return the user for a state and forget it. Expired states return None."""
        entry = self._entries.pop(state, None)
        if entry is None:
            return None
        user_id, expires_at = entry
        return user_id if expires_at > self._clock() else None

    def _evict_expired(self):
        now = self._clock()
        for state in [s for s, (_, exp) in self._entries.items() if exp <= now]:
            del self._entries[state]

    def __len__(self) -> int:
        return len(self._entries)


class OuraOAuthClient:
    """Talks to the Oura token endpoint."""

    def __init__(self, config: OuraConfig, session: Optional[aiohttp.ClientSession] = None):
        self.config = config
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.request_timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def close(self):
        if self._session and self._owns_session and not self._session.closed:
            await self._session.close()

    def authorize_url(self, state: str) -> str:
        if not self.config.client_id or not self.config.redirect_uri:
            raise OuraOAuthError("OURA_CLIENT_ID and OURA_REDIRECT_URI must be set")
        params = {
            'response_type': 'code',
            'client_id': self.config.client_id,
            'redirect_uri': self.config.redirect_uri,
            'scope': self.config.scope,
            'state': state,
        }
        return f"{self.config.authorize_url}?{urlencode(params)}"

    async def _token_request(self, form: Dict[str, str]) -> Dict[str, Any]:
        session = await self._get_session()
        try:
            async with session.post(self.config.token_url, data=form) as response:
                if response.status >= 400:
                    raise OuraOAuthError(
                        f"Token endpoint returned HTTP {response.status}", status=response.status
                    )
                return await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise OuraOAuthError(f"Token endpoint request failed: {e}") from e

    async def exchange_code(self, code: str) -> Dict[str, Any]:
        if not (self.config.client_id and self.config.client_secret and self.config.redirect_uri):
            raise OuraOAuthError("Oura OAuth credentials are not configured")
        return await self._token_request({
            'grant_type': 'authorization_code',
            'code': code,
            'redirect_uri': self.config.redirect_uri,
            'client_id': self.config.client_id,
            'client_secret': self.config.client_secret,
        })

    async def refresh(self, refresh_token: str) -> Dict[str, Any]:
        return await self._token_request({
            'grant_type': 'refresh_token',
            'refresh_token': refresh_token,
            'client_id': self.config.client_id or '',
            'client_secret': self.config.client_secret or '',
        })


def _expires_at(tokens: Dict[str, Any]) -> Optional[datetime]:
    expires_in = tokens.get('expires_in')
    if not expires_in:
        return None
    return datetime.now(timezone.utc) + timedelta(seconds=float(expires_in))


class OuraOAuthHandler:
    """HTTP handlers for /auth/oura/*."""

    def __init__(
        self,
        client: OuraOAuthClient,
        store: TokenStore,
        cipher: TokenCipher,
        state_cache: Optional[StateCache] = None
    ):
        self.client = client
        self.store = store
        self.cipher = cipher
        self.state_cache = state_cache or StateCache(client.config.state_ttl_seconds)

    def register(self, app: web.Application):
        app.router.add_get('/auth/oura/link', self.link)
        app.router.add_get('/auth/oura/callback', self.callback)
        app.router.add_post('/auth/oura/refresh', self.refresh)

    async def link(self, request: web_request.Request) -> Response:
        user_id = request.query.get('userId')
        if not user_id:
            return web.json_response({'error': 'userId required'}, status=400)

        try:
            url = self.client.authorize_url(self.state_cache.issue(user_id))
        except OuraOAuthError as e:
            logger.error(f"Cannot build Oura authorize URL: {e}")
            return web.json_response({'error': 'link_failed'}, status=500)

        raise web.HTTPFound(url)

    async def callback(self, request: web_request.Request) -> Response:
        code = request.query.get('code')
        state = request.query.get('state')
        if not code or not state:
            return web.json_response({'error': 'missing_params'}, status=400)

        user_id = self.state_cache.pop(state)
        if user_id is None:
            return web.json_response({'error': 'invalid_state'}, status=400)

        try:
            tokens = await self.client.exchange_code(code)
            await self.store.put(TokenRecord(
                user_id=user_id,
                access_token_cipher=self.cipher.encrypt(tokens['access_token']),
                refresh_token_cipher=(
                    self.cipher.encrypt(tokens['refresh_token']) if tokens.get('refresh_token') else None
                ),
                scope=tokens.get('scope'),
                expires_at=_expires_at(tokens),
            ))
        except OuraOAuthError as e:
            logger.error(f"Oura code exchange failed for user {user_id}: {e}")
            return web.json_response({'error': 'callback_failed'}, status=502)
        except Exception as e:
            logger.error(f"Oura callback error for user {user_id}: {e}", exc_info=True)
            return web.json_response({'error': 'callback_failed'}, status=500)

        logger.info(f"Linked Oura account for user {user_id}")
        return web.json_response({'status': 'connected', 'userId': user_id})

    async def refresh(self, request: web_request.Request) -> Response:
        try:
            body = await request.json()
        except ValueError:
            body = None
        user_id = body.get('userId') if isinstance(body, dict) else None
        if not user_id:
            return web.json_response({'error': 'userId required'}, status=400)

        record = await self.store.get(user_id)
        if record is None:
            return web.json_response({'error': 'not_found'}, status=404)
        if not record.refresh_token_cipher:
            return web.json_response({'error': 'no_refresh_token'}, status=400)

        try:
            refresh_token = self.cipher.decrypt(record.refresh_token_cipher)
            tokens = await self.client.refresh(refresh_token)
            await self.store.update(
                user_id,
                access_token_cipher=self.cipher.encrypt(tokens['access_token']),
                refresh_token_cipher=self.cipher.encrypt(tokens.get('refresh_token') or refresh_token),
                expires_at=_expires_at(tokens) or record.expires_at,
                scope=tokens.get('scope') or record.scope,
            )
        except OuraOAuthError as e:
            logger.error(f"Oura token refresh failed for user {user_id}: {e}")
            return web.json_response({'error': 'refresh_failed'}, status=502)
        except DecryptionError:
            logger.error(f"Stored refresh token for user {user_id} could not be decrypted")
            return web.json_response({'error': 'refresh_failed'}, status=500)
        except Exception as e:
            logger.error(f"Oura refresh error for user {user_id}: {e}", exc_info=True)
            return web.json_response({'error': 'refresh_failed'}, status=500)

        return web.json_response({'status': 'refreshed', 'userId': user_id})
