from __future__ import annotations
import asyncio
import hashlib
import hmac
import logging
import time
from typing import Any, Dict, List, Optional

import aiohttp

from streamkit.metrics import api_request_counter
from streamkit.settings import HelixSettings

logger = logging.getLogger(__name__)

API_BASE = 'https://api.twitch.tv/helix'
TOKEN_URL = 'https://id.twitch.tv/oauth2/token'

# Twitch allows 800 points per minute for an app access token.
RATE_LIMIT = 800
RATE_WINDOW = 60.0
MAX_RETRIES = 3
RETRY_BASE_DELAY = 0.5
RETRY_STATUSES = {429, 500, 502, 503, 504}


class HelixError(RuntimeError):
    def __init__(self, status: int, detail: object):
        message = detail if isinstance(detail, str) else str(detail)
        super().__init__(message)
        self.status = status
        self.detail = message


class RequestLimiter:
    """Sliding-window limiter: at most ``limit`` requests per ``window`` seconds."""

    def __init__(self, limit: int = RATE_LIMIT, window: float = RATE_WINDOW):
        self.limit = limit
        self.window = window
        self.timestamps: List[float] = []
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        self.timestamps = [t for t in self.timestamps if now - t < self.window]

    async def wait(self) -> None:
        async with self._lock:
            now = time.monotonic()
            self._prune(now)
            if len(self.timestamps) >= self.limit:
                delay = self.window - (now - self.timestamps[0])
                logger.debug('Helix rate limit reached; waiting %.2fs', delay)
                await asyncio.sleep(delay)
                now = time.monotonic()
                self._prune(now)
            self.timestamps.append(now)


def verify_eventsub_signature(secret: str, message_id: str, timestamp: str, body: bytes, provided: str) -> bool:
    """Validate the HMAC signature on an EventSub webhook payload.

    Twitch signs ``message_id + timestamp + raw body`` with the subscription
    secret and sends ``sha256=<hexdigest>`` in the
    ``Twitch-Eventsub-Message-Signature`` header.
    """

    digest = hmac.new(secret.encode('utf-8'), msg=(message_id + timestamp).encode('utf-8') + body, digestmod=hashlib.sha256)
    expected = f"sha256={digest.hexdigest()}"
    return hmac.compare_digest(expected, provided or '')


class HelixClient:
    """Authenticated, rate-limited and retried access to the Twitch Helix API.

    An app access token is fetched with the client-credentials grant on first
    use and cached until shortly before it expires. Requests are spaced by a
    :class:`RequestLimiter` and sent one at a time; 429, 5xx and connection
    errors are retried with exponential delay.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        *,
        base_url: str = API_BASE,
        token_url: str = TOKEN_URL,
        timeout: float = 5.0,
        max_retries: int = MAX_RETRIES,
        limiter: Optional[RequestLimiter] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.base = base_url.rstrip('/')
        self.token_url = token_url
        self.timeout = timeout
        self.max_retries = max_retries
        self.limiter = limiter or RequestLimiter()
        self.session: Optional[aiohttp.ClientSession] = None
        self._access_token: Optional[str] = None
        self._token_expires = 0.0
        self._token_lock = asyncio.Lock()
        self._request_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: HelixSettings, **kwargs) -> HelixClient:
        return cls(settings.client_id, settings.client_secret, **kwargs)

    @classmethod
    def from_env(cls, **kwargs) -> HelixClient:
        return cls.from_settings(HelixSettings.from_env(), **kwargs)

    async def start(self):
        if not self.session:
            self.session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def __aenter__(self) -> HelixClient:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _app_token(self) -> str:
        if self._access_token and time.time() < self._token_expires:
            return self._access_token
        async with self._token_lock:
            if self._access_token and time.time() < self._token_expires:
                return self._access_token
            data = {
                'client_id': self.client_id,
                'client_secret': self.client_secret,
                'grant_type': 'client_credentials',
            }
            async with self.session.post(self.token_url, data=data) as r:
                if r.status >= 400:
                    raise HelixError(r.status, await r.text() or 'app access token request failed')
                payload = await r.json(content_type=None)
            token = payload.get('access_token') if isinstance(payload, dict) else None
            if not token:
                message = payload.get('message') if isinstance(payload, dict) else payload
                raise HelixError(r.status, f"app access token response missing access_token: {message}")
            self._access_token = token
            self._token_expires = time.time() + int(payload.get('expires_in', 3600)) - 60
            logger.debug('Fetched Twitch app access token')
            return token

    async def _headers(self) -> Dict[str, str]:
        token = await self._app_token()
        return {'Client-Id': self.client_id, 'Authorization': f"Bearer {token}"}

    @staticmethod
    async def _read_body(r) -> Any:
        content_type = r.headers.get('content-type', '')
        if content_type.startswith('application/json'):
            try:
                return await r.json()
            except Exception:
                return None
        try:
            return await r.text()
        except Exception:
            return ''

    @staticmethod
    def _retry_delay(attempt: int, headers: Optional[Any] = None) -> float:
        reset = headers.get('Ratelimit-Reset') if headers is not None else None
        if reset:
            try:
                return min(max(float(reset) - time.time(), 0.0), RATE_WINDOW)
            except ValueError:
                pass
        return RETRY_BASE_DELAY * (2 ** attempt)

    async def _req(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        payload: Optional[dict] = None,
    ) -> Any:
        if not self.session:
            await self.start()
        url = f"{self.base}{path}"
        attempt = 0
        reauthenticated = False
        while True:
            headers = await self._headers()
            await self.limiter.wait()
            try:
                async with self._request_lock:
                    async with self.session.request(method, url, headers=headers, params=params, json=payload) as r:
                        status = r.status
                        response_headers = r.headers
                        body = await self._read_body(r)
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                if attempt >= self.max_retries:
                    raise HelixError(0, f"{method} {path} failed: {exc}") from exc
                delay = self._retry_delay(attempt)
                logger.warning('Helix %s %s failed (%s); retrying in %.2fs', method, path, exc, delay)
                await asyncio.sleep(delay)
                attempt += 1
                continue
            api_request_counter.labels(endpoint=path).inc()
            if status == 401 and not reauthenticated:
                # Token revoked or expired early; fetch a new one once.
                self._access_token = None
                reauthenticated = True
                continue
            if status in RETRY_STATUSES and attempt < self.max_retries:
                delay = self._retry_delay(attempt, response_headers if status == 429 else None)
                logger.warning('Helix %s %s returned %s; retrying in %.2fs', method, path, status, delay)
                await asyncio.sleep(delay)
                attempt += 1
                continue
            if status >= 400:
                detail: object = ''
                if isinstance(body, dict):
                    detail = body.get('message') or body
                elif body:
                    detail = body
                raise HelixError(status, detail or f"{method} {path} failed")
            return body

    async def get_stream_info(self, user_login: str) -> Dict[str, Any]:
        return await self._req('GET', '/streams', params={'user_login': user_login})

    async def create_eventsub_subscription(
        self,
        type: str,
        condition: Dict[str, str],
        callback: str,
        secret: str,
        *,
        version: str = '1',
    ) -> Dict[str, Any]:
        """Subscribe to an EventSub event type using the webhook transport."""
        payload = {
            'type': type,
            'version': version,
            'condition': condition,
            'transport': {
                'method': 'webhook',
                'callback': callback,
                'secret': secret,
            },
        }
        result = await self._req('POST', '/eventsub/subscriptions', payload=payload)
        logger.info('EventSub subscription requested for %s', type)
        return result
