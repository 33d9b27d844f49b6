from __future__ import annotations
import inspect
import json
import logging
import os
from collections import OrderedDict, defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from fastapi import FastAPI, HTTPException, Request as FastAPIRequest, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from streamkit.eventsub import SubscriptionStore, parse_timestamp
from streamkit.helix import verify_eventsub_signature
from streamkit.settings import ConfigurationError, state_file_from_env

logger = logging.getLogger(__name__)

CALLBACK_PATH = '/twitch/eventsub/callback'
# Twitch recommends rejecting deliveries older than ten minutes.
MAX_MESSAGE_AGE = timedelta(minutes=10)
SEEN_MESSAGE_LIMIT = 1000


class EventSubSubscription(BaseModel):
    model_config = ConfigDict(extra='allow')

    id: str
    type: str
    version: Optional[str] = None
    status: Optional[str] = None
    condition: Dict[str, Any] = Field(default_factory=dict)


class EventSubMessage(BaseModel):
    subscription: EventSubSubscription
    event: Optional[Dict[str, Any]] = None
    challenge: Optional[str] = None


EventHandler = Callable[[Dict[str, Any], EventSubSubscription], Any]


class EventSubWebhook:
    """Verification and routing state behind the EventSub callback route."""

    def __init__(
        self,
        secret: str,
        *,
        handlers: Optional[Mapping[str, Iterable[EventHandler]]] = None,
        max_message_age: timedelta = MAX_MESSAGE_AGE,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if not secret:
            raise ConfigurationError('Missing EventSub secret. Set TWITCH_EVENTSUB_SECRET.')
        self.secret = secret
        self.max_message_age = max_message_age
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)
        self._seen: OrderedDict[str, None] = OrderedDict()
        for event_type, funcs in (handlers or {}).items():
            for func in funcs:
                self.add_handler(event_type, func)

    def add_handler(self, event_type: str, handler: EventHandler) -> None:
        self._handlers[event_type].append(handler)

    def on(self, event_type: str) -> Callable[[EventHandler], EventHandler]:
        def decorator(handler: EventHandler) -> EventHandler:
            self.add_handler(event_type, handler)
            return handler
        return decorator

    def is_stale(self, timestamp: str) -> bool:
        sent_at = parse_timestamp(timestamp)
        return self._clock() - sent_at > self.max_message_age

    def remember(self, message_id: str) -> bool:
        """Record a message id; return False when it was already delivered."""
        if message_id in self._seen:
            return False
        self._seen[message_id] = None
        while len(self._seen) > SEEN_MESSAGE_LIMIT:
            self._seen.popitem(last=False)
        return True

    async def notify(self, message: EventSubMessage) -> int:
        subscription = message.subscription
        handlers = list(self._handlers.get(subscription.type, ()))
        if not handlers:
            logger.debug('Ignoring unhandled EventSub type %s', subscription.type)
            return 0
        event = message.event or {}
        for handler in handlers:
            try:
                result = handler(event, subscription)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception('EventSub handler for %s failed', subscription.type)
        return len(handlers)


def create_app(
    secret: str,
    *,
    store: Optional[SubscriptionStore] = None,
    handlers: Optional[Mapping[str, Iterable[EventHandler]]] = None,
    max_message_age: timedelta = MAX_MESSAGE_AGE,
    clock: Optional[Callable[[], datetime]] = None,
) -> FastAPI:
    webhook = EventSubWebhook(secret, handlers=handlers, max_message_age=max_message_age, clock=clock)
    app = FastAPI(title='streamkit EventSub webhooks')
    app.state.webhook = webhook
    app.state.store = store

    @app.post(CALLBACK_PATH, name='eventsub_callback')
    async def eventsub_callback(request: FastAPIRequest):
        """Handle EventSub verification challenges, notifications and revocations.

        The raw body is checked against the ``Twitch-Eventsub-Message-Signature``
        header before anything in it is trusted.
        """

        body = await request.body()
        headers = request.headers
        message_id = headers.get('Twitch-Eventsub-Message-Id') or ''
        timestamp = headers.get('Twitch-Eventsub-Message-Timestamp') or ''
        signature = headers.get('Twitch-Eventsub-Message-Signature') or ''
        message_type = headers.get('Twitch-Eventsub-Message-Type') or ''

        if not message_id or not timestamp or not signature:
            raise HTTPException(status_code=400, detail='missing signature headers')

        if not verify_eventsub_signature(webhook.secret, message_id, timestamp, body, signature):
            logger.warning('EventSub signature mismatch for message %s', message_id)
            raise HTTPException(status_code=403, detail='invalid signature')

        try:
            stale = webhook.is_stale(timestamp)
        except ValueError:
            raise HTTPException(status_code=400, detail='invalid timestamp') from None
        if stale:
            logger.warning('Rejecting stale EventSub message %s sent at %s', message_id, timestamp)
            raise HTTPException(status_code=403, detail='message too old')

        try:
            message = EventSubMessage.model_validate(json.loads(body))
        except (ValueError, ValidationError):
            raise HTTPException(status_code=400, detail='invalid payload') from None

        if not webhook.remember(message_id):
            logger.info('Ignoring duplicate EventSub message %s', message_id)
            return JSONResponse({'detail': 'duplicate'})

        subscription = message.subscription
        if message_type == 'webhook_callback_verification':
            logger.info('Verified EventSub callback for %s (%s)', subscription.type, subscription.id)
            return Response(content=message.challenge or '', media_type='text/plain')

        if message_type == 'notification':
            await webhook.notify(message)
            return JSONResponse({'success': True})

        if message_type == 'revocation':
            logger.warning(
                'EventSub subscription %s (%s) revoked: %s',
                subscription.id,
                subscription.type,
                subscription.status,
            )
            return Response(status_code=204)

        return JSONResponse({'detail': 'ignored'})

    @app.get('/eventsub/subscriptions')
    async def list_subscriptions():
        if store is None:
            return {'subscriptions': []}
        records = await store.load()
        return {
            'subscriptions': [
                {'key': key, **record.to_dict()}
                for key, record in sorted(records.items())
            ]
        }

    return app


def app_from_env() -> FastAPI:
    """Application factory for ``uvicorn --factory streamkit.webhook_app:app_from_env``."""
    return create_app(
        (os.getenv('TWITCH_EVENTSUB_SECRET') or '').strip(),
        store=SubscriptionStore(state_file_from_env()),
    )
