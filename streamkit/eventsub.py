from __future__ import annotations
import asyncio
import contextlib
import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Union

from streamkit.helix import HelixError
from streamkit.settings import RENEWAL_LEAD, state_file_from_env

logger = logging.getLogger(__name__)

# Used when Twitch does not report an expiry for a new subscription, which is
# the usual case for webhooks. The re-create this triggers is answered with a
# 409 while the subscription is still live; that keeps the recorded id.
FALLBACK_LIFETIME = timedelta(hours=24)

_FRACTION = re.compile(r"\.(\d+)")


class EventSubError(RuntimeError):
    pass


def subscription_key(type: str, condition: Mapping[str, str]) -> str:
    """Return the store key for an event type and condition.

    The condition is serialized as compact JSON with sorted keys, so equal
    conditions map to the same key no matter how the mapping was built.
    """

    canonical = json.dumps(
        {str(k): str(v) for k, v in condition.items()},
        sort_keys=True,
        separators=(',', ':'),
        ensure_ascii=False,
    )
    return f"{type}:{canonical}"


def parse_timestamp(value: str) -> datetime:
    text = value.strip()
    if text[-1:] in ('Z', 'z'):
        text = text[:-1] + '+00:00'
    # Twitch reports nanoseconds; datetime only keeps microseconds.
    text = _FRACTION.sub(lambda m: '.' + m.group(1)[:6].ljust(6, '0'), text, count=1)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace('+00:00', 'Z')


@dataclass
class SubscriptionRecord:
    id: str
    type: str
    condition: Dict[str, str]
    expires_at: datetime

    @property
    def key(self) -> str:
        return subscription_key(self.type, self.condition)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type,
            'condition': dict(self.condition),
            'expires_at': format_timestamp(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SubscriptionRecord:
        condition = data['condition']
        if not isinstance(condition, dict):
            raise TypeError('condition must be an object')
        return cls(
            id=str(data['id']),
            type=str(data['type']),
            condition={str(k): str(v) for k, v in condition.items()},
            expires_at=parse_timestamp(str(data['expires_at'])),
        )


class SubscriptionStore:
    """JSON file holding every known subscription record, keyed by subscription key.

    ``load`` never raises for a missing or damaged file; it degrades to an
    empty mapping. ``save`` writes the whole mapping to a temporary file in the
    same directory and renames it over the previous snapshot.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path else state_file_from_env()

    async def load(self) -> Dict[str, SubscriptionRecord]:
        return await asyncio.to_thread(self._load)

    async def save(self, records: Mapping[str, SubscriptionRecord]) -> None:
        await asyncio.to_thread(self._save, dict(records))

    def _load(self) -> Dict[str, SubscriptionRecord]:
        try:
            raw = self.path.read_text(encoding='utf-8')
        except FileNotFoundError:
            return {}
        except OSError as exc:
            logger.warning('Cannot read EventSub state %s: %s', self.path, exc)
            return {}
        try:
            data = json.loads(raw)
        except ValueError as exc:
            logger.warning('Ignoring corrupt EventSub state %s: %s', self.path, exc)
            return {}
        if not isinstance(data, dict):
            logger.warning('Ignoring EventSub state %s; expected an object', self.path)
            return {}
        records: Dict[str, SubscriptionRecord] = {}
        for key, entry in data.items():
            try:
                records[key] = SubscriptionRecord.from_dict(entry)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning('Skipping malformed EventSub entry %s: %s', key, exc)
        return records

    def _save(self, records: Dict[str, SubscriptionRecord]) -> None:
        payload = {key: record.to_dict() for key, record in records.items()}
        directory = self.path.parent
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=f".{self.path.name}.", suffix='.tmp')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(payload, f, indent=2, ensure_ascii=False)
                f.write('\n')
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp_path)
            raise


class EventSubManager:
    """Keep one live webhook subscription per (type, condition) pair.

    ``client`` is anything with an awaitable
    ``create_eventsub_subscription(type, condition, callback, secret)`` that
    returns the Helix response body (``{"data": [{"id": ..., "expires_at": ...}]}``),
    normally a :class:`streamkit.helix.HelixClient`.

    Every ensured subscription gets a renewal timer on the running loop that
    fires ``renewal_lead`` before expiry. Timers are plain loop callbacks, so
    they never keep the process alive once the loop stops.
    """

    def __init__(
        self,
        client,
        store: Optional[SubscriptionStore] = None,
        *,
        renewal_lead: timedelta = RENEWAL_LEAD,
        fallback_lifetime: timedelta = FALLBACK_LIFETIME,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.client = client
        self.store = store or SubscriptionStore()
        self.renewal_lead = renewal_lead
        self.fallback_lifetime = fallback_lifetime
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._renewals: Set[asyncio.Task] = set()
        self._key_locks: Dict[str, asyncio.Lock] = {}
        self._save_lock = asyncio.Lock()

    def _is_fresh(self, record: SubscriptionRecord) -> bool:
        return record.expires_at - self._clock() > self.renewal_lead

    async def ensure_subscription(
        self,
        type: str,
        condition: Mapping[str, str],
        callback: str,
        secret: str,
    ) -> SubscriptionRecord:
        if not type:
            raise ValueError('event type is required')
        condition = {str(k): str(v) for k, v in condition.items()}
        key = subscription_key(type, condition)
        lock = self._key_locks.setdefault(key, asyncio.Lock())
        async with lock:
            state = await self.store.load()
            existing = state.get(key)
            if existing and self._is_fresh(existing):
                logger.debug('EventSub subscription %s still fresh until %s', key, format_timestamp(existing.expires_at))
                self._schedule_renewal(key, existing, type, condition, callback, secret)
                return existing

            try:
                response = await self.client.create_eventsub_subscription(type, condition, callback, secret)
            except HelixError as exc:
                if exc.status != 409 or not existing:
                    raise
                # Twitch still holds the subscription we recorded; keep its id.
                record = SubscriptionRecord(
                    id=existing.id,
                    type=type,
                    condition=dict(condition),
                    expires_at=self._clock() + self.fallback_lifetime,
                )
                logger.warning('EventSub subscription %s already exists; keeping id %s', key, existing.id)
            else:
                record = self._record_from_response(type, condition, response)
            async with self._save_lock:
                # Reload so records saved for other keys meanwhile are kept.
                state = await self.store.load()
                state[key] = record
                await self.store.save(state)
            logger.info('EventSub subscription ensured for %s (id=%s)', type, record.id)
            self._schedule_renewal(key, record, type, condition, callback, secret)
            return record

    def _record_from_response(self, type: str, condition: Dict[str, str], response: object) -> SubscriptionRecord:
        data = response.get('data') if isinstance(response, dict) else None
        if not isinstance(data, list) or not data or not isinstance(data[0], dict):
            raise EventSubError(f"EventSub response for {type} contained no subscription")
        sub = data[0]
        sub_id = sub.get('id')
        if not sub_id:
            raise EventSubError(f"EventSub response for {type} is missing the subscription id")
        expires_raw = sub.get('expires_at')
        if expires_raw:
            try:
                expires_at = parse_timestamp(str(expires_raw))
            except ValueError as exc:
                raise EventSubError(f"EventSub response for {type} has invalid expires_at {expires_raw!r}") from exc
        else:
            expires_at = self._clock() + self.fallback_lifetime
            logger.debug('EventSub %s reported no expiry; assuming %s', type, format_timestamp(expires_at))
        return SubscriptionRecord(id=str(sub_id), type=type, condition=dict(condition), expires_at=expires_at)

    def _schedule_renewal(
        self,
        key: str,
        record: SubscriptionRecord,
        type: str,
        condition: Dict[str, str],
        callback: str,
        secret: str,
    ) -> None:
        delay = max((record.expires_at - self.renewal_lead - self._clock()).total_seconds(), 0.0)
        previous = self._timers.pop(key, None)
        if previous:
            previous.cancel()
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(delay, self._start_renewal, key, type, dict(condition), callback, secret)
        logger.debug('EventSub renewal for %s scheduled in %.0fs', key, delay)

    def _start_renewal(self, key: str, type: str, condition: Dict[str, str], callback: str, secret: str) -> None:
        self._timers.pop(key, None)
        task = asyncio.get_running_loop().create_task(self._renew(key, type, condition, callback, secret))
        self._renewals.add(task)
        task.add_done_callback(self._renewals.discard)

    async def _renew(self, key: str, type: str, condition: Dict[str, str], callback: str, secret: str) -> None:
        try:
            await self.ensure_subscription(type, condition, callback, secret)
        except asyncio.CancelledError:
            raise
        except Exception:
            # No retry: the subscription stays unrenewed until the next explicit call.
            logger.exception('Failed to renew EventSub subscription %s', key)

    async def records(self) -> List[SubscriptionRecord]:
        return list((await self.store.load()).values())

    async def close(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        tasks = list(self._renewals)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._renewals.clear()
