from __future__ import annotations
import asyncio
import inspect
import logging
import re
import time
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Set, Tuple

import yaml
from twitchio import eventsub
from twitchio.ext import commands

from streamkit.metrics import chat_message_counter
from streamkit.settings import ChatSettings, ConfigurationError, split_channels

logger = logging.getLogger(__name__)

COMMAND_PREFIX = '!'

ROLE_BROADCASTER = 'broadcaster'
ROLE_MOD = 'mod'
ROLE_VIP = 'vip'
ROLE_SUBSCRIBER = 'subscriber'
ROLE_VIEWER = 'viewer'
ROLES = (ROLE_BROADCASTER, ROLE_MOD, ROLE_VIP, ROLE_SUBSCRIBER, ROLE_VIEWER)

DEFAULT_COMMANDS: Dict[str, Any] = {
    'prefix': COMMAND_PREFIX,
    'commands': {
        'ping': {'cooldown_ms': 5000},
        'raid': {'roles': [ROLE_BROADCASTER, ROLE_MOD]},
    },
}

DEFAULT_MESSAGES: Dict[str, str] = {
    'pong': 'pong!',
    'raid': 'Preparing raid for {args}',
}

_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class ChatUser:
    id: str
    name: str
    display_name: Optional[str] = None
    badges: Mapping[str, str] = field(default_factory=dict)
    mod: bool = False

    @classmethod
    def from_chatter(cls, chatter) -> ChatUser:
        """Build a user from a twitchio chatter, folding its role flags into badges."""
        badges: Dict[str, str] = {}
        for badge in getattr(chatter, 'badges', None) or []:
            set_id = getattr(badge, 'set_id', None)
            if set_id:
                badges[str(set_id)] = str(getattr(badge, 'id', None) or '1')
        for flag in (ROLE_BROADCASTER, ROLE_VIP, ROLE_SUBSCRIBER):
            if getattr(chatter, flag, False):
                badges.setdefault(flag, '1')
        return cls(
            id=str(getattr(chatter, 'id', None) or ''),
            name=getattr(chatter, 'name', None) or '',
            display_name=getattr(chatter, 'display_name', None),
            badges=badges,
            mod=bool(getattr(chatter, 'moderator', False)),
        )


# Checked in order; the first match decides the role.
ROLE_PRECEDENCE: List[Tuple[Callable[[ChatUser], bool], str]] = [
    (lambda user: bool(user.badges.get('broadcaster')), ROLE_BROADCASTER),
    (lambda user: user.mod, ROLE_MOD),
    (lambda user: bool(user.badges.get('vip')), ROLE_VIP),
    (lambda user: bool(user.badges.get('subscriber')), ROLE_SUBSCRIBER),
]


def resolve_role(user: ChatUser) -> str:
    for matches, role in ROLE_PRECEDENCE:
        if matches(user):
            return role
    return ROLE_VIEWER


CommandHandler = Callable[[str, ChatUser, str], Any]


@dataclass(frozen=True)
class CommandEntry:
    name: str
    handler: CommandHandler
    cooldown_ms: Optional[int] = None
    roles: Optional[FrozenSet[str]] = None


class CommandDispatcher:
    """Route ``!command`` chat messages to registered handlers.

    Each command may carry a role allow-list and a per-user cooldown.
    ``dispatch`` is synchronous: coroutine results of handlers are scheduled
    on the running loop and never awaited here.
    """

    def __init__(self, *, prefix: str = COMMAND_PREFIX, clock: Optional[Callable[[], float]] = None):
        if not prefix:
            raise ValueError('command prefix must not be empty')
        self.prefix = prefix
        self._clock = clock or (lambda: time.monotonic() * 1000)
        self._commands: Dict[str, CommandEntry] = {}
        self._last_run: Dict[Tuple[str, str], float] = {}
        self._tasks: Set[asyncio.Future] = set()

    def register_command(
        self,
        name: str,
        handler: CommandHandler,
        *,
        cooldown_ms: Optional[int] = None,
        roles: Optional[Iterable[str]] = None,
    ) -> CommandEntry:
        command = (name or '').strip().lower()
        if not command:
            raise ValueError('command name must not be empty')
        if cooldown_ms is not None and cooldown_ms < 0:
            raise ValueError('cooldown_ms must not be negative')
        allowed = None
        if roles is not None:
            allowed = frozenset(str(role).lower() for role in roles)
            unknown = sorted(allowed.difference(ROLES))
            if unknown:
                raise ValueError(f"unknown roles for {command}: {', '.join(unknown)}")
        entry = CommandEntry(name=command, handler=handler, cooldown_ms=cooldown_ms, roles=allowed)
        self._commands[command] = entry
        return entry

    @property
    def command_names(self) -> List[str]:
        return sorted(self._commands)

    def dispatch(self, channel: str, user: ChatUser, text: str, is_self: bool) -> bool:
        """Run the handler for one inbound message; return whether it ran."""
        if is_self or not text.startswith(self.prefix):
            return False
        chat_message_counter.inc()
        parts = _WHITESPACE.split(text[len(self.prefix):], maxsplit=1)
        name = parts[0].lower()
        args = parts[1] if len(parts) > 1 else ''
        entry = self._commands.get(name)
        if not entry:
            return False

        role = resolve_role(user)
        if entry.roles is not None and role not in entry.roles:
            logger.debug('Command %s rejected for %s: role %s not allowed', name, user.name, role)
            return False

        if entry.cooldown_ms:
            throttle_key = (user.id, name)
            now = self._clock()
            last = self._last_run.get(throttle_key)
            if last is not None and now - last < entry.cooldown_ms:
                logger.debug('Command %s throttled for %s', name, user.name)
                return False
            self._last_run[throttle_key] = now

        result = entry.handler(channel, user, args)
        if inspect.isawaitable(result):
            self._spawn(name, result)
        return True

    def _spawn(self, name: str, awaitable) -> None:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)
        task.add_done_callback(partial(self._handler_done, name))

    def _handler_done(self, name: str, task: asyncio.Future) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error('Handler for command %s failed', name, exc_info=exc)


def load_commands(path: Path) -> Dict[str, Any]:
    cfg: Dict[str, Any] = {
        'prefix': DEFAULT_COMMANDS['prefix'],
        'commands': {name: dict(opts) for name, opts in DEFAULT_COMMANDS['commands'].items()},
    }
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping")
    if data.get('prefix'):
        cfg['prefix'] = str(data['prefix'])
    for name, opts in (data.get('commands') or {}).items():
        merged = cfg['commands'].setdefault(str(name).lower(), {})
        merged.update(opts or {})
    return cfg


def load_messages(path: Path) -> Dict[str, str]:
    cfg: Dict[str, str] = DEFAULT_MESSAGES.copy()
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
            cfg.update(data)
    except FileNotFoundError:
        pass
    return cfg


def command_options(config: Mapping[str, Any], name: str) -> Dict[str, Any]:
    opts = (config.get('commands') or {}).get(name) or {}
    options: Dict[str, Any] = {}
    if opts.get('cooldown_ms') is not None:
        options['cooldown_ms'] = int(opts['cooldown_ms'])
    if opts.get('roles') is not None:
        roles = opts['roles']
        options['roles'] = [roles] if isinstance(roles, str) else list(roles)
    return options


class StreamBot(commands.Bot):
    """Chat transport: joins channels over EventSub and feeds a :class:`CommandDispatcher`."""

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        bot_id: str,
        token: str,
        refresh_token: str,
        login: str,
        channels: Iterable[str],
        dispatcher: Optional[CommandDispatcher] = None,
    ):
        if not token or not refresh_token or not login or not bot_id:
            raise ConfigurationError('token, refresh_token, login, and bot_id are required')
        channel_logins = split_channels(','.join(channels))
        if not channel_logins:
            raise ConfigurationError('at least one chat channel is required')
        command_dispatcher = dispatcher or CommandDispatcher()
        super().__init__(
            client_id=client_id,
            client_secret=client_secret,
            bot_id=str(bot_id),
            prefix=command_dispatcher.prefix,
            fetch_client_user=False,
        )
        self.command_dispatcher = command_dispatcher
        self.bot_user_id = str(bot_id)
        self.channel_logins = channel_logins
        self.channel_map: Dict[str, Dict[str, str]] = {}
        self._configured_login = login
        self._user_token = token.removeprefix('oauth:')
        self._refresh_token = refresh_token
        self._subscription_ids: Dict[str, str] = {}

    @classmethod
    def from_settings(cls, settings: ChatSettings, dispatcher: Optional[CommandDispatcher] = None) -> StreamBot:
        return cls(
            client_id=settings.client_id,
            client_secret=settings.client_secret,
            bot_id=settings.bot_user_id,
            token=settings.token,
            refresh_token=settings.refresh_token,
            login=settings.login,
            channels=settings.channels,
            dispatcher=dispatcher,
        )

    def register_command(self, name: str, handler: CommandHandler, **options) -> CommandEntry:
        return self.command_dispatcher.register_command(name, handler, **options)

    async def load_tokens(self, path: Optional[str] = None) -> None:
        await super().add_token(self._user_token, self._refresh_token)

    async def save_tokens(self, path: Optional[str] = None) -> None:
        # Tokens come from the environment; nothing to write back.
        return None

    async def event_ready(self) -> None:
        await self.join_channels()
        logger.info('Chat bot %s ready in %d channel(s)', self._configured_login, len(self.channel_map))

    def _channel_login(self, name: str) -> str:
        return name.lstrip('#').lower()

    async def join_channels(self) -> None:
        pending = [login for login in self.channel_logins if login not in self.channel_map]
        if not pending:
            return
        users = await self.fetch_users(logins=pending)
        found = {self._channel_login(user.name): user for user in users}
        for login in pending:
            user = found.get(login)
            if not user:
                logger.warning('Chat channel %s does not exist', login)
                continue
            try:
                await self._subscribe_for_channel(str(user.id))
            except Exception:
                logger.exception('Failed to join chat channel %s', login)
                continue
            self.channel_map[login] = {'id': str(user.id), 'name': user.name}
            logger.info('Joined chat channel %s', login)

    async def _subscribe_for_channel(self, broadcaster_id: str) -> None:
        if broadcaster_id in self._subscription_ids:
            return
        payload = eventsub.ChatMessageSubscription(
            broadcaster_user_id=broadcaster_id,
            user_id=self.bot_user_id,
        )
        response = await self.subscribe_websocket(payload=payload, as_bot=True)
        subscription = getattr(response, 'subscription', None)
        sub_id = getattr(subscription, 'id', None) or getattr(response, 'id', None)
        self._subscription_ids[broadcaster_id] = str(sub_id or '')

    async def event_message(self, message) -> None:
        chatter = message.chatter
        is_self = str(getattr(chatter, 'id', '')) == self.bot_user_id
        channel = f"#{self._channel_login(message.broadcaster.name)}"
        self.command_dispatcher.dispatch(channel, ChatUser.from_chatter(chatter), message.text or '', is_self)

    async def say(self, channel: str, message: str) -> None:
        login = self._channel_login(channel)
        info = self.channel_map.get(login)
        if not info:
            logger.warning('Cannot send to %s; channel not joined', channel)
            return
        partial_user = self.create_partialuser(info['id'], info['name'])
        try:
            await partial_user.send_message(
                message,
                sender=self.bot_user_id,
                token_for=self.bot_user_id,
            )
        except Exception:
            logger.exception('Failed to send message to %s', channel)
