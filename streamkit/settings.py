from __future__ import annotations
import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import List, Mapping, Optional

# Subscriptions are renewed this long before Twitch expires them.
RENEWAL_LEAD = timedelta(seconds=60)
DEFAULT_STATE_FILE = 'eventsub-state.json'
DEFAULT_STREAMER = 'SolarKhan'


class ConfigurationError(RuntimeError):
    """Raised when a subsystem is constructed without its required settings."""


def _env(environ: Mapping[str, str], key: str) -> str:
    return (environ.get(key) or '').strip()


def _require(environ: Mapping[str, str], keys: List[str], what: str) -> None:
    missing = [key for key in keys if not _env(environ, key)]
    if missing:
        raise ConfigurationError(f"Missing {what}. Set {', '.join(missing)}.")


def split_channels(raw: str) -> List[str]:
    channels: List[str] = []
    for item in raw.split(','):
        login = item.strip().lstrip('#').lower()
        if login and login not in channels:
            channels.append(login)
    return channels


@dataclass
class HelixSettings:
    client_id: str
    client_secret: str

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> HelixSettings:
        env = os.environ if environ is None else environ
        _require(env, ['TWITCH_CLIENT_ID', 'TWITCH_CLIENT_SECRET'], 'Twitch credentials')
        return cls(
            client_id=_env(env, 'TWITCH_CLIENT_ID'),
            client_secret=_env(env, 'TWITCH_CLIENT_SECRET'),
        )


@dataclass
class ChatSettings:
    client_id: str
    client_secret: str
    login: str
    token: str
    refresh_token: str
    bot_user_id: str
    channels: List[str] = field(default_factory=list)
    commands_file: Path = Path('commands.yml')
    messages_file: Path = Path('messages.yml')

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> ChatSettings:
        env = os.environ if environ is None else environ
        _require(
            env,
            [
                'TWITCH_CHAT_USERNAME',
                'TWITCH_CHAT_TOKEN',
                'TWITCH_CHAT_REFRESH_TOKEN',
                'TWITCH_BOT_USER_ID',
                'TWITCH_CHAT_CHANNELS',
                'TWITCH_CLIENT_ID',
                'TWITCH_CLIENT_SECRET',
            ],
            'chat bot credentials',
        )
        channels = split_channels(_env(env, 'TWITCH_CHAT_CHANNELS'))
        if not channels:
            raise ConfigurationError('Missing chat bot credentials. Set TWITCH_CHAT_CHANNELS.')
        return cls(
            client_id=_env(env, 'TWITCH_CLIENT_ID'),
            client_secret=_env(env, 'TWITCH_CLIENT_SECRET'),
            login=_env(env, 'TWITCH_CHAT_USERNAME'),
            token=_env(env, 'TWITCH_CHAT_TOKEN').removeprefix('oauth:'),
            refresh_token=_env(env, 'TWITCH_CHAT_REFRESH_TOKEN'),
            bot_user_id=_env(env, 'TWITCH_BOT_USER_ID'),
            channels=channels,
            commands_file=Path(_env(env, 'COMMANDS_FILE') or 'commands.yml'),
            messages_file=Path(_env(env, 'BOT_MESSAGES_PATH') or 'messages.yml'),
        )


@dataclass
class EventSubSettings:
    """Webhook subscription settings for the ``stream.online`` bootstrap.

    ``from_env`` returns ``None`` instead of raising when the optional
    subscription is not configured at all, and raises when only part of it is.
    """

    callback: str
    secret: str
    broadcaster_id: str
    state_file: Path = Path(DEFAULT_STATE_FILE)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> Optional[EventSubSettings]:
        env = os.environ if environ is None else environ
        keys = ['TWITCH_EVENTSUB_CALLBACK', 'TWITCH_EVENTSUB_SECRET', 'TWITCH_BROADCASTER_ID']
        if not any(_env(env, key) for key in keys):
            return None
        _require(env, keys, 'EventSub settings')
        return cls(
            callback=_env(env, 'TWITCH_EVENTSUB_CALLBACK'),
            secret=_env(env, 'TWITCH_EVENTSUB_SECRET'),
            broadcaster_id=_env(env, 'TWITCH_BROADCASTER_ID'),
            state_file=state_file_from_env(env),
        )


def state_file_from_env(environ: Optional[Mapping[str, str]] = None) -> Path:
    env = os.environ if environ is None else environ
    return Path(_env(env, 'EVENTSUB_STATE_FILE') or DEFAULT_STATE_FILE)
