from __future__ import annotations
import argparse
import asyncio
import logging
import os
from typing import Any, Awaitable, Dict, List, Optional, Sequence

import uvicorn
from dotenv import load_dotenv

from streamkit.chat_bot import ChatUser, CommandDispatcher, StreamBot, command_options, load_commands, load_messages
from streamkit.eventsub import EventSubManager, SubscriptionRecord, SubscriptionStore
from streamkit.helix import HelixClient
from streamkit.settings import (
    DEFAULT_STREAMER,
    ChatSettings,
    ConfigurationError,
    EventSubSettings,
    state_file_from_env,
)
from streamkit.webhook_app import EventSubSubscription, create_app

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s %(message)s"


def build_bot(settings: ChatSettings) -> StreamBot:
    config = load_commands(settings.commands_file)
    messages = load_messages(settings.messages_file)
    bot = StreamBot.from_settings(settings, dispatcher=CommandDispatcher(prefix=config['prefix']))

    def ping(channel: str, user: ChatUser, args: str):
        return bot.say(channel, messages['pong'])

    def raid(channel: str, user: ChatUser, args: str):
        return bot.say(channel, messages['raid'].format(args=args, user=user.display_name or user.name))

    bot.register_command('ping', ping, **command_options(config, 'ping'))
    bot.register_command('raid', raid, **command_options(config, 'raid'))
    return bot


async def ensure_stream_online(manager: EventSubManager, settings: EventSubSettings) -> SubscriptionRecord:
    return await manager.ensure_subscription(
        'stream.online',
        {'broadcaster_user_id': settings.broadcaster_id},
        settings.callback,
        settings.secret,
    )


def _log_stream_online(event: Dict[str, Any], subscription: EventSubSubscription) -> None:
    logger.info('%s went live', event.get('broadcaster_user_login') or subscription.condition.get('broadcaster_user_id'))


def build_webhook_server(
    eventsub_settings: Optional[EventSubSettings],
    store: Optional[SubscriptionStore],
    host: str,
    port: int,
) -> uvicorn.Server:
    secret = eventsub_settings.secret if eventsub_settings else (os.getenv('TWITCH_EVENTSUB_SECRET') or '').strip()
    app = create_app(
        secret,
        store=store or SubscriptionStore(state_file_from_env()),
        handlers={'stream.online': [_log_stream_online]},
    )
    return uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level='info'))


async def run(
    streamer: str,
    *,
    serve_webhooks: bool = False,
    host: str = '0.0.0.0',
    port: int = 8080,
) -> None:
    try:
        client = HelixClient.from_env()
    except ConfigurationError as exc:
        logger.error('Failed to fetch stream info: %s', exc)
        return

    manager: Optional[EventSubManager] = None
    eventsub_settings: Optional[EventSubSettings] = None
    try:
        info = await client.get_stream_info(streamer)
        logger.info('Fetched stream info for %s: %s', streamer, info)

        eventsub_settings = EventSubSettings.from_env()
        if eventsub_settings:
            manager = EventSubManager(client, SubscriptionStore(eventsub_settings.state_file))
            await ensure_stream_online(manager, eventsub_settings)
    except Exception:
        logger.exception('Failed to fetch stream info')
        if manager:
            await manager.close()
        await client.close()
        return

    services: List[Awaitable[Any]] = []
    try:
        bot = build_bot(ChatSettings.from_env())
    except ConfigurationError as exc:
        logger.warning('Chat bot disabled: %s', exc)
    else:
        services.append(bot.start())
        logger.info('Chat bot starting for %s', ', '.join(bot.channel_logins))

    if serve_webhooks:
        try:
            server = build_webhook_server(eventsub_settings, manager.store if manager else None, host, port)
        except ConfigurationError as exc:
            logger.warning('Webhook server disabled: %s', exc)
        else:
            services.append(server.serve())

    try:
        if services:
            await asyncio.gather(*services)
    finally:
        if manager:
            await manager.close()
        await client.close()


def main(argv: Optional[Sequence[str]] = None) -> None:
    # Local .env values fill in anything the environment does not set.
    load_dotenv()
    logging.basicConfig(level=(os.getenv('LOG_LEVEL') or 'INFO').upper(), format=LOG_FORMAT)

    parser = argparse.ArgumentParser(
        description='Fetch Twitch stream info, keep EventSub subscriptions fresh and run the chat bot'
    )
    parser.add_argument('--streamer', default=os.getenv('TWITCH_STREAMER') or DEFAULT_STREAMER,
                        help='channel login to fetch stream info for')
    parser.add_argument('--serve-webhooks', action='store_true',
                        help='also serve the EventSub webhook callback')
    parser.add_argument('--host', default='0.0.0.0', help='webhook server bind address')
    parser.add_argument('--port', type=int, default=8080, help='webhook server port')
    args = parser.parse_args(argv)

    try:
        asyncio.run(run(args.streamer, serve_webhooks=args.serve_webhooks, host=args.host, port=args.port))
    except KeyboardInterrupt:
        logger.info('Interrupted; shutting down')


if __name__ == '__main__':
    main()
