import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from streamkit import settings

CHAT_ENV = {
    'TWITCH_CHAT_USERNAME': 'botnick',
    'TWITCH_CHAT_TOKEN': 'oauth:abc123',
    'TWITCH_CHAT_REFRESH_TOKEN': 'refresh',
    'TWITCH_BOT_USER_ID': '1234',
    'TWITCH_CHAT_CHANNELS': '#SomeChannel, other ,somechannel',
    'TWITCH_CLIENT_ID': 'cid',
    'TWITCH_CLIENT_SECRET': 'csecret',
}


class SplitChannelsTests(unittest.TestCase):
    def test_normalizes_and_dedupes(self) -> None:
        self.assertEqual(settings.split_channels('#A, b,,a , #B'), ['a', 'b'])

    def test_empty(self) -> None:
        self.assertEqual(settings.split_channels(' , '), [])


class ChatSettingsTests(unittest.TestCase):
    def test_from_env(self) -> None:
        cfg = settings.ChatSettings.from_env(CHAT_ENV)
        self.assertEqual(cfg.login, 'botnick')
        self.assertEqual(cfg.token, 'abc123')
        self.assertEqual(cfg.channels, ['somechannel', 'other'])
        self.assertEqual(cfg.commands_file, Path('commands.yml'))
        self.assertEqual(cfg.messages_file, Path('messages.yml'))

    def test_missing_values_are_named(self) -> None:
        env = dict(CHAT_ENV, TWITCH_CHAT_TOKEN='', TWITCH_CHAT_CHANNELS='  ')
        with self.assertRaises(settings.ConfigurationError) as ctx:
            settings.ChatSettings.from_env(env)
        self.assertEqual(
            str(ctx.exception),
            'Missing chat bot credentials. Set TWITCH_CHAT_TOKEN, TWITCH_CHAT_CHANNELS.',
        )

    def test_channels_without_logins_are_rejected(self) -> None:
        with self.assertRaises(settings.ConfigurationError):
            settings.ChatSettings.from_env(dict(CHAT_ENV, TWITCH_CHAT_CHANNELS='#,'))

    def test_file_overrides(self) -> None:
        env = dict(CHAT_ENV, COMMANDS_FILE='/etc/bot/commands.yml', BOT_MESSAGES_PATH='msgs.yml')
        cfg = settings.ChatSettings.from_env(env)
        self.assertEqual(cfg.commands_file, Path('/etc/bot/commands.yml'))
        self.assertEqual(cfg.messages_file, Path('msgs.yml'))


class EventSubSettingsTests(unittest.TestCase):
    def test_not_configured_returns_none(self) -> None:
        self.assertIsNone(settings.EventSubSettings.from_env({}))

    def test_partial_configuration_raises(self) -> None:
        with self.assertRaises(settings.ConfigurationError) as ctx:
            settings.EventSubSettings.from_env({'TWITCH_EVENTSUB_CALLBACK': 'https://example.com/cb'})
        self.assertIn('TWITCH_EVENTSUB_SECRET', str(ctx.exception))
        self.assertIn('TWITCH_BROADCASTER_ID', str(ctx.exception))

    def test_full_configuration(self) -> None:
        cfg = settings.EventSubSettings.from_env({
            'TWITCH_EVENTSUB_CALLBACK': 'https://example.com/cb',
            'TWITCH_EVENTSUB_SECRET': 'secret',
            'TWITCH_BROADCASTER_ID': '1337',
            'EVENTSUB_STATE_FILE': '/var/lib/streamkit/state.json',
        })
        self.assertEqual(cfg.broadcaster_id, '1337')
        self.assertEqual(cfg.state_file, Path('/var/lib/streamkit/state.json'))

    def test_default_state_file(self) -> None:
        self.assertEqual(settings.state_file_from_env({}), Path('eventsub-state.json'))


if __name__ == '__main__':
    unittest.main()
