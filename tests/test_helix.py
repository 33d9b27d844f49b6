import hashlib
import hmac
import os
import sys
import time
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, patch

import aiohttp
from prometheus_client import REGISTRY

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from streamkit import helix
from streamkit.settings import ConfigurationError


class FakeResponse:
    def __init__(self, status: int, body=None, headers=None):
        self.status = status
        self._body = body
        self.headers = dict(headers or {})
        if isinstance(body, (dict, list)):
            self.headers.setdefault('content-type', 'application/json')

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def json(self, content_type='application/json'):
        return self._body

    async def text(self):
        return self._body if isinstance(self._body, str) else ''


class FakeSession:
    def __init__(self, responses, token_responses=None):
        self.responses = list(responses)
        self.token_responses = list(token_responses or [])
        self.requests: list = []
        self.token_requests: list = []

    def post(self, url, data=None):
        self.token_requests.append((url, data))
        if self.token_responses:
            return self.token_responses.pop(0)
        return FakeResponse(200, {'access_token': f"tok{len(self.token_requests)}", 'expires_in': 3600})

    def request(self, method, url, headers=None, params=None, json=None):
        self.requests.append({'method': method, 'url': url, 'headers': headers, 'params': params, 'json': json})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def close(self):
        return None


def _sign(secret: str, message_id: str, timestamp: str, body: bytes) -> str:
    digest = hmac.new(secret.encode(), (message_id + timestamp).encode() + body, hashlib.sha256)
    return f"sha256={digest.hexdigest()}"


class SignatureTests(unittest.TestCase):
    def test_valid_signature(self) -> None:
        body = b'{"challenge":"abc"}'
        signature = _sign('s3cret', 'msg-1', '2026-01-01T00:00:00Z', body)
        self.assertTrue(helix.verify_eventsub_signature('s3cret', 'msg-1', '2026-01-01T00:00:00Z', body, signature))

    def test_tampered_body_or_wrong_secret(self) -> None:
        body = b'{"challenge":"abc"}'
        signature = _sign('s3cret', 'msg-1', '2026-01-01T00:00:00Z', body)
        self.assertFalse(helix.verify_eventsub_signature('s3cret', 'msg-1', '2026-01-01T00:00:00Z', b'{}', signature))
        self.assertFalse(helix.verify_eventsub_signature('other', 'msg-1', '2026-01-01T00:00:00Z', body, signature))
        self.assertFalse(helix.verify_eventsub_signature('s3cret', 'msg-1', '2026-01-01T00:00:00Z', body, ''))


class HelixSettingsTests(unittest.TestCase):
    def test_from_env_requires_credentials(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(ConfigurationError) as ctx:
                helix.HelixClient.from_env()
        self.assertEqual(
            str(ctx.exception),
            'Missing Twitch credentials. Set TWITCH_CLIENT_ID, TWITCH_CLIENT_SECRET.',
        )

    def test_from_env_reads_credentials(self) -> None:
        with patch.dict(os.environ, {'TWITCH_CLIENT_ID': 'cid', 'TWITCH_CLIENT_SECRET': ' csecret '}, clear=True):
            client = helix.HelixClient.from_env()
        self.assertEqual(client.client_id, 'cid')
        self.assertEqual(client.client_secret, 'csecret')


class HelixClientTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.client = helix.HelixClient('cid', 'csecret')
        patcher = patch.object(helix.HelixClient, '_retry_delay', staticmethod(lambda attempt, headers=None: 0))
        patcher.start()
        self.addCleanup(patcher.stop)

    def _use(self, responses, token_responses=None) -> FakeSession:
        session = FakeSession(responses, token_responses)
        self.client.session = session
        return session

    async def test_create_eventsub_subscription_payload(self) -> None:
        self.client._req = AsyncMock(return_value={'data': [{'id': 'sub'}]})

        result = await self.client.create_eventsub_subscription(
            'stream.online', {'broadcaster_user_id': '1'}, 'https://example.com/cb', 'secret'
        )

        self.assertEqual(result, {'data': [{'id': 'sub'}]})
        self.client._req.assert_awaited_once_with(
            'POST',
            '/eventsub/subscriptions',
            payload={
                'type': 'stream.online',
                'version': '1',
                'condition': {'broadcaster_user_id': '1'},
                'transport': {
                    'method': 'webhook',
                    'callback': 'https://example.com/cb',
                    'secret': 'secret',
                },
            },
        )

    async def test_get_stream_info_sends_auth_headers(self) -> None:
        session = self._use([FakeResponse(200, {'data': [{'user_login': 'solarkhan'}]})])

        info = await self.client.get_stream_info('SolarKhan')

        self.assertEqual(info, {'data': [{'user_login': 'solarkhan'}]})
        request = session.requests[0]
        self.assertEqual(request['method'], 'GET')
        self.assertEqual(request['url'], 'https://api.twitch.tv/helix/streams')
        self.assertEqual(request['params'], {'user_login': 'SolarKhan'})
        self.assertEqual(request['headers'], {'Client-Id': 'cid', 'Authorization': 'Bearer tok1'})
        self.assertEqual(session.token_requests[0][1]['grant_type'], 'client_credentials')

    async def test_token_is_cached_between_requests(self) -> None:
        session = self._use([FakeResponse(200, {'data': []}), FakeResponse(200, {'data': []})])
        await self.client.get_stream_info('a')
        await self.client.get_stream_info('b')
        self.assertEqual(len(session.token_requests), 1)

    async def test_requests_are_counted_per_endpoint(self) -> None:
        self._use([
            FakeResponse(429, {'message': 'Too Many Requests'}),
            FakeResponse(200, {'data': []}),
            FakeResponse(202, {'data': [{'id': 'sub'}]}),
        ])
        streams = {'endpoint': '/streams'}
        subscriptions = {'endpoint': '/eventsub/subscriptions'}
        streams_before = REGISTRY.get_sample_value('twitch_api_requests_total', streams) or 0.0
        subs_before = REGISTRY.get_sample_value('twitch_api_requests_total', subscriptions) or 0.0

        with self.assertLogs('streamkit.helix', level='INFO'):
            await self.client.get_stream_info('a')
            await self.client.create_eventsub_subscription('stream.online', {'broadcaster_user_id': '1'}, 'cb', 's')

        self.assertEqual(REGISTRY.get_sample_value('twitch_api_requests_total', streams), streams_before + 2)
        self.assertEqual(REGISTRY.get_sample_value('twitch_api_requests_total', subscriptions), subs_before + 1)

    async def test_rate_limited_request_is_retried(self) -> None:
        session = self._use([
            FakeResponse(429, {'message': 'Too Many Requests'}),
            FakeResponse(200, {'data': ['ok']}),
        ])

        with self.assertLogs('streamkit.helix', level='WARNING'):
            result = await self.client.get_stream_info('a')

        self.assertEqual(result, {'data': ['ok']})
        self.assertEqual(len(session.requests), 2)

    async def test_server_errors_exhaust_retries(self) -> None:
        session = self._use([FakeResponse(503, {'message': 'unavailable'}) for _ in range(4)])

        with self.assertLogs('streamkit.helix', level='WARNING'):
            with self.assertRaises(helix.HelixError) as ctx:
                await self.client.get_stream_info('a')

        self.assertEqual(ctx.exception.status, 503)
        self.assertEqual(ctx.exception.detail, 'unavailable')
        self.assertEqual(len(session.requests), 4)

    async def test_client_error_is_not_retried(self) -> None:
        session = self._use([FakeResponse(400, {'message': 'invalid transport'})])

        with self.assertRaises(helix.HelixError) as ctx:
            await self.client.create_eventsub_subscription('stream.online', {'broadcaster_user_id': '1'}, 'cb', 's')

        self.assertEqual(ctx.exception.status, 400)
        self.assertEqual(str(ctx.exception), 'invalid transport')
        self.assertEqual(len(session.requests), 1)

    async def test_unauthorized_refreshes_token_once(self) -> None:
        session = self._use([FakeResponse(401, {'message': 'Invalid OAuth token'}), FakeResponse(200, {'data': []})])

        await self.client.get_stream_info('a')

        self.assertEqual(len(session.token_requests), 2)
        self.assertEqual(session.requests[1]['headers']['Authorization'], 'Bearer tok2')

    async def test_connection_errors_raise_after_retries(self) -> None:
        session = self._use([aiohttp.ClientConnectionError('down') for _ in range(4)])

        with self.assertLogs('streamkit.helix', level='WARNING'):
            with self.assertRaises(helix.HelixError) as ctx:
                await self.client.get_stream_info('a')

        self.assertEqual(ctx.exception.status, 0)
        self.assertEqual(len(session.requests), 4)

    async def test_token_failure_raises(self) -> None:
        self._use([], token_responses=[FakeResponse(400, 'invalid client secret')])

        with self.assertRaises(helix.HelixError) as ctx:
            await self.client.get_stream_info('a')

        self.assertEqual(ctx.exception.status, 400)
        self.assertEqual(ctx.exception.detail, 'invalid client secret')


class RequestLimiterTests(unittest.IsolatedAsyncioTestCase):
    async def test_waits_when_window_is_full(self) -> None:
        limiter = helix.RequestLimiter(limit=2, window=0.1)
        start = time.monotonic()
        for _ in range(3):
            await limiter.wait()
        self.assertGreaterEqual(time.monotonic() - start, 0.08)

    async def test_under_limit_does_not_wait(self) -> None:
        limiter = helix.RequestLimiter(limit=5, window=10)
        start = time.monotonic()
        for _ in range(5):
            await limiter.wait()
        self.assertLess(time.monotonic() - start, 1)
        self.assertEqual(len(limiter.timestamps), 5)


if __name__ == '__main__':
    unittest.main()
