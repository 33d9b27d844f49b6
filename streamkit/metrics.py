"""Prometheus counters for streamkit.

Both counters are module-level singletons on the default ``REGISTRY``.

  twitch_api_requests_total{endpoint}
      Counter: Helix responses received, labelled by API path
      (e.g. ``/streams``). Retried attempts count once each.

  chat_messages_processed_total
      Counter: chat messages that passed the self/prefix filter and were
      looked up as commands.

Usage::

    from streamkit.metrics import api_request_counter
    api_request_counter.labels(endpoint='/streams').inc()
"""

from __future__ import annotations

from prometheus_client import Counter

api_request_counter: Counter = Counter(
    'twitch_api_requests',
    'Number of Twitch API requests made.',
    labelnames=['endpoint'],
)

chat_message_counter: Counter = Counter(
    'chat_messages_processed',
    'Number of chat messages processed by the bot.',
)
