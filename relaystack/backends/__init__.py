"""Queue backends for RelayStack."""

from relaystack.backends.base import QueueBackend, QueueStats
from relaystack.backends.file import FileQueueBackend
from relaystack.backends.memory import InMemoryQueueBackend
from relaystack.backends.redis_backend import RedisQueueBackend

__all__ = [
    "QueueBackend",
    "QueueStats",
    "InMemoryQueueBackend",
    "FileQueueBackend",
    "RedisQueueBackend",
]
