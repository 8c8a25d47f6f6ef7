"""Engine settings, read from ``RELAYSTACK_*`` environment variables."""

import json
import os
from pathlib import Path
from typing import Any, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from relaystack.core.errors import ConfigurationError
from relaystack.core.models import BackoffKind, RetryPolicy


class EngineSettings(BaseSettings):
    """Runtime configuration for an engine built by ``build_engine``.

    Every field can be set through the environment, e.g.
    ``RELAYSTACK_QUEUE_BACKEND=redis`` or
    ``RELAYSTACK_DEFAULT_RETRY_POLICY='{"attempts": 5}'``.

    ``mode`` splits a deployment across processes sharing a Redis queue:
    ``api`` processes emit and run handlers but leave queued notifications to
    ``worker`` processes, which deliver them and accept no emissions.
    ``hybrid`` does both in one process.
    """

    queue_backend: Literal["memory", "file", "redis"] = "file"
    queue_name: str = "notifications"
    redis_url: str = "redis://localhost:6379/0"
    data_dir: Path = Path("./queue-data")

    notification_concurrency: int = Field(default=3, ge=1)
    handler_concurrency: int = Field(default=2, ge=1)
    poll_interval: float = Field(default=1.0, gt=0)

    health_failure_threshold: int = Field(default=5, ge=1)
    health_check_interval: float = Field(default=30.0, gt=0)
    health_check_timeout: float = Field(default=5.0, gt=0)

    provider_send_timeout: float = Field(default=10.0, gt=0)
    default_timeout: float = Field(default=30.0, gt=0)
    handler_timeout: float = Field(default=30.0, gt=0)
    default_retry_policy: RetryPolicy = RetryPolicy(
        attempts=3, delay=1.0, backoff=BackoffKind.EXPONENTIAL, max_delay=30.0
    )

    mode: Literal["api", "worker", "hybrid"] = "hybrid"

    continue_after_timeout: bool = True
    raise_on_rejection: bool = True
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="RELAYSTACK_", env_file=".env", extra="ignore")


def load_event_types(path: str | os.PathLike[str]) -> list[dict[str, Any]]:
    """Read event type definitions from a JSON file.

    The file holds either a list of definitions (each with a ``name``) or an
    object mapping names to definition bodies, optionally wrapped in an
    ``"event_types"`` key.

    Raises:
        ConfigurationError: If the file is missing or not valid JSON.
    """
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigurationError(f"Event type file {path} does not exist") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Event type file {path} is not valid JSON: {e}") from e

    if isinstance(data, dict) and "event_types" in data:
        data = data["event_types"]
    if isinstance(data, dict):
        return [{"name": name, **body} for name, body in data.items()]
    if isinstance(data, list):
        return data
    raise ConfigurationError(
        f"Event type file {path} must hold a list or an object, got {type(data).__name__}"
    )
