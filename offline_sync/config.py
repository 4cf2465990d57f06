"""
Sync client configuration.

Settings can be built directly, from ``OFFLINE_SYNC_*`` environment
variables, or from the ``sync:`` section of a YAML settings file:

```yaml
sync:
  base_url: https://api.example.com
  channel_url: wss://api.example.com/ws
  max_retries: 5
  storage_path: ~/.offline-sync/state.db
```
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from .channel import ChannelConfig
from .queue.processor import ProcessorConfig, RetryOrdering

logger = logging.getLogger(__name__)

ENV_PREFIX = "OFFLINE_SYNC_"


@dataclass
class SyncClientConfig:
    """Configuration for SyncClient.

    Attributes:
        base_url: Prefix for relative request URLs
        channel_url: Event channel endpoint; no channel when None
        storage_path: ``.db``/``.sqlite`` file for SQLite, any other path is a
            FileStore directory; in-memory storage when None

        max_retries: Transient failures before an action is surfaced as failed
        backoff_base: First retry delay in seconds
        backoff_max: Retry delay cap in seconds
        backoff_multiplier: Growth factor between retries
        retry_ordering: ``strict`` keeps a retried action at the head,
            ``rotate`` moves it to the tail

        request_timeout: Per-request timeout in seconds
        queue_capacity: Maximum queued actions before the oldest is dropped
        refresh_threshold: Refresh credentials with less validity left (seconds)

        max_reconnects: Consecutive reconnect attempts before giving up
        reconnect_delay: First reconnect delay in seconds
        reconnect_delay_max: Reconnect delay cap in seconds

        network_debounce: Seconds a connectivity change must hold before it counts
        stale_pending_after: Age in seconds after which pending cache records
            are reported as unconfirmed
    """

    base_url: str | None = None
    channel_url: str | None = None
    storage_path: str | None = None

    max_retries: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    backoff_multiplier: float = 2.0
    retry_ordering: str = RetryOrdering.STRICT.value

    request_timeout: float = 30.0
    queue_capacity: int = 100
    refresh_threshold: float = 300.0

    max_reconnects: int = 5
    reconnect_delay: float = 1.0
    reconnect_delay_max: float = 5.0

    network_debounce: float = 0.5
    stale_pending_after: float = 600.0

    def processor_config(self) -> ProcessorConfig:
        try:
            ordering = RetryOrdering(self.retry_ordering.lower())
        except ValueError:
            logger.warning(f"Unknown retry ordering '{self.retry_ordering}', using strict")
            ordering = RetryOrdering.STRICT
        return ProcessorConfig(
            max_retries=self.max_retries,
            backoff_base=self.backoff_base,
            backoff_max=self.backoff_max,
            backoff_multiplier=self.backoff_multiplier,
            ordering=ordering,
        )

    def channel_config(self) -> ChannelConfig:
        return ChannelConfig(
            max_reconnects=self.max_reconnects,
            reconnect_delay=self.reconnect_delay,
            reconnect_delay_max=self.reconnect_delay_max,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncClientConfig:
        """Build from a mapping, converting values to each field's type.

        Unknown keys are ignored with a warning.
        """
        known = {f.name: f for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            f = known.get(key)
            if f is None:
                logger.warning(f"Ignoring unknown sync setting '{key}'")
                continue
            kwargs[key] = _coerce(value, f.type, key)
        return cls(**kwargs)

    @classmethod
    def from_environment(cls) -> SyncClientConfig:
        """Create configuration from ``OFFLINE_SYNC_*`` environment variables.

        Returns:
            SyncClientConfig with defaults for anything not set
        """
        data: dict[str, Any] = {}
        for f in fields(cls):
            value = os.environ.get(ENV_PREFIX + f.name.upper())
            if value is not None and value != "":
                data[f.name] = value
        return cls.from_dict(data)

    @classmethod
    def from_yaml(cls, path: str | Path) -> SyncClientConfig:
        """Load the ``sync:`` section of a YAML settings file.

        A missing file or section yields the defaults.

        Raises:
            ValueError: If the file is not valid YAML or the section is not a mapping
        """
        config_path = Path(path).expanduser()
        if not config_path.exists():
            logger.debug(f"No settings file at {config_path}, using defaults")
            return cls()

        try:
            content = yaml.safe_load(config_path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid settings file {config_path}: {e}") from e

        section = content.get("sync") if isinstance(content, dict) else None
        if section is None:
            return cls()
        if not isinstance(section, dict):
            raise ValueError(f"'sync' section in {config_path} must be a mapping")
        return cls.from_dict(section)


def _coerce(value: Any, type_name: Any, key: str) -> Any:
    # Field types are strings under postponed annotations
    type_name = str(type_name)
    if value is None:
        return None
    try:
        if type_name.startswith("int"):
            return int(value)
        if type_name.startswith("float"):
            return float(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid value for {key}: {value!r}") from e
    return str(value)
