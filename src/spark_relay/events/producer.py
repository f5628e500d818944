"""Producer-side entry point for appending incidents to the queue."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from spark_relay.events.base import EventStore
from spark_relay.models import Event, utc_now

logger = logging.getLogger(__name__)


class EventEmitter:
    """Normalizes producer input and appends it to the configured store.

    A disabled emitter accepts every call and writes nothing, so
    application code can emit unconditionally.
    """

    def __init__(
        self,
        store: EventStore,
        *,
        enabled: bool = True,
        environment: str | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.enabled = enabled
        self.environment = environment
        self._clock = clock

    def emit(self, event: Event | Mapping[str, Any]) -> bool:
        if not self.enabled:
            return False
        if isinstance(event, Event):
            normalized = event
            if normalized.environment is None and self.environment is not None:
                normalized.environment = self.environment
        else:
            try:
                normalized = Event.from_mapping(
                    event,
                    default_environment=self.environment,
                    now=self._clock(),
                )
            except (TypeError, ValueError) as error:
                logger.warning("Dropped malformed event: %s", error)
                return False
        return self.store.append(normalized)
