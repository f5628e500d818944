"""Change detection, debounce and collection passes over the event store."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from queue import SimpleQueue

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from spark_relay.config import ParticipantRole
from spark_relay.events.base import EventStore
from spark_relay.models import Event, utc_now

logger = logging.getLogger(__name__)

CHANNEL_EVENTS = "events"
CHANNEL_PAUSE = "pause"
CHANNEL_AGENTS = "agents"


class DebounceState(str, Enum):
    """Debounce lifecycle."""

    IDLE = "idle"
    ARMED = "armed"
    FIRING = "firing"


class Debouncer:
    """Coalesces a burst of triggers into one collection pass.

    ``Idle -> Armed(deadline) -> Firing``. Each trigger while armed pushes
    the deadline out by the window. A trigger while firing is remembered and
    rearms the debouncer once the pass finishes.
    """

    def __init__(self, window_seconds: float) -> None:
        self.window_seconds = window_seconds
        self.state = DebounceState.IDLE
        self.deadline: float | None = None
        self._rearm_after_pass = False

    def trigger(self, now: float) -> None:
        if self.state == DebounceState.FIRING:
            self._rearm_after_pass = True
            return
        self.state = DebounceState.ARMED
        self.deadline = now + self.window_seconds

    def due(self, now: float) -> bool:
        """Enter ``Firing`` and return True when the armed deadline passed."""

        if self.state != DebounceState.ARMED or self.deadline is None or now < self.deadline:
            return False
        self.state = DebounceState.FIRING
        self.deadline = None
        return True

    def finish(self, now: float) -> None:
        if self._rearm_after_pass:
            self._rearm_after_pass = False
            self.state = DebounceState.ARMED
            self.deadline = now + self.window_seconds
            return
        self.state = DebounceState.IDLE
        self.deadline = None

    def seconds_until_due(self, now: float) -> float | None:
        if self.state != DebounceState.ARMED or self.deadline is None:
            return None
        return max(0.0, self.deadline - now)


class IntervalTimer:
    """Fixed-interval tick that skips rather than overlaps a running action."""

    def __init__(self, interval_seconds: float, *, first_at: float = 0.0) -> None:
        self.interval_seconds = interval_seconds
        self.next_at = first_at
        self.running = False

    def tick(self, now: float, action: Callable[[], object]) -> bool:
        if self.running or now < self.next_at:
            return False
        self.running = True
        try:
            action()
        finally:
            self.running = False
            self.next_at = now + self.interval_seconds
        return True

    def seconds_until_due(self, now: float) -> float:
        return max(0.0, self.next_at - now)


class EventCollector:
    """One collection pass: drain, drop stale and role-filtered events."""

    def __init__(
        self,
        store: EventStore,
        *,
        role: ParticipantRole = ParticipantRole.AGENT,
        stale_after_seconds: int = 300,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.role = role
        self.stale_after = timedelta(seconds=stale_after_seconds)
        self._clock = clock
        self._in_flight = False

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def collect(self) -> list[Event]:
        if self._in_flight:
            logger.debug("Collection pass already in flight; skipping")
            return []
        self._in_flight = True
        try:
            drained = self.store.drain_unconsumed()
        finally:
            self._in_flight = False

        horizon = self._clock() - self.stale_after
        events: list[Event] = []
        for event in drained:
            if event.timestamp < horizon:
                logger.debug("Discarded stale %s event %s", event.type, event.trace_id)
                continue
            if self.role == ParticipantRole.AGENT and event.is_lifecycle:
                continue
            events.append(event)
        return events


@dataclass(slots=True)
class WatchTarget:
    """Directory observed for one notification channel."""

    channel: str
    directory: Path
    matches: Callable[[str], bool]


class _ChannelHandler(FileSystemEventHandler):
    """Forwards matching filesystem events as channel names."""

    def __init__(self, target: WatchTarget, queue: SimpleQueue[str]) -> None:
        super().__init__()
        self.target = target
        self.queue = queue

    def on_created(self, event: FileSystemEvent) -> None:
        self._notify(event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._notify(event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._notify(event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._notify(event.dest_path or event.src_path)

    def _notify(self, raw_path: str | bytes) -> None:
        name = os.path.basename(os.fsdecode(raw_path))
        if self.target.matches(name):
            self.queue.put(self.target.channel)


class ChangeNotifier:
    """watchdog observer feeding channel names into a thread-safe queue.

    Callbacks run on the observer thread and only enqueue; the loop thread
    owns all state.
    """

    def __init__(self, targets: list[WatchTarget], queue: SimpleQueue[str]) -> None:
        self.targets = targets
        self.queue = queue
        self._observer: Observer | None = None

    @property
    def running(self) -> bool:
        return self._observer is not None

    def start(self) -> None:
        if self._observer is not None:
            return
        observer = Observer()
        for target in self.targets:
            target.directory.mkdir(parents=True, exist_ok=True)
            observer.schedule(
                _ChannelHandler(target, self.queue),
                str(target.directory),
                recursive=False,
            )
        observer.daemon = True
        observer.start()
        self._observer = observer

    def stop(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=2.0)
        self._observer = None


def is_record_name(name: str) -> bool:
    return name.endswith(".json") and not name.startswith(".")


def build_watch_targets(
    *,
    events_dir: Path | None,
    pause_path: Path,
    agents_dir: Path,
) -> list[WatchTarget]:
    """Targets for the event directory (when file-backed), pause file and agents."""

    pause_name = pause_path.name
    targets = [
        WatchTarget(
            channel=CHANNEL_PAUSE,
            directory=pause_path.parent,
            matches=lambda name: name == pause_name,
        ),
        WatchTarget(channel=CHANNEL_AGENTS, directory=agents_dir, matches=is_record_name),
    ]
    if events_dir is not None:
        targets.insert(
            0,
            WatchTarget(channel=CHANNEL_EVENTS, directory=events_dir, matches=is_record_name),
        )
    return targets
