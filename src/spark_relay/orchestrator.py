"""Delivery gate and the single-threaded coordination loop."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from queue import Empty, SimpleQueue

from spark_relay.config import EventBackend, ParticipantRole, Settings
from spark_relay.events.base import EventStore, open_event_store, retention_policy
from spark_relay.events.producer import EventEmitter
from spark_relay.models import Event, PresenceChange, utc_now
from spark_relay.pause import PauseCoordinator
from spark_relay.presence import AgentPresence, PresenceRegistry
from spark_relay.watcher import (
    CHANNEL_AGENTS,
    CHANNEL_EVENTS,
    CHANNEL_PAUSE,
    ChangeNotifier,
    DebounceState,
    Debouncer,
    EventCollector,
    IntervalTimer,
    build_watch_targets,
)

logger = logging.getLogger(__name__)

Consumer = Callable[[list[Event]], None]
MAX_IDLE_WAIT_SECONDS = 0.5


class GateState(str, Enum):
    """Whether collected events are delivered now or held back."""

    FLOWING = "flowing"
    BUFFERING_PAUSED = "buffering-paused"
    BUFFERING_BUSY = "buffering-busy"


def resolve_gate_state(*, paused: bool, busy: bool) -> GateState:
    if paused:
        return GateState.BUFFERING_PAUSED
    if busy:
        return GateState.BUFFERING_BUSY
    return GateState.FLOWING


class DeliveryGate:
    """Three-state gate in front of the consumer.

    While buffering, batches accumulate in arrival order. Entering
    ``FLOWING`` hands the whole buffer to the consumer as one batch.
    """

    def __init__(self, consumer: Consumer, *, state: GateState = GateState.FLOWING) -> None:
        self.consumer = consumer
        self.state = state
        self.buffer: list[Event] = []
        self.delivered_batches = 0
        self.delivered_events = 0

    def offer(self, events: Sequence[Event]) -> None:
        if not events:
            return
        if self.state == GateState.FLOWING:
            self._deliver(list(events))
            return
        self.buffer.extend(events)
        logger.debug(
            "Buffered %d events (%s); %d held",
            len(events),
            self.state.value,
            len(self.buffer),
        )

    def transition(self, state: GateState) -> bool:
        """Move to ``state``; returns False when already there."""

        if state == self.state:
            return False
        logger.info("Delivery gate %s -> %s", self.state.value, state.value)
        self.state = state
        if state == GateState.FLOWING and self.buffer:
            batch, self.buffer = self.buffer, []
            self._deliver(batch)
        return True

    def _deliver(self, batch: list[Event]) -> None:
        self.delivered_batches += 1
        self.delivered_events += len(batch)
        try:
            self.consumer(batch)
        except Exception:  # noqa: BLE001
            logger.exception("Consumer failed on a batch of %d events", len(batch))


class Orchestrator:
    """Wires store, watcher, pause and presence into one delivery loop.

    Every state change happens on the thread that calls ``run_once`` or
    ``run_loop``; the filesystem observer only posts channel names.
    """

    def __init__(  # noqa: PLR0913
        self,
        settings: Settings,
        consumer: Consumer,
        *,
        store: EventStore | None = None,
        watch_filesystem: bool = True,
        monotonic: Callable[[], float] = time.monotonic,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self._monotonic = monotonic
        self.store = store or open_event_store(settings)
        self.emitter = EventEmitter(
            self.store,
            enabled=settings.enabled,
            environment=settings.environment,
            clock=clock,
        )
        self.pause = PauseCoordinator(
            settings.pause_path,
            stale_threshold_minutes=settings.pause.stale_threshold_minutes,
            clock=clock,
        )
        self.registry = PresenceRegistry(settings.agents_dir, on_change=_log_presence_change)
        self.presence = (
            AgentPresence(settings.agents_dir, emitter=self.emitter, clock=clock)
            if settings.role == ParticipantRole.AGENT
            else None
        )
        self.collector = EventCollector(
            self.store,
            role=settings.role,
            stale_after_seconds=settings.debounce.stale_event_seconds,
            clock=clock,
        )
        self.gate = DeliveryGate(consumer)
        self.debouncer = Debouncer(settings.debounce.window_ms / 1000.0)
        self.queue: SimpleQueue[str] = SimpleQueue()
        file_backed = settings.backend == EventBackend.DIRECTORY
        self.notifier = (
            ChangeNotifier(
                build_watch_targets(
                    events_dir=settings.events_dir if file_backed else None,
                    pause_path=settings.pause_path,
                    agents_dir=settings.agents_dir,
                ),
                self.queue,
            )
            if watch_filesystem
            else None
        )
        self.poll_timer = (
            None if file_backed else IntervalTimer(settings.debounce.poll_interval_seconds)
        )
        self.gate_timer = IntervalTimer(settings.presence.gate_refresh_seconds)
        self.presence_timer = IntervalTimer(settings.presence.scan_interval_seconds)
        self.retention_timer = IntervalTimer(settings.retention.interval_seconds)
        self._pending_channels: set[str] = set()
        self._started = False
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    @property
    def own_presence_id(self) -> str | None:
        return self.presence.agent_id if self.presence is not None else None

    def start(self) -> None:
        """Register presence, seed the gate, catch up on backlog, begin watching."""

        if self._started:
            return
        self._started = True
        if self.presence is not None:
            self.presence.start()
        self.registry.scan()
        self.refresh_gate()
        if self.notifier is not None:
            self.notifier.start()
        self.collect()

    def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        if self.notifier is not None:
            self.notifier.stop()
        if self.presence is not None:
            self.presence.stop()
        self.store.close()

    def refresh_gate(self) -> GateState:
        paused = self.pause.is_paused()
        busy = self.registry.is_busy(exclude_id=self.own_presence_id)
        self.gate.transition(resolve_gate_state(paused=paused, busy=busy))
        return self.gate.state

    def collect(self) -> int:
        """Run one collection pass and feed the gate; returns events collected."""

        events = self.collector.collect()
        self.gate.offer(events)
        return len(events)

    def notify(self, channel: str) -> None:
        self.queue.put(channel)

    def run_once(self, now: float | None = None) -> int:
        """Process pending notifications and due timers once."""

        now = self._monotonic() if now is None else now
        collected = 0
        self._handle_notifications(now)
        if self.poll_timer is not None:
            self.poll_timer.tick(now, lambda: self._poll(now))
        self.gate_timer.tick(now, self.refresh_gate)
        self.presence_timer.tick(now, self._sweep_presence)
        self.retention_timer.tick(now, self._retain)
        if self.debouncer.due(now):
            try:
                collected += self.collect()
            finally:
                self.debouncer.finish(self._monotonic())
        return collected

    def run_loop(self, *, max_iterations: int | None = None) -> None:
        iterations = 0
        with self._signal_handlers():
            self.start()
            try:
                while not self._stop_requested:
                    self.run_once()
                    iterations += 1
                    if max_iterations is not None and iterations >= max_iterations:
                        break
                    self._wait_for_notification(self._next_wakeup(self._monotonic()))
            finally:
                self.stop()

    def request_stop(self) -> None:
        self._stop_requested = True

    def _poll(self, now: float) -> None:
        # Polls arm an idle debouncer but never push out a pending deadline.
        if self.debouncer.state == DebounceState.IDLE:
            self.debouncer.trigger(now)

    def _handle_notifications(self, now: float) -> None:
        channels = self._pending_channels
        self._pending_channels = set()
        while True:
            try:
                channels.add(self.queue.get_nowait())
            except Empty:
                break
        if CHANNEL_EVENTS in channels:
            self.debouncer.trigger(now)
        if CHANNEL_AGENTS in channels:
            self.registry.scan()
        if CHANNEL_PAUSE in channels or CHANNEL_AGENTS in channels:
            self.refresh_gate()

    def _sweep_presence(self) -> None:
        self.registry.scan()
        self.refresh_gate()

    def _retain(self) -> None:
        result = self.store.retain(retention_policy(self.settings))
        if result.events_deleted or result.access_logs_deleted or result.temp_files_deleted:
            logger.info(
                "Retention removed events=%d access_logs=%d temp_files=%d",
                result.events_deleted,
                result.access_logs_deleted,
                result.temp_files_deleted,
            )

    def _next_wakeup(self, now: float) -> float:
        waits = [
            MAX_IDLE_WAIT_SECONDS,
            self.gate_timer.seconds_until_due(now),
            self.presence_timer.seconds_until_due(now),
            self.retention_timer.seconds_until_due(now),
        ]
        if self.poll_timer is not None:
            waits.append(self.poll_timer.seconds_until_due(now))
        debounce_wait = self.debouncer.seconds_until_due(now)
        if debounce_wait is not None:
            waits.append(debounce_wait)
        return min(waits)

    def _wait_for_notification(self, seconds: float) -> None:
        if seconds <= 0:
            return
        try:
            self._pending_channels.add(self.queue.get(timeout=seconds))
        except Empty:
            return

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s; stopping", name)
            self._stop_signal_name = name
            self.request_stop()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            yield
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
        finally:
            try:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
            except ValueError:
                pass


def _log_presence_change(change: PresenceChange) -> None:
    logger.info(
        "Agent %s %s (status=%s)",
        change.record.id,
        change.kind.value,
        change.record.status.value,
    )
