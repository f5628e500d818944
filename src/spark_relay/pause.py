"""Advisory pause/resume signal shared through a single file."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

from spark_relay.models import PauseRecord, from_iso, utc_now
from spark_relay.storage.common import write_json_atomic

logger = logging.getLogger(__name__)

UNKNOWN_REASON = "unknown"


class PauseCoordinator:
    """Single-slot pause record with staleness self-healing.

    The file's existence is the signal. Writers overwrite each other (last
    writer wins) and any reader that finds a record older than the stale
    threshold deletes it and reports "not paused".
    """

    def __init__(
        self,
        pause_path: Path,
        *,
        stale_threshold_minutes: int = 30,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.pause_path = pause_path
        self.stale_threshold = timedelta(minutes=stale_threshold_minutes)
        self._clock = clock

    def pause(self, reason: str, holder: str | None = None) -> PauseRecord | None:
        """Write the pause record. Returns None when it could not be written."""

        record = PauseRecord(holder=holder, since=self._clock(), reason=reason)
        try:
            write_json_atomic(self.pause_path, record.to_mapping())
        except OSError as error:
            logger.warning("Failed to write pause file %s: %s", self.pause_path, error)
            return None
        logger.info("Paused by %s: %s", holder or "unknown", reason)
        return record

    def resume(self) -> bool:
        """Remove the pause record. Returns True when one was present."""

        try:
            self.pause_path.unlink()
        except FileNotFoundError:
            return False
        except OSError as error:
            logger.warning("Failed to remove pause file %s: %s", self.pause_path, error)
            return False
        logger.info("Resumed")
        return True

    def read(self) -> PauseRecord | None:
        try:
            raw = self.pause_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as error:
            logger.debug("Cannot read pause file %s: %s", self.pause_path, error)
            return None

        record = _parse_pause(raw) or self._fallback_record()
        if record is None:
            return None
        if self._clock() - record.since > self.stale_threshold:
            try:
                self.pause_path.unlink(missing_ok=True)
            except OSError as error:
                logger.warning("Failed to remove stale pause file %s: %s", self.pause_path, error)
            logger.warning(
                "Cleared stale pause held by %s since %s",
                record.holder or "unknown",
                record.since.isoformat(),
            )
            return None
        return record

    def is_paused(self) -> bool:
        return self.read() is not None

    def _fallback_record(self) -> PauseRecord | None:
        # An unparseable record still means paused; age it by mtime.
        try:
            modified = self.pause_path.stat().st_mtime
        except OSError:
            return None
        return PauseRecord(
            holder=None,
            since=datetime.fromtimestamp(modified, tz=UTC),
            reason=UNKNOWN_REASON,
        )


def _parse_pause(raw: str) -> PauseRecord | None:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict) or not isinstance(data.get("since"), str):
        return None
    try:
        since = from_iso(data["since"])
    except ValueError:
        return None
    holder = data.get("by")
    return PauseRecord(
        holder=str(holder) if holder else None,
        since=since,
        reason=str(data.get("reason") or UNKNOWN_REASON),
    )
