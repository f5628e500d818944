"""Markdown rendering of delivered event batches for consumers."""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any

from spark_relay.models import Event, EventType

STACK_PREVIEW_LINES = 8
EVENTS_BLOCK_LANGUAGE = "spark-events"


def format_event(event: Event) -> str:
    """Render one event as a short markdown section."""

    payload: dict[str, Any] = event.payload if isinstance(event.payload, dict) else {}
    lines: list[str] = []

    if event.type == EventType.PROCESS_ERROR.value:
        lines.append(f"**process-error** - `{payload.get('command') or 'unknown'}`")
        if payload.get("exitCode") is not None:
            lines.append(f"Exit code: {payload['exitCode']}")
        if payload.get("logFile"):
            lines.append(f"Log: {payload['logFile']}")
        if payload.get("tail"):
            lines.extend(["```", str(payload["tail"]), "```"])
    elif event.type == EventType.RATE_LIMIT.value:
        lines.append(
            f"**rate-limit**{_suffix(' on ', event.feature, code=True)}{_suffix(' - ', event.route)}",
        )
        if payload.get("ip"):
            lines.append(f"IP: {payload['ip']}")
        limit = payload.get("limit")
        if isinstance(limit, dict):
            lines.append(f"Limit: {limit.get('max')} req / {limit.get('windowSeconds')}s")
        if payload.get("retryAfter"):
            lines.append(f"Retry after: {payload['retryAfter']}s")
    else:
        lines.append(
            f"**{event.type}**{_suffix(' in ', event.feature, code=True)}"
            f"{_suffix(' - ', event.route)}",
        )
        if event.status:
            lines.append(f"Status: {event.status}")
        error = payload.get("error")
        if isinstance(error, dict):
            lines.append(f"Error: {error.get('message')}")
            stack = error.get("stack")
            if stack:
                preview = "\n".join(str(stack).splitlines()[:STACK_PREVIEW_LINES])
                lines.append(f"```\n{preview}\n```")
        elif isinstance(error, str):
            lines.append(f"Error: {error}")

    if event.truncated:
        lines.append("Payload truncated.")
    lines.append(f"Trace: {event.trace_id}")
    return "\n".join(lines)


def format_batch(events: Sequence[Event]) -> str:
    """Render a batch with a trailing machine-readable ``spark-events`` JSON block."""

    raw = json.dumps([event.to_mapping() for event in events], ensure_ascii=False, default=str)
    json_block = f"\n\n```{EVENTS_BLOCK_LANGUAGE}\n{raw}\n```"
    if len(events) == 1:
        return f"**Spark Event**\n\n{format_event(events[0])}{json_block}"
    body = "\n\n".join(
        f"### Event {index}\n{format_event(event)}" for index, event in enumerate(events, start=1)
    )
    return f"**{len(events)} Spark Events**\n\n{body}{json_block}"


def _suffix(prefix: str, value: str | None, *, code: bool = False) -> str:
    if not value:
        return ""
    return f"{prefix}`{value}`" if code else f"{prefix}{value}"
