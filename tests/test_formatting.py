from __future__ import annotations

import json

import allure

from spark_relay.formatting import format_batch, format_event
from spark_relay.models import Event

pytestmark = [
    allure.epic("Coordination"),
    allure.feature("Batch Rendering"),
]


def test_process_error_shows_command_exit_code_and_tail(clock) -> None:
    event = Event(
        type="process-error",
        trace_id="trace-1",
        timestamp=clock.now,
        payload={"command": "bun run build", "exitCode": 1, "tail": "error: failed"},
    )

    rendered = format_event(event)

    assert rendered.splitlines()[0] == "**process-error** - `bun run build`"
    assert "Exit code: 1" in rendered
    assert "```\nerror: failed\n```" in rendered
    assert rendered.endswith("Trace: trace-1")


def test_server_error_truncates_stack_preview(clock) -> None:
    stack = "\n".join(f"at frame {index}" for index in range(20))
    event = Event(
        type="server-error",
        trace_id="trace-2",
        timestamp=clock.now,
        feature="checkout",
        route="/api/checkout",
        status=500,
        payload={"error": {"message": "boom", "stack": stack}},
    )

    rendered = format_event(event)

    assert rendered.startswith("**server-error** in `checkout` - /api/checkout")
    assert "Status: 500" in rendered
    assert "Error: boom" in rendered
    assert "at frame 7" in rendered
    assert "at frame 8" not in rendered


def test_batch_embeds_machine_readable_block(clock) -> None:
    events = [
        Event(type="rate-limit", trace_id="a", timestamp=clock.now, payload={"ip": "1.2.3.4"}),
        Event(type="server-error", trace_id="b", timestamp=clock.now),
    ]

    rendered = format_batch(events)

    assert rendered.startswith("**2 Spark Events**")
    assert "### Event 1" in rendered
    assert "### Event 2" in rendered
    block = rendered.split("```spark-events\n", 1)[1].rsplit("\n```", 1)[0]
    assert [item["traceId"] for item in json.loads(block)] == ["a", "b"]


def test_single_event_batch_has_no_numbered_sections(clock) -> None:
    rendered = format_batch([Event(type="unhandled-error", trace_id="c", timestamp=clock.now)])

    assert rendered.startswith("**Spark Event**")
    assert "### Event" not in rendered
