"""Tests for the progress event sink."""

from __future__ import annotations

import logging

import pytest

from provisioner.events import EventKind, EventSink, SetupEvent


class TestEventSink:
    """Tests for EventSink fan-out and history."""

    def test_subscribers_receive_events_in_order(self) -> None:
        sink = EventSink()
        received: list[SetupEvent] = []
        sink.subscribe(received.append)

        sink.phase_start("agentUser", "Phase 3: Agent User")
        sink.step("Checking for existing Agent User")
        sink.success("Agent User created", user_id="u1")

        assert [e.kind for e in received] == [EventKind.PHASE_START, EventKind.STEP, EventKind.SUCCESS]
        assert received == sink.history

    def test_events_carry_current_phase(self) -> None:
        sink = EventSink()

        sink.step("before any phase")
        sink.phase_start("license", "Phase 5: License Assignment")
        sink.warning("No available licenses")

        assert sink.history[0].phase is None
        assert sink.history[-1].phase == "license"
        assert sink.current_phase == "license"

    def test_of_kind(self) -> None:
        sink = EventSink()
        sink.skipped("Skipped by --skip-webhook flag")
        sink.error("boom")
        sink.fatal("boom")

        assert len(sink.of_kind(EventKind.SKIPPED)) == 1
        assert sink.of_kind(EventKind.WAIT) == []

    def test_wait_carries_remaining(self) -> None:
        event = EventSink().wait("Waiting", remaining=4.0)
        assert event.details == {"remaining": 4.0}

    def test_log_omits_secret_details(self, caplog: pytest.LogCaptureFixture) -> None:
        sink = EventSink()

        with caplog.at_level(logging.DEBUG, logger="provisioner.events"):
            sink.success("Client secret created", client_secret="hunter2", key_id="k1", name="x")

        record = caplog.records[-1]
        assert record.key_id == "k1"
        assert not hasattr(record, "client_secret")
        assert "hunter2" not in caplog.text
