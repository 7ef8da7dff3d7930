"""Unit tests for uploadgate/core/verdict.py."""

from __future__ import annotations

from dataclasses import FrozenInstanceError

import pytest

from uploadgate.core.verdict import (
    ACCEPTED_MESSAGE,
    REASON_MESSAGES,
    Outcome,
    ReasonCode,
    StageEvent,
    StageKind,
    Verdict,
)


def test_every_reason_has_a_message() -> None:
    assert set(REASON_MESSAGES) == set(ReasonCode)


def test_stage_order() -> None:
    assert [s.value for s in StageKind] == [
        "extension_check",
        "content_check",
        "string_check",
        "metadata_check",
        "av_check",
    ]


class TestVerdict:
    def test_accepted(self) -> None:
        verdict = Verdict.accepted()

        assert verdict.is_accepted
        assert verdict.outcome is Outcome.ACCEPTED
        assert verdict.human_message == ACCEPTED_MESSAGE
        assert verdict.rejection_stage is None
        assert verdict.reason_code is None

    def test_rejected(self) -> None:
        verdict = Verdict.rejected(StageKind.AV_CHECK, ReasonCode.THREAT_DETECTED)

        assert not verdict.is_accepted
        assert verdict.rejection_stage is StageKind.AV_CHECK
        assert verdict.reason_code is ReasonCode.THREAT_DETECTED
        assert verdict.human_message == REASON_MESSAGES[ReasonCode.THREAT_DETECTED]

    def test_is_immutable(self) -> None:
        verdict = Verdict.accepted()
        with pytest.raises(FrozenInstanceError):
            verdict.outcome = Outcome.REJECTED  # type: ignore[misc]

    def test_explain_accepted(self) -> None:
        events = (
            StageEvent(StageKind.EXTENSION_CHECK, "passed"),
            StageEvent(StageKind.CONTENT_CHECK, "passed", "PDF document"),
        )
        assert Verdict.accepted(events).explain() == (
            "accepted: extension_check=passed; content_check=passed (PDF document)"
        )

    def test_explain_rejected(self) -> None:
        events = (StageEvent(StageKind.EXTENSION_CHECK, "rejected", "no rule for '.exe'"),)
        explanation = Verdict.rejected(
            StageKind.EXTENSION_CHECK, ReasonCode.EXTENSION_NOT_ALLOWED, events
        ).explain()

        assert explanation.startswith("rejected at extension_check [extension_not_allowed]")
        assert "no rule for '.exe'" in explanation

    def test_messages_do_not_leak_tool_names(self) -> None:
        for message in REASON_MESSAGES.values():
            for tool in ("clamd", "clamscan", "exiftool", "binwalk", "libmagic", "strings"):
                assert tool not in message.lower()
