"""Verdict types produced by the admission pipeline.

A :class:`Verdict` is the single terminal output of one admission run.  It
records whether the upload was accepted, which stage rejected it and why, and
the ordered trail of :class:`StageEvent` records emitted on the way, so a
rejection can be explained without re-running any inspector.

The ``human_message`` is the only text that is ever shown to the client.  Raw
inspector output never appears here; it is logged internally by the pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class StageKind(str, Enum):
    """Pipeline stages, in execution order."""

    EXTENSION_CHECK = "extension_check"
    CONTENT_CHECK = "content_check"
    STRING_CHECK = "string_check"
    METADATA_CHECK = "metadata_check"
    AV_CHECK = "av_check"


class ReasonCode(str, Enum):
    """Machine-readable rejection reasons."""

    EXTENSION_NOT_ALLOWED = "extension_not_allowed"
    CONTENT_MISMATCH = "content_mismatch"
    STRING_MISMATCH = "string_mismatch"
    FORBIDDEN_CONTENT_DETECTED = "forbidden_content_detected"
    THREAT_DETECTED = "threat_detected"
    SCAN_ERROR = "scan_error"


class Outcome(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"


# Terse client-facing messages.  Keep these free of tool names and signatures.
REASON_MESSAGES: dict[ReasonCode, str] = {
    ReasonCode.EXTENSION_NOT_ALLOWED: "File extension is not allowed",
    ReasonCode.CONTENT_MISMATCH: "File description does not match the expected type",
    ReasonCode.STRING_MISMATCH: "Mismatching strings in file detected",
    ReasonCode.FORBIDDEN_CONTENT_DETECTED: "Forbidden content detected in file",
    ReasonCode.THREAT_DETECTED: "This file contains a virus. Aborting upload.",
    ReasonCode.SCAN_ERROR: "File could not be verified. Aborting upload.",
}

ACCEPTED_MESSAGE = "File uploaded successfully"


@dataclass(frozen=True)
class StageEvent:
    """One structured ``(stage, outcome, detail)`` record of a pipeline run.

    Attributes:
        stage: The stage that produced the event.
        outcome: ``"passed"`` or ``"rejected"``.
        detail: Short internal explanation (e.g. the descriptor that failed to
            match, or the failing probe).  Not sent to the client.
    """

    stage: StageKind
    outcome: str
    detail: str = ""


@dataclass(frozen=True)
class Verdict:
    """Immutable terminal result of one admission run.

    Build instances with :meth:`accepted` or :meth:`rejected` rather than the
    constructor so that ``outcome``, ``rejection_stage`` and ``reason_code``
    are always consistent with each other.
    """

    outcome: Outcome
    human_message: str
    rejection_stage: StageKind | None = None
    reason_code: ReasonCode | None = None
    events: tuple[StageEvent, ...] = field(default_factory=tuple)

    @classmethod
    def accepted(cls, events: tuple[StageEvent, ...] = ()) -> Verdict:
        return cls(outcome=Outcome.ACCEPTED, human_message=ACCEPTED_MESSAGE, events=events)

    @classmethod
    def rejected(
        cls,
        stage: StageKind,
        reason: ReasonCode,
        events: tuple[StageEvent, ...] = (),
    ) -> Verdict:
        return cls(
            outcome=Outcome.REJECTED,
            human_message=REASON_MESSAGES[reason],
            rejection_stage=stage,
            reason_code=reason,
            events=events,
        )

    @property
    def is_accepted(self) -> bool:
        return self.outcome is Outcome.ACCEPTED

    def explain(self) -> str:
        """Return a one-line internal summary of the run, for logs and audit."""
        trail = "; ".join(
            f"{e.stage.value}={e.outcome}" + (f" ({e.detail})" if e.detail else "")
            for e in self.events
        )
        if self.is_accepted:
            return f"accepted: {trail}"
        return f"rejected at {self.rejection_stage.value} [{self.reason_code.value}]: {trail}"
