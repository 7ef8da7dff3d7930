"""AdmissionPipeline: the accept/reject state machine for staged uploads.

:class:`AdmissionPipeline` runs a staged file through five stages in order:

1. **extension_check**: the lowercased extension must have a policy rule.
2. **content_check**: the content sniffer's description must contain the
   rule's expected content descriptor (case-insensitive substring).
3. **string_check**: the extracted strings must contain at least one of
   the rule's allowed substrings (vacuously satisfied when none are listed).
4. **metadata_check**: each metadata/hidden-content probe, in order, must
   succeed and report none of the forbidden keywords or the rule's forbidden
   contained names.
5. **av_check**: the antivirus scanner must succeed and report no
   threat.

States advance ``AWAITING_EXTENSION_CHECK → … → AWAITING_AV_CHECK →
ACCEPTED``; the first failing stage moves the run to the absorbing
``REJECTED`` state and no later stage runs.

**Fail-closed contract**: an inspector reporting ``succeeded=False`` and any
exception raised while a stage runs both produce ``Rejected(stage,
scan_error)``.  :meth:`AdmissionPipeline.run` always returns a
:class:`~uploadgate.core.verdict.Verdict`; stage errors never escape to the
caller.  Only task cancellation propagates, so the caller's cleanup runs.

Every stage is wrapped in an OpenTelemetry span and emits a structured
``(stage, outcome, detail)`` event that is both logged and carried on the
verdict.  Raw inspector output is logged at ``DEBUG`` only.

Inspectors are blocking; each call is dispatched with
:func:`asyncio.to_thread` so the event loop stays responsive while the run
awaits them one after another.

Usage::

    pipeline = AdmissionPipeline(
        content_sniffer=LibmagicSniffer(),
        string_extractor=StringsExtractor(),
        metadata_inspector=MetadataInspector([ExifToolProbe("exiftool"), BinwalkProbe("binwalk")]),
        av_scanner=ClamdScanner(),
    )
    verdict = await pipeline.run(staged, policy_store.load())
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Iterable

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from prometheus_client import Counter

from uploadgate.core.adapters.base import InspectionFinding, InspectorAdapter
from uploadgate.core.adapters.metadata import MetadataInspector
from uploadgate.core.policy import Policy, RuleEntry
from uploadgate.core.staging import StagedFile
from uploadgate.core.verdict import ReasonCode, StageEvent, StageKind, Verdict

logger = logging.getLogger(__name__)

tracer = trace.get_tracer(
    "uploadgate.pipeline",
    schema_url="https://opentelemetry.io/schemas/1.11.0",
)

_VERDICTS = Counter(
    "uploadgate_verdicts_total",
    "Admission verdicts by outcome, rejecting stage and reason",
    ["outcome", "stage", "reason"],
)

# Raw inspector output beyond this many characters is not logged.
_MAX_LOGGED_OUTPUT = 4000


class PipelineState(str, Enum):
    AWAITING_EXTENSION_CHECK = "awaiting_extension_check"
    AWAITING_CONTENT_CHECK = "awaiting_content_check"
    AWAITING_STRING_CHECK = "awaiting_string_check"
    AWAITING_METADATA_CHECK = "awaiting_metadata_check"
    AWAITING_AV_CHECK = "awaiting_av_check"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


@dataclass(frozen=True)
class StageRejection:
    """Returned by a stage function to stop the run."""

    reason: ReasonCode
    detail: str


@dataclass
class _Run:
    """Mutable bookkeeping for a single pipeline run."""

    staged: StagedFile
    policy: Policy
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: PipelineState = PipelineState.AWAITING_EXTENSION_CHECK
    rule: RuleEntry | None = None
    events: list[StageEvent] = field(default_factory=list)


StageFn = Callable[[_Run], Awaitable["StageRejection | None"]]


def normalise(text: str) -> str:
    return text.strip().lower()


def find_any(haystack: str, needles: Iterable[str]) -> str | None:
    """Return the first of *needles* found in *haystack*, case-insensitively."""
    lowered = haystack.lower()
    for needle in needles:
        if normalise(needle) and normalise(needle) in lowered:
            return needle
    return None


def strip_staging_path(output: str, staged: StagedFile) -> str:
    """Remove echoes of the staging location from inspector output.

    Tools such as binwalk print the scanned path; keywords must only match
    what the tool found inside the file.
    """
    path = staged.staging_path
    for fragment in (str(path), str(path.parent), path.name):
        output = output.replace(fragment, "")
    return output


def content_matches(sniffer_output: str, expected_descriptor: str) -> bool:
    """Case-insensitive substring test of the descriptor against sniffer output."""
    return normalise(expected_descriptor) in normalise(sniffer_output)


class AdmissionPipeline:
    """Sequences the admission stages over injected capability adapters.

    The pipeline holds no per-run state; one instance can serve concurrent
    runs.  The policy is passed to every :meth:`run` call explicitly.

    Args:
        content_sniffer: Adapter for the ``content_check`` stage.
        string_extractor: Adapter for the ``string_check`` stage.
        metadata_inspector: Ordered probes for the ``metadata_check`` stage.
        av_scanner: Adapter for the ``av_check`` stage.
    """

    def __init__(
        self,
        *,
        content_sniffer: InspectorAdapter,
        string_extractor: InspectorAdapter,
        metadata_inspector: MetadataInspector,
        av_scanner: InspectorAdapter,
    ) -> None:
        self._content_sniffer = content_sniffer
        self._string_extractor = string_extractor
        self._metadata_inspector = metadata_inspector
        self._av_scanner = av_scanner

    @property
    def av_scanner(self) -> InspectorAdapter:
        return self._av_scanner

    def _stages(self) -> tuple[tuple[PipelineState, StageKind, StageFn], ...]:
        return (
            (PipelineState.AWAITING_EXTENSION_CHECK, StageKind.EXTENSION_CHECK, self._check_extension),
            (PipelineState.AWAITING_CONTENT_CHECK, StageKind.CONTENT_CHECK, self._check_content),
            (PipelineState.AWAITING_STRING_CHECK, StageKind.STRING_CHECK, self._check_strings),
            (PipelineState.AWAITING_METADATA_CHECK, StageKind.METADATA_CHECK, self._check_metadata),
            (PipelineState.AWAITING_AV_CHECK, StageKind.AV_CHECK, self._check_antivirus),
        )

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def run(self, staged: StagedFile, policy: Policy) -> Verdict:
        """Evaluate *staged* against *policy* and return the verdict.

        Never raises for stage failures; see the module docstring.
        """
        run = _Run(staged=staged, policy=policy)
        start_ms = int(time.monotonic() * 1000)

        with tracer.start_as_current_span(
            "uploadgate.admission", kind=trace.SpanKind.INTERNAL
        ) as root_span:
            root_span.set_attribute("admission.run_id", run.run_id)
            root_span.set_attribute("admission.extension", staged.extension)
            root_span.set_attribute("admission.file_size_bytes", staged.size_bytes)

            verdict: Verdict | None = None
            for state, stage, step in self._stages():
                run.state = state
                rejection = await self._run_stage(run, stage, step)
                if rejection is not None:
                    run.state = PipelineState.REJECTED
                    verdict = Verdict.rejected(stage, rejection.reason, tuple(run.events))
                    break

            if verdict is None:
                run.state = PipelineState.ACCEPTED
                verdict = Verdict.accepted(tuple(run.events))

            elapsed_ms = int(time.monotonic() * 1000) - start_ms
            root_span.set_attribute("admission.outcome", verdict.outcome.value)
            root_span.set_attribute("admission.duration_ms", elapsed_ms)
            if not verdict.is_accepted:
                root_span.set_attribute("admission.rejection_stage", verdict.rejection_stage.value)
                root_span.set_attribute("admission.reason", verdict.reason_code.value)

        _VERDICTS.labels(
            outcome=verdict.outcome.value,
            stage=verdict.rejection_stage.value if verdict.rejection_stage else "",
            reason=verdict.reason_code.value if verdict.reason_code else "",
        ).inc()

        logger.info(
            "Admission complete: run_id=%s filename=%s %s duration_ms=%d",
            run.run_id,
            staged.original_filename,
            verdict.explain(),
            elapsed_ms,
        )
        return verdict

    # ------------------------------------------------------------------
    # Internal stage runner
    # ------------------------------------------------------------------

    async def _run_stage(
        self, run: _Run, stage: StageKind, step: StageFn
    ) -> StageRejection | None:
        """Run one stage inside a child span and record its event.

        Any ``Exception`` from *step* becomes a ``scan_error`` rejection.
        """
        with tracer.start_as_current_span(f"uploadgate.{stage.value}") as span:
            span.set_attribute("stage.name", stage.value)
            span.set_attribute("admission.run_id", run.run_id)

            try:
                rejection = await step(run)
            except Exception as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                logger.exception(
                    "Admission stage '%s' raised: run_id=%s", stage.value, run.run_id
                )
                rejection = StageRejection(
                    ReasonCode.SCAN_ERROR, f"{type(exc).__name__}: {exc}"
                )

            if rejection is None:
                self._record(run, StageEvent(stage, "passed"))
                return None

            span.set_attribute("stage.reason", rejection.reason.value)
            self._record(run, StageEvent(stage, "rejected", rejection.detail))
            return rejection

    @staticmethod
    def _record(run: _Run, event: StageEvent) -> None:
        run.events.append(event)
        log = logger.info if event.outcome == "passed" else logger.warning
        log(
            "Admission stage: run_id=%s stage=%s outcome=%s detail=%s",
            run.run_id,
            event.stage.value,
            event.outcome,
            event.detail,
        )

    async def _inspect(self, run: _Run, adapter: InspectorAdapter) -> InspectionFinding:
        finding = await asyncio.to_thread(adapter.inspect, run.staged)
        logger.debug(
            "Inspector output: run_id=%s probe=%s succeeded=%s output=%r",
            run.run_id,
            finding.probe,
            finding.succeeded,
            finding.raw_output[:_MAX_LOGGED_OUTPUT],
        )
        return finding

    @staticmethod
    def _scan_error(finding: InspectionFinding) -> StageRejection:
        return StageRejection(
            ReasonCode.SCAN_ERROR,
            f"{finding.probe} failed: {finding.failure_detail or 'unknown error'}",
        )

    # ------------------------------------------------------------------
    # Stage implementations
    # ------------------------------------------------------------------

    async def _check_extension(self, run: _Run) -> StageRejection | None:
        rule = run.policy.rule_for(run.staged.extension)
        if rule is None:
            return StageRejection(
                ReasonCode.EXTENSION_NOT_ALLOWED,
                f"extension {run.staged.extension or '<none>'!r} has no rule",
            )
        run.rule = rule
        return None

    async def _check_content(self, run: _Run) -> StageRejection | None:
        finding = await self._inspect(run, self._content_sniffer)
        if not finding.succeeded:
            return self._scan_error(finding)

        expected = run.rule.expected_content_descriptor
        if not content_matches(finding.raw_output, expected):
            return StageRejection(
                ReasonCode.CONTENT_MISMATCH, f"expected descriptor {expected!r} not found"
            )
        return None

    async def _check_strings(self, run: _Run) -> StageRejection | None:
        finding = await self._inspect(run, self._string_extractor)
        if not finding.succeeded:
            return self._scan_error(finding)

        allowed = run.rule.allowed_substrings
        # No configured markers means no marker is required.
        if not allowed:
            return None
        if find_any(finding.raw_output, allowed) is None:
            return StageRejection(
                ReasonCode.STRING_MISMATCH, f"none of {len(allowed)} allowed markers found"
            )
        return None

    async def _check_metadata(self, run: _Run) -> StageRejection | None:
        forbidden = sorted(run.policy.forbidden_keywords | run.rule.forbidden_contained_names)
        for probe in self._metadata_inspector.probes:
            finding = await self._inspect(run, probe)
            if not finding.succeeded:
                return self._scan_error(finding)

            hit = find_any(strip_staging_path(finding.raw_output, run.staged), forbidden)
            if hit is not None:
                return StageRejection(
                    ReasonCode.FORBIDDEN_CONTENT_DETECTED,
                    f"{finding.probe} output contains forbidden keyword {hit!r}",
                )
        return None

    async def _check_antivirus(self, run: _Run) -> StageRejection | None:
        finding = await self._inspect(run, self._av_scanner)
        if not finding.succeeded:
            return self._scan_error(finding)
        if finding.threat_found:
            return StageRejection(
                ReasonCode.THREAT_DETECTED,
                f"{finding.probe} reported {', '.join(finding.threats)}",
            )
        return None
