"""Capability adapter interface and the shared subprocess runner.

All external inspectors (content sniffing, string extraction, metadata and
hidden-payload scanning, antivirus) implement :class:`InspectorAdapter`.  The
admission pipeline depends only on this interface, so tests substitute
deterministic fakes and deployments pick concrete backends from settings.

Adapters are **fail-closed**: they never raise for capability
failures.  A missing binary, a crash, a timeout, or an unexpected exit status
is returned as ``InspectionFinding(succeeded=False, ...)`` and the pipeline
rejects the upload.  Adapters must not modify the staged file.

Minimal fake for unit tests::

    class FakeSniffer(InspectorAdapter):
        name = "fake"
        stage = StageKind.CONTENT_CHECK

        def inspect(self, staged: StagedFile) -> InspectionFinding:
            return self.ok("PNG image data, 800 x 600")
"""

from __future__ import annotations

import abc
import logging
import subprocess
import time
from dataclasses import dataclass, field
from typing import Sequence

from uploadgate.core.staging import StagedFile
from uploadgate.core.verdict import StageKind

logger = logging.getLogger(__name__)

# Cap on how much of a tool's stderr is carried into failure_detail.
_MAX_DETAIL_CHARS = 500


@dataclass(frozen=True)
class InspectionFinding:
    """Normalised output of one inspector invocation.

    Attributes:
        stage: Pipeline stage the inspector serves.
        probe: Name of the concrete inspector (e.g. ``"exiftool"``).
        raw_output: Text produced by the inspector.  Logged internally only.
        succeeded: ``False`` when the inspector could not complete.
        failure_detail: Why the inspector failed, when ``succeeded`` is
            ``False``.
        threats: Signature names reported by antivirus inspectors.
    """

    stage: StageKind
    probe: str
    raw_output: str = ""
    succeeded: bool = True
    failure_detail: str | None = None
    threats: tuple[str, ...] = field(default_factory=tuple)

    @property
    def threat_found(self) -> bool:
        return bool(self.threats)


class InspectorAdapter(abc.ABC):
    """Abstract base class for capability adapters.

    Subclasses set the ``name`` and ``stage`` class attributes and implement
    :meth:`inspect`.  Implementations are called from worker threads and
    must not hold per-call state on ``self``.
    """

    name: str = "inspector"
    stage: StageKind

    @abc.abstractmethod
    def inspect(self, staged: StagedFile) -> InspectionFinding:
        """Inspect *staged* and return the raw findings.

        On any capability failure implementations **must** return a finding
        with ``succeeded=False`` rather than raising.
        """

    def ok(self, raw_output: str, threats: tuple[str, ...] = ()) -> InspectionFinding:
        return InspectionFinding(
            stage=self.stage, probe=self.name, raw_output=raw_output, threats=threats
        )

    def failed(self, detail: str, raw_output: str = "") -> InspectionFinding:
        logger.warning("Inspector %s failed: %s", self.name, detail)
        return InspectionFinding(
            stage=self.stage,
            probe=self.name,
            raw_output=raw_output,
            succeeded=False,
            failure_detail=detail,
        )


class CommandInspector(InspectorAdapter):
    """Base for inspectors backed by a command-line tool.

    Runs ``argv + [staged_path]`` with a hard timeout and captures stdout.
    Exit codes listed in ``ok_exit_codes`` are successes; anything else is a
    failure whose detail carries the (truncated) stderr.

    Args:
        binary: Executable name or path.
        timeout: Seconds before the process is killed and the inspection
            reported as failed.
    """

    ok_exit_codes: frozenset[int] = frozenset({0})

    def __init__(self, binary: str, *, timeout: float = 30.0) -> None:
        self._binary = binary
        self._timeout = timeout

    def arguments(self) -> Sequence[str]:
        """Extra arguments placed between the binary and the file path."""
        return ()

    def inspect(self, staged: StagedFile) -> InspectionFinding:
        completed = self.run(staged)
        if isinstance(completed, InspectionFinding):
            return completed
        return self.interpret(completed)

    def interpret(self, completed: subprocess.CompletedProcess[str]) -> InspectionFinding:
        """Map a finished process to a finding.  Subclasses may refine this."""
        if completed.returncode not in self.ok_exit_codes:
            return self.failed(
                f"{self.name} exited with status {completed.returncode}: "
                f"{completed.stderr.strip()[:_MAX_DETAIL_CHARS]}",
                raw_output=completed.stdout,
            )
        return self.ok(completed.stdout)

    def run(
        self, staged: StagedFile
    ) -> subprocess.CompletedProcess[str] | InspectionFinding:
        """Execute the tool; return a failure finding instead of raising."""
        argv = [self._binary, *self.arguments(), str(staged.staging_path)]
        start_ms = int(time.monotonic() * 1000)
        try:
            completed = subprocess.run(
                argv,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self._timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            return self.failed(f"{self.name} timed out after {self._timeout:g}s")
        except FileNotFoundError:
            return self.failed(f"{self.name} binary not found: {self._binary}")
        except OSError as exc:
            return self.failed(f"{self.name} could not be started: {exc}")

        logger.debug(
            "Inspector %s finished status=%d duration_ms=%d",
            self.name,
            completed.returncode,
            int(time.monotonic() * 1000) - start_ms,
        )
        return completed
