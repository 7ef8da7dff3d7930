"""Shared pytest configuration and fixtures for UploadGate tests.

Sets environment variables before any uploadgate module is imported so that
``uploadgate.config.get_settings()`` never points at real system paths, and
provides deterministic fake inspectors so no test runs ``file``, ``strings``,
``exiftool``, ``binwalk`` or ClamAV.
"""
from __future__ import annotations

import copy
import io
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Callable

import pytest

_TEST_ROOT = Path(tempfile.mkdtemp(prefix="uploadgate-tests-"))

# Set env vars before any uploadgate module is imported
os.environ.setdefault("UPLOADGATE_POLICY_PATH", str(_TEST_ROOT / "rules.json"))
os.environ.setdefault("UPLOADGATE_DESTINATION_DIR", str(_TEST_ROOT / "user_files"))
os.environ.setdefault("UPLOADGATE_ENVIRONMENT", "test")

from uploadgate.core.adapters.base import InspectionFinding, InspectorAdapter  # noqa: E402
from uploadgate.core.adapters.metadata import MetadataInspector  # noqa: E402
from uploadgate.core.pipeline import AdmissionPipeline  # noqa: E402
from uploadgate.core.policy import Policy, parse_policy  # noqa: E402
from uploadgate.core.staging import StagedFile, StagingManager  # noqa: E402
from uploadgate.core.verdict import StageKind  # noqa: E402


POLICY_DOCUMENT: dict[str, Any] = {
    "allowed_files": [
        {
            "extension": ".pdf",
            "description": "PDF document",
            "strings": ["%PDF-", "endobj"],
        },
        {
            "extension": ".png",
            "description": "PNG image data",
            "strings": ["IHDR"],
        },
        {
            "extension": ".txt",
            "description": "ASCII text",
            "strings": [],
        },
    ],
    "forbidden_keywords": ["ELF executable", "Zip archive data"],
}


class FakeInspector(InspectorAdapter):
    """Deterministic stand-in for an external inspector.

    Records every staged path it was asked to inspect, and checks that the
    staged file still exists at that moment.
    """

    def __init__(
        self,
        stage: StageKind,
        output: str = "",
        *,
        name: str = "fake",
        succeeded: bool = True,
        threats: tuple[str, ...] = (),
        raises: Exception | None = None,
    ) -> None:
        self.stage = stage
        self.name = name
        self._output = output
        self._succeeded = succeeded
        self._threats = threats
        self._raises = raises
        self.calls: list[Path] = []

    def inspect(self, staged: StagedFile) -> InspectionFinding:
        assert staged.staging_path.exists(), "inspector called on a missing staging file"
        self.calls.append(staged.staging_path)
        if self._raises is not None:
            raise self._raises
        if not self._succeeded:
            return self.failed(f"{self.name} unavailable")
        return self.ok(self._output, threats=self._threats)


class FakeInspectors:
    """The full set of fakes wired into one pipeline."""

    def __init__(
        self,
        *,
        sniffer: FakeInspector,
        strings: FakeInspector,
        exif: FakeInspector,
        binwalk: FakeInspector,
        av: FakeInspector,
    ) -> None:
        self.sniffer = sniffer
        self.strings = strings
        self.exif = exif
        self.binwalk = binwalk
        self.av = av

    def pipeline(self) -> AdmissionPipeline:
        return AdmissionPipeline(
            content_sniffer=self.sniffer,
            string_extractor=self.strings,
            metadata_inspector=MetadataInspector([self.exif, self.binwalk]),
            av_scanner=self.av,
        )

    def all(self) -> list[FakeInspector]:
        return [self.sniffer, self.strings, self.exif, self.binwalk, self.av]


def make_inspectors(
    *,
    sniffer: str | FakeInspector = "PDF document, version 1.4",
    strings: str | FakeInspector = "%PDF-1.4\n1 0 obj\nendobj\n",
    exif: str | FakeInspector = "[ExifTool] File Type : PDF",
    binwalk: str | FakeInspector = "DECIMAL       HEXADECIMAL     DESCRIPTION\n0             0x0             PDF document, version: \"1.4\"",
    av_threats: tuple[str, ...] = (),
    **overrides: FakeInspector,
) -> FakeInspectors:
    """Build fakes that accept a clean PDF unless told otherwise."""
    fakes = {
        "sniffer": FakeInspector(StageKind.CONTENT_CHECK, sniffer, name="sniffer"),
        "strings": FakeInspector(StageKind.STRING_CHECK, strings, name="strings"),
        "exif": FakeInspector(StageKind.METADATA_CHECK, exif, name="exiftool"),
        "binwalk": FakeInspector(StageKind.METADATA_CHECK, binwalk, name="binwalk"),
        "av": FakeInspector(
            StageKind.AV_CHECK, "stream: OK", name="clamd", threats=av_threats
        ),
    }
    fakes.update(overrides)
    # A ready-made fake may be passed in place of a slot's output text.
    for slot, given in (("sniffer", sniffer), ("strings", strings), ("exif", exif), ("binwalk", binwalk)):
        if isinstance(given, FakeInspector):
            fakes[slot] = given
    return FakeInspectors(**fakes)


@pytest.fixture
def policy_document() -> dict[str, Any]:
    return copy.deepcopy(POLICY_DOCUMENT)


@pytest.fixture
def policy() -> Policy:
    return parse_policy(POLICY_DOCUMENT)


@pytest.fixture
def write_policy(tmp_path: Path) -> Callable[[Any], Path]:
    """Return a helper that writes a policy document and returns its path."""

    def _write(document: Any, name: str = "rules.json") -> Path:
        path = tmp_path / name
        if isinstance(document, str):
            path.write_text(document, encoding="utf-8")
        else:
            path.write_text(json.dumps(document), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def staging_dir(tmp_path: Path) -> Path:
    return tmp_path / "staging"


@pytest.fixture
def destination_dir(tmp_path: Path) -> Path:
    return tmp_path / "user_files"


@pytest.fixture
def staging(staging_dir: Path) -> StagingManager:
    return StagingManager(staging_dir)


@pytest.fixture
def make_staged(staging: StagingManager) -> Callable[..., StagedFile]:
    def _make(name: str = "report.pdf", data: bytes = b"%PDF-1.4\n%fake\n") -> StagedFile:
        return staging.stage(io.BytesIO(data), name)

    return _make


@pytest.fixture
def inspectors() -> Callable[..., FakeInspectors]:
    """Factory for :class:`FakeInspectors`; see :func:`make_inspectors`."""
    return make_inspectors


@pytest.fixture
def fake_inspector() -> type[FakeInspector]:
    return FakeInspector
