"""Metadata and hidden-content inspection.

:class:`MetadataInspector` groups the sub-probes evaluated by the metadata
stage.  The default deployment uses two:

1. :class:`ExifToolProbe`: embedded metadata and tags (EXIF, XMP, IPTC,
   document properties).
2. :class:`BinwalkProbe`: signature scan across the whole file for embedded
   or appended secondary payloads (archive-in-image, polyglots, executables).

Both report free text that the pipeline checks against the forbidden-keyword
set.  The pipeline runs :attr:`MetadataInspector.probes` in order and stops at
the first probe that fails or reports forbidden content.
"""

from __future__ import annotations

import subprocess
from typing import Sequence

from uploadgate.core.adapters.base import CommandInspector, InspectionFinding, InspectorAdapter
from uploadgate.core.verdict import StageKind


class ExifToolProbe(CommandInspector):
    name = "exiftool"
    stage = StageKind.METADATA_CHECK

    def arguments(self) -> Sequence[str]:
        # -a: keep duplicate tags, -u: include unknown tags, -G1: group names.
        # --System:all drops the filesystem tags; they describe the staging
        # area rather than the upload.
        return ("-a", "-u", "-G1", "--System:all")


class BinwalkProbe(CommandInspector):
    name = "binwalk"
    stage = StageKind.METADATA_CHECK

    def interpret(self, completed: subprocess.CompletedProcess[str]) -> InspectionFinding:
        finding = super().interpret(completed)
        if finding.succeeded and not completed.stdout.strip():
            # binwalk always prints a header table; silence means it did not scan.
            return self.failed("binwalk produced no output", raw_output=completed.stdout)
        return finding


class MetadataInspector:
    """Ordered collection of metadata/hidden-content sub-probes."""

    stage = StageKind.METADATA_CHECK

    def __init__(self, probes: Sequence[InspectorAdapter]) -> None:
        if not probes:
            raise ValueError("MetadataInspector requires at least one probe")
        self._probes = tuple(probes)

    @property
    def probes(self) -> tuple[InspectorAdapter, ...]:
        return self._probes
