"""String extractor: printable text sequences embedded in a binary payload."""

from __future__ import annotations

from typing import Sequence

from uploadgate.core.adapters.base import CommandInspector
from uploadgate.core.verdict import StageKind


class StringsExtractor(CommandInspector):
    """Runs ``strings -a -n <min_length>`` over the whole staged file.

    Args:
        binary: Path or name of the ``strings`` executable.
        min_length: Shortest printable run to report.
        timeout: Seconds before the extraction is abandoned.
    """

    name = "strings"
    stage = StageKind.STRING_CHECK

    def __init__(self, binary: str = "strings", *, min_length: int = 4, timeout: float = 30.0) -> None:
        super().__init__(binary, timeout=timeout)
        self._min_length = min_length

    def arguments(self) -> Sequence[str]:
        return ("-a", "-n", str(self._min_length))
