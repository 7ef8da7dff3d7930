"""Content sniffers: determine a file's true type independent of its name.

Two backends produce the same free-text, libmagic-style description (for
example ``"PNG image data, 800 x 600, 8-bit/color RGBA, non-interlaced"``):

* :class:`LibmagicSniffer` calls libmagic in-process through python-magic.
* :class:`FileCommandSniffer` runs ``file -b`` in a subprocess.

libmagic has no timeout of its own, so :class:`LibmagicSniffer` runs it on a
worker thread and gives up after ``timeout`` seconds.  The thread may keep
running in the background, but the run is reported as failed and the upload
rejected.
"""

from __future__ import annotations

import concurrent.futures
from typing import Sequence

from uploadgate.core.adapters.base import CommandInspector, InspectionFinding, InspectorAdapter
from uploadgate.core.staging import StagedFile
from uploadgate.core.verdict import StageKind

# Shared by all LibmagicSniffer instances; libmagic calls are short-lived.
_MAGIC_EXECUTOR = concurrent.futures.ThreadPoolExecutor(
    max_workers=4, thread_name_prefix="libmagic"
)


def _describe(path: str) -> str:
    # Imported here so a host without libmagic fails the inspection, not startup.
    import magic

    return magic.from_file(path)


class LibmagicSniffer(InspectorAdapter):
    """Content sniffer backed by python-magic."""

    name = "libmagic"
    stage = StageKind.CONTENT_CHECK

    def __init__(self, *, timeout: float = 30.0) -> None:
        self._timeout = timeout

    def inspect(self, staged: StagedFile) -> InspectionFinding:
        future = _MAGIC_EXECUTOR.submit(_describe, str(staged.staging_path))
        try:
            description = future.result(timeout=self._timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            return self.failed(f"libmagic timed out after {self._timeout:g}s")
        except Exception as exc:  # noqa: BLE001
            return self.failed(f"libmagic failed: {exc}")

        if not description:
            return self.failed("libmagic returned an empty description")
        return self.ok(description)


class FileCommandSniffer(CommandInspector):
    """Content sniffer backed by the ``file`` command."""

    name = "file"
    stage = StageKind.CONTENT_CHECK

    def arguments(self) -> Sequence[str]:
        # -b: omit the filename prefix, which would otherwise echo the
        # staging path (and its extension) into the output being matched.
        return ("-b",)
