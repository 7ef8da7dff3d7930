"""Staging manager: private working copies of uploads and atomic commit.

Every upload is written to a uniquely-named, owner-only file in the staging
directory before any inspector sees it.  The staged copy is read-only for the
rest of the run and leaves the staging area exactly once: either
:meth:`StagingManager.commit` moves it into the destination area, or
:meth:`StagingManager.discard` deletes it.  :meth:`StagingManager.staged`
wraps both in a context manager so no exit path can orphan a staging file.

Commit is atomic.  The staging directory must live on the same filesystem as
the destination (the default places it in ``<destination>/.staging``) so that
placement is a single ``link``/``rename`` and other readers never observe a
partially-written file.

Collision policy
----------------
``reject`` (default)
    ``os.link`` the staged file to the destination name, which fails
    atomically with :class:`DestinationExistsError` if the name is taken.
``overwrite``
    ``os.replace``; the newest accepted upload wins.
``uniquify``
    Try ``name.ext``, ``name-1.ext``, ``name-2.ext`` … with the same atomic
    no-clobber link until one succeeds.
"""

from __future__ import annotations

import contextlib
import errno
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterator, Literal

logger = logging.getLogger(__name__)

CollisionPolicy = Literal["reject", "overwrite", "uniquify"]

_CHUNK_SIZE = 1024 * 1024
_MAX_UNIQUIFY_ATTEMPTS = 1000


class StagingError(OSError):
    """Raised when an upload cannot be staged or committed."""


class UploadTooLargeError(StagingError):
    """Raised when an upload exceeds the configured size limit."""


class InvalidUploadError(StagingError):
    """Raised when the upload has no usable filename."""


class DestinationExistsError(StagingError):
    """Raised by ``commit`` under the ``reject`` policy when the name is taken."""


@dataclass(frozen=True)
class StagedFile:
    """An exclusively-owned working copy of one upload.

    Attributes:
        original_filename: Client-supplied name, reduced to its basename.
        extension: Lowercased extension including the leading dot, or ``""``.
        staging_path: Location of the private copy.
        size_bytes: Number of bytes received.
    """

    original_filename: str
    extension: str
    staging_path: Path
    size_bytes: int


def sanitise_filename(name: str) -> str:
    """Return the basename of a client-supplied filename.

    Both separators are handled because browsers on Windows may send full
    paths.  Raises :class:`InvalidUploadError` when nothing usable remains.
    """
    base = name.replace("\\", "/").rsplit("/", 1)[-1].strip().replace("\x00", "")
    if base in ("", ".", ".."):
        raise InvalidUploadError(f"unusable upload filename {name!r}")
    return base


def extension_of(filename: str) -> str:
    return os.path.splitext(filename)[1].lower()


class StagingManager:
    """Creates, commits, and discards :class:`StagedFile` objects.

    Args:
        staging_dir: Private working directory.  Created (mode ``0700``) if
            missing.
        max_upload_bytes: Optional size limit enforced while streaming.
        collision_policy: Behaviour of :meth:`commit` when the destination
            name exists.
    """

    def __init__(
        self,
        staging_dir: Path | str,
        *,
        max_upload_bytes: int | None = None,
        collision_policy: CollisionPolicy = "reject",
    ) -> None:
        self._staging_dir = Path(staging_dir)
        self._max_upload_bytes = max_upload_bytes
        self._collision_policy = collision_policy

    @property
    def staging_dir(self) -> Path:
        return self._staging_dir

    # ------------------------------------------------------------------
    # stage / discard
    # ------------------------------------------------------------------

    def stage(self, stream: BinaryIO, suggested_name: str) -> StagedFile:
        """Copy *stream* into a new private staging file.

        Raises:
            InvalidUploadError: If *suggested_name* has no usable basename.
            UploadTooLargeError: If the stream exceeds ``max_upload_bytes``.
            StagingError: On any write failure.  The partial file is removed
                before the exception propagates.
        """
        filename = sanitise_filename(suggested_name)
        extension = extension_of(filename)

        try:
            self._staging_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix="upload-", suffix=extension, dir=self._staging_dir
            )
        except OSError as exc:
            raise StagingError(f"cannot create staging file: {exc}") from exc

        path = Path(tmp_name)
        size = 0
        try:
            with os.fdopen(fd, "wb") as out:
                while True:
                    chunk = stream.read(_CHUNK_SIZE)
                    if not chunk:
                        break
                    size += len(chunk)
                    if self._max_upload_bytes is not None and size > self._max_upload_bytes:
                        raise UploadTooLargeError(
                            f"upload exceeds {self._max_upload_bytes} bytes"
                        )
                    out.write(chunk)
        except BaseException as exc:
            # Covers cancellation too: a partially received upload is never kept.
            path.unlink(missing_ok=True)
            if isinstance(exc, StagingError) or not isinstance(exc, OSError):
                raise
            raise StagingError(f"cannot write staging file: {exc}") from exc

        staged = StagedFile(
            original_filename=filename,
            extension=extension,
            staging_path=path,
            size_bytes=size,
        )
        logger.debug(
            "Staged upload filename=%s path=%s size=%d", filename, path, size
        )
        return staged

    def discard(self, staged: StagedFile) -> None:
        """Remove the staged copy.  Safe to call repeatedly and after commit."""
        try:
            staged.staging_path.unlink(missing_ok=True)
        except OSError as exc:
            logger.error(
                "Failed to discard staging file path=%s error=%r",
                staged.staging_path,
                exc,
            )

    @contextlib.contextmanager
    def staged(self, stream: BinaryIO, suggested_name: str) -> Iterator[StagedFile]:
        """Stage *stream* and guarantee :meth:`discard` when the block exits."""
        staged_file = self.stage(stream, suggested_name)
        try:
            yield staged_file
        finally:
            self.discard(staged_file)

    # ------------------------------------------------------------------
    # commit
    # ------------------------------------------------------------------

    def commit(self, staged: StagedFile, destination_dir: Path | str) -> Path:
        """Atomically move *staged* into *destination_dir*.

        Returns:
            The final path of the accepted file.

        Raises:
            DestinationExistsError: Under the ``reject`` policy when the name
                is already taken, or when ``uniquify`` runs out of candidates.
            StagingError: On any other filesystem failure.  The staged copy is
                left in place for :meth:`discard`.
        """
        dest_dir = Path(destination_dir)
        try:
            dest_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StagingError(f"cannot create destination {dest_dir}: {exc}") from exc

        target = dest_dir / staged.original_filename

        if self._collision_policy == "overwrite":
            try:
                os.replace(staged.staging_path, target)
            except OSError as exc:
                raise StagingError(f"cannot commit {staged.original_filename}: {exc}") from exc
            final = target
        elif self._collision_policy == "uniquify":
            final = self._link_unique(staged, target)
        else:
            if not self._link_no_clobber(staged, target):
                raise DestinationExistsError(
                    f"destination already contains {staged.original_filename!r}"
                )
            final = target

        logger.info(
            "Committed upload filename=%s destination=%s size=%d",
            staged.original_filename,
            final,
            staged.size_bytes,
        )
        return final

    def _link_unique(self, staged: StagedFile, target: Path) -> Path:
        stem, suffix = os.path.splitext(target.name)
        for attempt in range(_MAX_UNIQUIFY_ATTEMPTS):
            candidate = target if attempt == 0 else target.with_name(f"{stem}-{attempt}{suffix}")
            if self._link_no_clobber(staged, candidate):
                return candidate
        raise DestinationExistsError(
            f"no free destination name for {staged.original_filename!r}"
        )

    def _link_no_clobber(self, staged: StagedFile, target: Path) -> bool:
        """Hard-link then unlink: atomic placement that never replaces a file.

        Returns ``False`` if *target* already exists.
        """
        try:
            os.link(staged.staging_path, target)
        except FileExistsError:
            return False
        except OSError as exc:
            if exc.errno == errno.EXDEV:
                raise StagingError(
                    "staging and destination directories must share a filesystem"
                ) from exc
            raise StagingError(f"cannot commit {staged.original_filename}: {exc}") from exc

        staged.staging_path.unlink(missing_ok=True)
        return True
