"""AdmissionService: one upload from staging to commit or discard.

For each upload the service:

1. stages the incoming stream unconditionally (a private copy exists before
   any check runs, even for a disallowed extension),
2. loads the policy afresh from the :class:`~uploadgate.core.policy.PolicyStore`,
3. runs the :class:`~uploadgate.core.pipeline.AdmissionPipeline`,
4. commits the staged copy to the destination area only on ``Accepted``,
5. discards the staged copy on every exit path.

Security rejections come back as a :class:`~uploadgate.core.verdict.Verdict`.
Operational failures propagate as exceptions for the transport layer to map:
:class:`~uploadgate.core.policy.ConfigError` and
:class:`~uploadgate.core.staging.StagingError` (and its subclasses).

If the awaiting task is cancelled (client disconnect, server shutdown) the
staged copy is still discarded, including when cancellation lands while the
staging thread is still writing.  A cancellation that lands during commit
waits for the placement to finish, so the destination never receives a file
after cleanup has run.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from uploadgate.core.pipeline import AdmissionPipeline
from uploadgate.core.policy import PolicyStore
from uploadgate.core.staging import StagedFile, StagingManager
from uploadgate.core.verdict import Verdict

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdmissionResult:
    """Verdict plus where the file ended up, when it was accepted."""

    filename: str
    verdict: Verdict
    stored_path: Path | None = None


class AdmissionService:
    """Coordinates staging, policy loading, the pipeline, and commit.

    Args:
        policy_store: Source of the per-request policy.
        staging: Staging manager used for the private working copy.
        pipeline: The admission pipeline.
        destination_dir: Directory that receives accepted files.
    """

    def __init__(
        self,
        *,
        policy_store: PolicyStore,
        staging: StagingManager,
        pipeline: AdmissionPipeline,
        destination_dir: Path | str,
    ) -> None:
        self._policy_store = policy_store
        self._staging = staging
        self._pipeline = pipeline
        self._destination_dir = Path(destination_dir)

    @property
    def pipeline(self) -> AdmissionPipeline:
        return self._pipeline

    async def admit(self, stream: BinaryIO, filename: str) -> AdmissionResult:
        """Run one upload through the gate.

        Raises:
            ConfigError: The policy document could not be loaded.
            StagingError: Staging or commit failed (including
                :class:`~uploadgate.core.staging.UploadTooLargeError`,
                :class:`~uploadgate.core.staging.InvalidUploadError`, and
                :class:`~uploadgate.core.staging.DestinationExistsError`).
        """
        staged = await self._stage(stream, filename)
        try:
            policy = await asyncio.to_thread(self._policy_store.load)
            verdict = await self._pipeline.run(staged, policy)

            stored_path: Path | None = None
            if verdict.is_accepted:
                stored_path = await self._commit(staged)
            return AdmissionResult(
                filename=staged.original_filename,
                verdict=verdict,
                stored_path=stored_path,
            )
        finally:
            self._staging.discard(staged)

    async def _stage(self, stream: BinaryIO, filename: str) -> StagedFile:
        task = asyncio.ensure_future(asyncio.to_thread(self._staging.stage, stream, filename))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # The worker thread cannot be interrupted; clean up once it finishes.
            task.add_done_callback(self._discard_when_staged)
            raise

    async def _commit(self, staged: StagedFile) -> Path:
        task = asyncio.ensure_future(
            asyncio.to_thread(self._staging.commit, staged, self._destination_dir)
        )
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # Placement cannot be interrupted halfway; let it settle before the
            # caller's cleanup discards the staged copy.
            await asyncio.wait({task})
            if not task.cancelled() and task.exception() is None:
                logger.info(
                    "Upload committed before cancellation took effect: %s", task.result()
                )
            raise

    def _discard_when_staged(self, task: asyncio.Future) -> None:
        if task.cancelled() or task.exception() is not None:
            return
        logger.info("Discarding upload staged after cancellation: %s", task.result().staging_path)
        self._staging.discard(task.result())
