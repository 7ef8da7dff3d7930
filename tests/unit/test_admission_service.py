"""Unit tests for uploadgate/services/admission.py.

Inspectors are deterministic fakes; staging and commit run against real
temporary directories so the filesystem effects can be asserted.

Coverage targets:
* Accepted upload: exactly one destination file, nothing left in staging.
* Rejected upload: nothing written to the destination, staging emptied.
* Policy is reloaded on every admission.
* ConfigError and StagingError propagate after the staged copy is discarded.
* Name collisions surface as DestinationExistsError.
* Cancellation still discards the staged copy, and a cancellation that lands
  during commit lets the placement finish first.
"""

from __future__ import annotations

import asyncio
import io
import os
import threading
from unittest.mock import patch

import pytest

from uploadgate.core.policy import ConfigError, PolicyStore
from uploadgate.core.staging import (
    DestinationExistsError,
    StagingManager,
    UploadTooLargeError,
)
from uploadgate.core.verdict import ReasonCode, StageKind
from uploadgate.services.admission import AdmissionService

PDF_BYTES = b"%PDF-1.4\n1 0 obj\nendobj\n"


@pytest.fixture
def policy_path(write_policy, policy_document):
    return write_policy(policy_document)


@pytest.fixture
def make_service(policy_path, staging, destination_dir, inspectors):
    def _make(fakes=None, *, staging_manager=None, path=None):
        fakes = fakes or inspectors()
        return AdmissionService(
            policy_store=PolicyStore(path or policy_path),
            staging=staging_manager or staging,
            pipeline=fakes.pipeline(),
            destination_dir=destination_dir,
        )

    return _make


def _listing(directory):
    return sorted(os.listdir(directory)) if directory.exists() else []


class TestAccepted:
    @pytest.mark.asyncio
    async def test_file_committed_once(self, make_service, staging_dir, destination_dir):
        result = await make_service().admit(io.BytesIO(PDF_BYTES), "report.pdf")

        assert result.verdict.is_accepted
        assert result.filename == "report.pdf"
        assert result.stored_path == destination_dir / "report.pdf"
        assert result.stored_path.read_bytes() == PDF_BYTES
        assert _listing(destination_dir) == ["report.pdf"]
        assert _listing(staging_dir) == []

    @pytest.mark.asyncio
    async def test_client_path_reduced_to_basename(self, make_service, destination_dir):
        result = await make_service().admit(io.BytesIO(PDF_BYTES), "../../etc/report.pdf")

        assert result.stored_path == destination_dir / "report.pdf"


class TestRejected:
    @pytest.mark.asyncio
    async def test_disallowed_extension_writes_nothing(
        self, make_service, inspectors, staging_dir, destination_dir
    ):
        fakes = inspectors()
        result = await make_service(fakes).admit(io.BytesIO(b"MZ"), "tool.exe")

        assert result.verdict.reason_code is ReasonCode.EXTENSION_NOT_ALLOWED
        assert result.stored_path is None
        assert _listing(destination_dir) == []
        assert _listing(staging_dir) == []
        assert all(fake.calls == [] for fake in fakes.all())

    @pytest.mark.asyncio
    async def test_forbidden_content_writes_nothing(
        self, make_service, inspectors, staging_dir, destination_dir
    ):
        fakes = inspectors(
            sniffer="PNG image data, 800 x 600",
            strings="IHDR\nIDAT\n",
            binwalk="0   0x0   PNG image\n4120   0x1018   ELF executable, 64-bit LSB",
        )
        result = await make_service(fakes).admit(io.BytesIO(b"\x89PNG"), "image.png")

        assert result.verdict.rejection_stage is StageKind.METADATA_CHECK
        assert result.verdict.reason_code is ReasonCode.FORBIDDEN_CONTENT_DETECTED
        assert _listing(destination_dir) == []
        assert _listing(staging_dir) == []

    @pytest.mark.asyncio
    async def test_threat_writes_nothing(self, make_service, inspectors, destination_dir):
        fakes = inspectors(av_threats=("Win.Test.EICAR_HDB-1",))
        result = await make_service(fakes).admit(io.BytesIO(PDF_BYTES), "report.pdf")

        assert result.verdict.reason_code is ReasonCode.THREAT_DETECTED
        assert _listing(destination_dir) == []


class TestPolicyReload:
    @pytest.mark.asyncio
    async def test_policy_edit_applies_to_next_upload(
        self, make_service, write_policy, policy_document, inspectors
    ):
        fakes = inspectors(sniffer="ASCII text", strings="hello\n")
        service = make_service(fakes)

        first = await service.admit(io.BytesIO(b"hello\n"), "notes.md")
        assert first.verdict.reason_code is ReasonCode.EXTENSION_NOT_ALLOWED

        policy_document["allowed_files"].append({"extension": ".md", "description": "ASCII text"})
        write_policy(policy_document)

        second = await service.admit(io.BytesIO(b"hello\n"), "notes.md")
        assert second.verdict.is_accepted


class TestOperationalErrors:
    @pytest.mark.asyncio
    async def test_config_error_propagates_and_discards(
        self, make_service, write_policy, staging_dir, destination_dir
    ):
        broken = write_policy("{not json", name="broken.json")
        service = make_service(path=broken)

        with pytest.raises(ConfigError):
            await service.admit(io.BytesIO(PDF_BYTES), "report.pdf")

        assert _listing(staging_dir) == []
        assert _listing(destination_dir) == []

    @pytest.mark.asyncio
    async def test_too_large_propagates(self, make_service, staging_dir):
        manager = StagingManager(staging_dir, max_upload_bytes=4)
        service = make_service(staging_manager=manager)

        with pytest.raises(UploadTooLargeError):
            await service.admit(io.BytesIO(PDF_BYTES), "report.pdf")

        assert _listing(staging_dir) == []

    @pytest.mark.asyncio
    async def test_collision_rejected(self, make_service, staging_dir, destination_dir):
        destination_dir.mkdir()
        (destination_dir / "report.pdf").write_bytes(b"existing")

        with pytest.raises(DestinationExistsError):
            await make_service().admit(io.BytesIO(PDF_BYTES), "report.pdf")

        assert (destination_dir / "report.pdf").read_bytes() == b"existing"
        assert _listing(staging_dir) == []

    @pytest.mark.asyncio
    async def test_commit_failure_discards(self, make_service, staging, staging_dir):
        with patch.object(staging, "commit", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                await make_service().admit(io.BytesIO(PDF_BYTES), "report.pdf")

        assert _listing(staging_dir) == []


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_during_pipeline_discards(
        self, make_service, inspectors, fake_inspector, staging_dir, destination_dir
    ):
        started = threading.Event()
        release = threading.Event()

        class _SlowAV(fake_inspector):
            def inspect(self, staged):
                started.set()
                release.wait(5)
                return self.ok("stream: OK")

        fakes = inspectors(av=_SlowAV(StageKind.AV_CHECK, "stream: OK", name="clamd"))
        task = asyncio.ensure_future(
            make_service(fakes).admit(io.BytesIO(PDF_BYTES), "report.pdf")
        )

        await asyncio.to_thread(started.wait, 5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        release.set()

        assert _listing(staging_dir) == []
        assert _listing(destination_dir) == []

    @pytest.mark.asyncio
    async def test_cancel_during_staging_discards(self, make_service, staging_dir):
        started = threading.Event()
        release = threading.Event()

        class _SlowStream(io.BytesIO):
            def read(self, size=-1):
                started.set()
                release.wait(5)
                return super().read(size)

        task = asyncio.ensure_future(
            make_service().admit(_SlowStream(PDF_BYTES), "report.pdf")
        )
        await asyncio.to_thread(started.wait, 5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        release.set()
        # Let the staging thread finish and the done-callback run.
        for _ in range(100):
            await asyncio.sleep(0.01)
            if _listing(staging_dir) == [] and started.is_set():
                break

        assert _listing(staging_dir) == []

    @pytest.mark.asyncio
    async def test_cancel_during_commit_finishes_placement(
        self, make_service, staging, staging_dir, destination_dir
    ):
        started = threading.Event()
        release = threading.Event()
        real_commit = staging.commit

        def _slow_commit(*args):
            started.set()
            release.wait(5)
            return real_commit(*args)

        with patch.object(staging, "commit", side_effect=_slow_commit):
            task = asyncio.ensure_future(
                make_service().admit(io.BytesIO(PDF_BYTES), "report.pdf")
            )
            await asyncio.to_thread(started.wait, 5)
            task.cancel()
            release.set()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert _listing(destination_dir) == ["report.pdf"]
        assert (destination_dir / "report.pdf").read_bytes() == PDF_BYTES
        assert _listing(staging_dir) == []
