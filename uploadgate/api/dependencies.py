"""FastAPI dependencies that assemble the admission service from settings.

The service is built once per process and reused; the policy itself is still
re-read per request by :class:`~uploadgate.core.policy.PolicyStore`.  Tests
replace the whole service with
``app.dependency_overrides[get_admission_service]``.
"""

from __future__ import annotations

import functools

from uploadgate.config import Settings, get_settings
from uploadgate.core.adapters import (
    BinwalkProbe,
    ClamdScanner,
    ClamscanScanner,
    ExifToolProbe,
    FileCommandSniffer,
    InspectorAdapter,
    LibmagicSniffer,
    MetadataInspector,
    StringsExtractor,
)
from uploadgate.core.pipeline import AdmissionPipeline
from uploadgate.core.policy import PolicyStore
from uploadgate.core.staging import StagingManager
from uploadgate.services.admission import AdmissionService


def build_content_sniffer(settings: Settings) -> InspectorAdapter:
    if settings.content_sniffer == "file":
        return FileCommandSniffer(settings.file_binary, timeout=settings.inspector_timeout_seconds)
    return LibmagicSniffer(timeout=settings.inspector_timeout_seconds)


def build_av_scanner(settings: Settings) -> InspectorAdapter:
    if settings.av_backend == "clamscan":
        return ClamscanScanner(settings.clamscan_binary, timeout=settings.av_timeout_seconds)
    return ClamdScanner(
        settings.clamav_host,
        settings.clamav_port,
        socket_path=settings.clamav_socket_path,
        timeout=settings.av_timeout_seconds,
    )


def build_pipeline(settings: Settings) -> AdmissionPipeline:
    timeout = settings.inspector_timeout_seconds
    return AdmissionPipeline(
        content_sniffer=build_content_sniffer(settings),
        string_extractor=StringsExtractor(
            settings.strings_binary,
            min_length=settings.strings_min_length,
            timeout=timeout,
        ),
        metadata_inspector=MetadataInspector(
            [
                ExifToolProbe(settings.exiftool_binary, timeout=timeout),
                BinwalkProbe(settings.binwalk_binary, timeout=timeout),
            ]
        ),
        av_scanner=build_av_scanner(settings),
    )


def build_admission_service(settings: Settings) -> AdmissionService:
    return AdmissionService(
        policy_store=PolicyStore(settings.policy_path, cache=settings.policy_cache),
        staging=StagingManager(
            settings.resolved_staging_dir,
            max_upload_bytes=settings.max_upload_bytes,
            collision_policy=settings.collision_policy,
        ),
        pipeline=build_pipeline(settings),
        destination_dir=settings.destination_dir,
    )


@functools.lru_cache(maxsize=1)
def get_admission_service() -> AdmissionService:
    """Return the process-wide :class:`AdmissionService`."""
    return build_admission_service(get_settings())
