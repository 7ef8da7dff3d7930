"""Antivirus scanners with fail-closed behaviour.

Two backends implement the antivirus capability:

* :class:`ClamdScanner` streams the staged file to a running ``clamd``
  daemon with the ``INSTREAM`` command, over TCP or a UNIX socket.  No shared
  filesystem between the gateway and the daemon is required.
* :class:`ClamscanScanner` runs the standalone ``clamscan`` command.

**Fail-closed guarantee:** a connection failure, socket timeout, ``ERROR``
response, unexpected exit status, or unrecognised output is reported as
``succeeded=False``.  The pipeline rejects such files with ``scan_error``,
so an unavailable engine never silently admits an upload.

Usage::

    scanner = ClamdScanner(host="clamav", port=3310, timeout=120)
    finding = scanner.inspect(staged)
    if not finding.succeeded or finding.threat_found:
        ...
"""

from __future__ import annotations

import logging
import re
import subprocess
import time
from typing import Any, Sequence

import clamd

from uploadgate.core.adapters.base import CommandInspector, InspectionFinding, InspectorAdapter
from uploadgate.core.staging import StagedFile
from uploadgate.core.verdict import StageKind

logger = logging.getLogger(__name__)

_STATUS_OK = "OK"
_STATUS_FOUND = "FOUND"
_STATUS_ERROR = "ERROR"

# clamscan prints "<path>: <signature> FOUND" per detection.
_CLAMSCAN_FOUND = re.compile(r"^.*?:\s*(?P<name>\S.*?)\s+FOUND\s*$", re.MULTILINE)


def _parse_clamd_response(
    response: dict[str, tuple[str, str | None]],
) -> tuple[str, list[str]]:
    """Parse a clamd response dict into ``(status, threat_names)``.

    * ``("OK", None)``       – clean.
    * ``("FOUND", name)``    – threat *name* detected.
    * ``("ERROR", message)`` – the engine could not scan; ``"error"``.

    Any other shape, including an empty response, is an ``"error"``.
    """
    if not response:
        return "error", []

    threats: list[str] = []
    for _key, result in response.items():
        if not result or len(result) < 2:
            return "error", []
        code, detail = result[0], result[1]
        if code == _STATUS_FOUND:
            threats.append(detail or "UNKNOWN")
        elif code != _STATUS_OK:
            logger.warning(
                "ClamAV reported %s for key=%s detail=%s; treating as scan error",
                code,
                _key,
                detail,
            )
            return "error", []

    if threats:
        return "flagged", threats
    return "clean", []


class ClamdScanner(InspectorAdapter):
    """Antivirus adapter that talks to a clamd daemon.

    Each scan opens a fresh connection; clamd does not multiplex requests on
    one socket.

    Args:
        host: clamd hostname.  Defaults to ``"clamav"`` (Compose service name).
        port: clamd TCP port.
        socket_path: UNIX socket path; when set it takes precedence over
            *host*/*port*.
        timeout: Socket timeout in seconds, which bounds the whole scan.
    """

    name = "clamd"
    stage = StageKind.AV_CHECK

    def __init__(
        self,
        host: str = "clamav",
        port: int = 3310,
        *,
        socket_path: str | None = None,
        timeout: float = 120.0,
    ) -> None:
        self._host = host
        self._port = port
        self._socket_path = socket_path
        self._timeout = timeout

    def inspect(self, staged: StagedFile) -> InspectionFinding:
        start_ms = int(time.monotonic() * 1000)
        try:
            client = self._get_client()
            with open(staged.staging_path, "rb") as fh:
                response: dict[str, tuple[str, str | None]] = client.instream(fh)
        except clamd.ConnectionError as exc:
            return self.failed(f"ClamAV daemon unreachable ({self._connection_desc()}): {exc}")
        except Exception as exc:  # noqa: BLE001
            return self.failed(f"ClamAV INSTREAM scan failed ({self._connection_desc()}): {exc!r}")

        elapsed_ms = int(time.monotonic() * 1000) - start_ms
        status, threats = _parse_clamd_response(response)
        raw = repr(response)

        logger.info(
            "ClamAV scan complete filename=%s status=%s threats=%d duration_ms=%d",
            staged.original_filename,
            status,
            len(threats),
            elapsed_ms,
        )

        if status == "error":
            return self.failed(f"unexpected ClamAV response: {raw}", raw_output=raw)
        return self.ok(raw, threats=tuple(threats))

    def ping(self) -> bool:
        """Return ``True`` if clamd answers ``PING`` with ``PONG``.  Never raises."""
        try:
            return self._get_client().ping() == "PONG"
        except Exception as exc:  # noqa: BLE001
            logger.warning("ClamAV ping failed: %r", exc)
            return False

    def _get_client(self) -> Any:
        if self._socket_path is not None:
            return clamd.ClamdUnixSocket(self._socket_path, timeout=self._timeout)
        return clamd.ClamdNetworkSocket(self._host, self._port, timeout=self._timeout)

    def _connection_desc(self) -> str:
        if self._socket_path is not None:
            return f"unix:{self._socket_path}"
        return f"{self._host}:{self._port}"


class ClamscanScanner(CommandInspector):
    """Antivirus adapter that runs the ``clamscan`` command.

    ``clamscan`` exits ``0`` when clean, ``1`` when a virus was found, and
    ``2`` on error.  Signature names come from the ``FOUND`` lines; exit
    status ``1`` without one is treated as a scan error.
    """

    name = "clamscan"
    stage = StageKind.AV_CHECK
    ok_exit_codes = frozenset({0, 1})

    def arguments(self) -> Sequence[str]:
        return ("--no-summary", "--stdout")

    def interpret(self, completed: subprocess.CompletedProcess[str]) -> InspectionFinding:
        finding = super().interpret(completed)
        if not finding.succeeded:
            return finding

        threats = tuple(m.group("name") for m in _CLAMSCAN_FOUND.finditer(completed.stdout))
        if threats:
            logger.warning("clamscan detected threat(s): %s", ", ".join(threats))
            return self.ok(completed.stdout, threats=threats)
        if completed.returncode == 1:
            return self.failed(
                "clamscan reported infection without a signature name",
                raw_output=completed.stdout,
            )
        return self.ok(completed.stdout)
