from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from .capability import require_strong_crypto
from .constants import DEFAULT_CODEC_ID, DEFAULT_ENVELOPE_VERSION, TEMP_ARCHIVE_SUFFIX
from .envelope import DeliveryMode, EnvelopeReader, encrypt_file
from .errors import ArgumentError, PackError, PathError
from .packer import pack_tree, unpack_stream
from .walker import ExclusionRules, TreeEntry


log = logging.getLogger(__name__)


class Mode(str, Enum):
    ENCRYPT = "e"
    DECRYPT = "d"


@dataclass(frozen=True)
class BackupRequest:
    """One run's inputs, validated and with its exclusion rules fixed."""

    source: str
    destination: str
    password: str = field(repr=False)
    mode: Mode
    rules: ExclusionRules
    temp_archive_name: Optional[str] = None

    @classmethod
    def create(
        cls,
        source: str,
        destination: str,
        password: str,
        mode,
        *,
        extra_excludes: Iterable[str] = (),
        now: Optional[float] = None,
    ) -> "BackupRequest":
        """Validate inputs and compute the run's exclusion rules.

        Args:
            source: Directory to back up (encrypt) or container file (decrypt).
            destination: Container file to write (encrypt) or restore root (decrypt).
            password: Non-empty password.
            mode: ``"e"``/``"d"`` or a :class:`Mode`.
            extra_excludes: Additional basenames never packed.
            now: Clock override (seconds) used to name the temporary archive.

        Raises:
            ArgumentError: Unknown mode or empty password.
            PathError: Source/destination do not fit the mode.
        """
        try:
            mode = Mode(mode)
        except ValueError:
            raise ArgumentError(f"Invalid mode {mode!r}; expected 'e' (encrypt) or 'd' (decrypt)") from None
        if not isinstance(password, str) or not password:
            raise ArgumentError("Password must not be empty")
        source = os.fspath(source)
        destination = os.fspath(destination)
        if not source or not destination:
            raise ArgumentError("Source and destination paths are required")

        if mode is Mode.ENCRYPT:
            if os.path.isdir(destination):
                raise PathError(f"Destination must be a file path, not a directory: {destination}")
            if not os.path.isdir(source):
                raise PathError(f"Source is not a directory: {source}")
            temp_name = _temp_archive_name(source, now)
            rules = ExclusionRules.for_run(
                destination_name=os.path.basename(os.path.normpath(destination)),
                temp_archive_name=temp_name,
                extra=extra_excludes,
            )
            return cls(source, destination, password, mode, rules, temp_name)

        if not os.path.isfile(source):
            raise PathError(f"Source is not a container file: {source}")
        if os.path.lexists(destination) and not os.path.isdir(destination):
            raise PathError(f"Restore destination exists and is not a directory: {destination}")
        return cls(source, destination, password, mode, ExclusionRules.for_run(extra=extra_excludes))

    @property
    def temp_archive_path(self) -> Optional[str]:
        if self.temp_archive_name is None:
            return None
        return os.path.join(self.source, self.temp_archive_name)


def _temp_archive_name(source: str, now: Optional[float]) -> str:
    millis = int((time.time() if now is None else now) * 1000)
    name = f"{millis}{TEMP_ARCHIVE_SUFFIX}"
    while os.path.lexists(os.path.join(source, name)):
        millis += 1
        name = f"{millis}{TEMP_ARCHIVE_SUFFIX}"
    return name


@dataclass
class BackupReport:
    mode: Mode
    destination: str
    files: int = 0
    bytes: int = 0
    unreadable: List[TreeEntry] = field(default_factory=list)
    soft_skipped: List[TreeEntry] = field(default_factory=list)
    envelope_version: Optional[int] = None
    elapsed: float = 0.0


def run_backup(
    request: BackupRequest,
    *,
    version: int = DEFAULT_ENVELOPE_VERSION,
    codec_id: int = DEFAULT_CODEC_ID,
    strict: bool = False,
) -> BackupReport:
    """Run one encrypt or decrypt operation described by ``request``."""
    require_strong_crypto()
    t0 = time.time()
    if request.mode is Mode.ENCRYPT:
        report = _encrypt(request, version=version, codec_id=codec_id, strict=strict)
    else:
        report = _decrypt(request)
    report.elapsed = time.time() - t0
    return report


def _encrypt(request: BackupRequest, *, version: int, codec_id: int, strict: bool) -> BackupReport:
    temp_path = request.temp_archive_path
    try:
        # Exclusive create: the name was chosen to be free and must not be reused
        with open(temp_path, "xb") as sink:
            result = pack_tree(request.source, sink, request.rules, codec_id)
        failures = result.unreadable
        if failures and (strict or not result.packed):
            first = failures[0]
            raise PackError(
                f"{len(failures)} file(s) could not be packed, e.g. {first.rel_path}: {first.reason}"
            )
        encrypt_file(temp_path, request.destination, request.password, version)
    finally:
        _remove_temp(temp_path)
    log.debug("packed %d file(s), %d bytes", len(result.packed), result.bytes_packed)
    return BackupReport(
        mode=request.mode,
        destination=request.destination,
        files=len(result.packed),
        bytes=result.bytes_packed,
        unreadable=list(result.unreadable),
        soft_skipped=list(result.soft_skipped),
        envelope_version=version,
    )


def _remove_temp(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        log.warning("could not delete temporary archive %s: %s", path, exc)


def _decrypt(request: BackupRequest) -> BackupReport:
    with EnvelopeReader(request.source, request.password, DeliveryMode.VERIFIED) as reader:
        result = unpack_stream(reader.plaintext(), request.destination)
        version = reader.header.version
    return BackupReport(
        mode=request.mode,
        destination=request.destination,
        files=len(result.restored),
        bytes=result.bytes_restored,
        envelope_version=version,
    )


def summarize_failures(report: BackupReport) -> List[Tuple[str, str]]:
    """Return (label, line) pairs describing skipped or unreadable paths."""
    lines: List[Tuple[str, str]] = []
    for e in report.soft_skipped:
        lines.append(("skipped", f"{e.rel_path} ({e.reason})"))
    for e in report.unreadable:
        lines.append(("unreadable", f"{e.rel_path} ({e.reason})"))
    return lines
