from __future__ import annotations

import argparse
import logging
import sys
from typing import List

from foldervault.backup import BackupReport, BackupRequest, Mode, run_backup, summarize_failures
from foldervault.constants import CODEC_NAMES, DEFAULT_ENVELOPE_VERSION, SUPPORTED_ENVELOPE_VERSIONS
from foldervault.errors import (
    ArgumentError,
    AuthenticationError,
    CapabilityError,
    CryptoInitError,
    FolderVaultError,
    PackError,
    PathError,
    UnpackError,
    VersionError,
)


# Operator-facing reason for each failure class
_REASONS = {
    ArgumentError: "Invalid arguments",
    PathError: "Invalid path",
    CapabilityError: "Strong cryptography unavailable",
    CryptoInitError: "Crypto initialization failed",
    PackError: "Packing failed",
    UnpackError: "Restore failed (corrupt archive)",
    VersionError: "Unsupported container version",
    AuthenticationError: "Authentication failed (wrong password or tampered file)",
}


class _Parser(argparse.ArgumentParser):
    def error(self, message):
        raise ArgumentError(message)


def _reason(exc: FolderVaultError) -> str:
    for cls in type(exc).__mro__:
        if cls in _REASONS:
            return _REASONS[cls]
    return "Error"


def _wait_for_enter(enabled: bool) -> None:
    """Block for one line of input so a double-clicked console stays readable."""
    if not enabled:
        return
    print("Press Enter to close...", flush=True)
    try:
        input()
    except EOFError:
        pass


def _print_report(report: BackupReport, *, quiet: bool) -> None:
    for label, line in summarize_failures(report):
        if label == "skipped":
            if not quiet:
                print(f"Skipped: {line}", file=sys.stderr)
        else:
            print(f"Warning: cannot pack {line}", file=sys.stderr)
    mib = report.bytes / (1024.0 * 1024.0)
    if report.mode is Mode.ENCRYPT:
        print(
            f"Backup complete: {report.files} file(s), {mib:.2f} MiB -> {report.destination} "
            f"(format v{report.envelope_version}, {report.elapsed:.1f}s)"
        )
    else:
        print(
            f"Restore complete: {report.files} file(s), {mib:.2f} MiB -> {report.destination} "
            f"({report.elapsed:.1f}s)"
        )


def build_parser() -> argparse.ArgumentParser:
    ap = _Parser(
        prog="foldervault",
        description="Back up a directory into one password-protected encrypted file, or restore it.",
        epilog=(
            "Archives from earlier runs stored inside the source directory under a different name "
            "are packed like any other file; list them with --exclude."
        ),
    )
    ap.add_argument("source", help="Directory to back up (e) or container file to restore (d)")
    ap.add_argument("destination", help="Container file to write (e) or directory to restore into (d)")
    ap.add_argument("password", help="Archive password")
    ap.add_argument("mode", help="e = encrypt (back up), d = decrypt (restore)")
    ap.add_argument("--exclude", action="append", default=[], metavar="NAME", help="Extra file/directory name to skip (repeatable)")
    ap.add_argument(
        "--format-version",
        type=int,
        choices=SUPPORTED_ENVELOPE_VERSIONS,
        default=DEFAULT_ENVELOPE_VERSION,
        help="Container format: 1 = PBKDF2/AES-256-CTR/HMAC, 2 = Argon2id/XChaCha20-Poly1305 (default)",
    )
    ap.add_argument("--codec", choices=sorted(CODEC_NAMES), default="deflate", help="Packed stream codec (default deflate)")
    ap.add_argument("--strict", action="store_true", help="Abort when any file cannot be packed")
    ap.add_argument("--quiet", action="store_true", help="limit outputs to summaries and warnings")
    ap.add_argument("--verbose", action="store_true", help="Enable debug logging")
    ap.add_argument("--no-wait", action="store_true", help="Do not wait for Enter before exiting")
    return ap


def main(argv: List[str] | None = None):
    if argv is None:
        argv = sys.argv[1:]
    wait = "--no-wait" not in argv
    code = 1
    try:
        args = build_parser().parse_args(argv)
        wait = not args.no_wait
        if args.verbose:
            logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s", stream=sys.stderr)
        request = BackupRequest.create(
            args.source,
            args.destination,
            args.password,
            args.mode,
            extra_excludes=args.exclude,
        )
        report = run_backup(
            request,
            version=args.format_version,
            codec_id=CODEC_NAMES[args.codec],
            strict=args.strict,
        )
        _print_report(report, quiet=args.quiet)
        code = 0
    except FolderVaultError as exc:
        print(f"Error: {_reason(exc)}: {exc}", file=sys.stderr)
    except OSError as exc:
        print(f"Error: I/O failure: {exc}", file=sys.stderr)
    _wait_for_enter(wait)
    sys.exit(code)


if __name__ == "__main__":
    main()
