from __future__ import annotations

import contextlib
import io
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from foldervault.backup import BackupRequest, Mode, run_backup, summarize_failures
from foldervault.cli import _print_report
from foldervault.constants import CODEC_NONE, ENVELOPE_V1, ENVELOPE_V2
from foldervault.errors import (
    ArgumentError,
    AuthenticationError,
    CapabilityError,
    PackError,
    PathError,
)


def _tree(root: Path):
    return {
        p.relative_to(root).as_posix(): p.read_bytes()
        for p in sorted(root.rglob("*"))
        if p.is_file()
    }


def _can_symlink(base: Path) -> bool:
    probe = base / "probe-link"
    try:
        os.symlink(str(base), probe)
    except (OSError, NotImplementedError, AttributeError):
        return False
    os.remove(probe)
    return True


class BackupTests(unittest.TestCase):
    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.base = Path(tmp.name)
        self.src = self.base / "src"
        (self.src / "sub").mkdir(parents=True)
        (self.src / "a.txt").write_bytes(b"hello")
        (self.src / "sub" / "b.txt").write_bytes(b"world")

    def _encrypt(self, dest: Path, password: str = "p@ss", **kw):
        extra = kw.pop("extra_excludes", ())
        req = BackupRequest.create(str(self.src), str(dest), password, "e", extra_excludes=extra)
        kw.setdefault("version", ENVELOPE_V1)
        return run_backup(req, **kw)

    def _decrypt(self, container: Path, dest: Path, password: str = "p@ss"):
        return run_backup(BackupRequest.create(str(container), str(dest), password, "d"))

    def _temp_archives(self):
        return sorted(p.name for p in self.src.rglob("*.fvpack"))

    def test_backup_and_restore_two_files(self):
        out = self.base / "out.enc"
        report = self._encrypt(out, version=ENVELOPE_V2)
        self.assertEqual(report.mode, Mode.ENCRYPT)
        self.assertEqual(report.files, 2)
        self.assertEqual(report.bytes, 10)
        self.assertEqual(report.envelope_version, ENVELOPE_V2)
        self.assertTrue(out.is_file())
        self.assertEqual(self._temp_archives(), [])

        restored = self.base / "restored"
        report = self._decrypt(out, restored)
        self.assertEqual(report.mode, Mode.DECRYPT)
        self.assertEqual(report.files, 2)
        self.assertEqual(report.envelope_version, ENVELOPE_V2)
        self.assertEqual(_tree(restored), {"a.txt": b"hello", "sub/b.txt": b"world"})

        with self.assertRaises(AuthenticationError):
            self._decrypt(out, self.base / "wrong", password="wrong")
        self.assertEqual(_tree(self.base / "wrong") if (self.base / "wrong").exists() else {}, {})

    def test_uncompressed_v1_roundtrip(self):
        out = self.base / "plain.enc"
        self._encrypt(out, codec_id=CODEC_NONE)
        restored = self.base / "restored"
        self._decrypt(out, restored)
        self.assertEqual(_tree(restored), _tree(self.src))

    def test_destination_inside_source_is_never_packed(self):
        out = self.src / "out.enc"
        self._encrypt(out)
        first = out.read_bytes()
        self._encrypt(out)
        self.assertTrue(out.is_file())
        self.assertEqual(self._temp_archives(), [])

        restored = self.base / "restored"
        report = self._decrypt(out, restored)
        self.assertEqual(report.files, 2)
        self.assertEqual(sorted(_tree(restored)), ["a.txt", "sub/b.txt"])
        self.assertNotEqual(first, out.read_bytes())

    def test_trash_and_volume_metadata_are_excluded(self):
        (self.src / "$RECYCLE.BIN").mkdir()
        (self.src / "$RECYCLE.BIN" / "x.txt").write_bytes(b"deleted")
        (self.src / ".fseventsd").mkdir()
        (self.src / ".fseventsd" / "log").write_bytes(b"meta")
        out = self.base / "out.enc"
        report = self._encrypt(out)
        self.assertEqual(report.files, 2)

    def test_earlier_archives_need_explicit_exclude(self):
        (self.src / "old.enc").write_bytes(b"previous backup")
        out = self.base / "out.enc"
        self.assertEqual(self._encrypt(out).files, 3)
        self.assertEqual(self._encrypt(out, extra_excludes=["old.enc"]).files, 2)

    def test_restore_overwrites_existing_files(self):
        out = self.base / "out.enc"
        self._encrypt(out)
        restored = self.base / "restored"
        restored.mkdir()
        (restored / "a.txt").write_bytes(b"stale content that is longer")
        (restored / "extra.txt").write_bytes(b"kept")
        self._decrypt(out, restored)
        self.assertEqual((restored / "a.txt").read_bytes(), b"hello")
        self.assertEqual((restored / "extra.txt").read_bytes(), b"kept")

    def test_temp_archive_removed_when_encryption_fails(self):
        out = self.base / "out.enc"
        with mock.patch("foldervault.backup.encrypt_file", side_effect=OSError(28, "No space left on device")):
            with self.assertRaises(OSError):
                self._encrypt(out)
        self.assertEqual(self._temp_archives(), [])
        self.assertFalse(out.exists())

    def test_capability_checked_before_any_work(self):
        out = self.base / "out.enc"
        with mock.patch(
            "foldervault.backup.require_strong_crypto", side_effect=CapabilityError("AES-256 not permitted")
        ), mock.patch("foldervault.backup.pack_tree") as pack:
            with self.assertRaises(CapabilityError):
                self._encrypt(out)
            pack.assert_not_called()
        self.assertEqual(self._temp_archives(), [])
        self.assertFalse(out.exists())

    def test_unreadable_entries_are_reported(self):
        if not _can_symlink(self.base):
            self.skipTest("cannot create symlinks here")
        os.symlink(str(self.src / "a.txt"), self.src / "link.txt")
        out = self.base / "out.enc"
        report = self._encrypt(out)
        self.assertEqual(report.files, 2)
        self.assertEqual([e.rel_path for e in report.unreadable], ["link.txt"])
        (label, line), = summarize_failures(report)
        self.assertEqual(label, "unreadable")
        self.assertTrue(line.startswith("link.txt"))

    def test_unlistable_volume_metadata_is_soft_skipped(self):
        (self.src / "System Volume Information").mkdir()
        (self.src / "System Volume Information" / "IndexerVolumeGuid").write_bytes(b"guid")
        real_scandir = os.scandir

        def scandir(path="."):
            if os.path.basename(os.fspath(path)) == "System Volume Information":
                raise PermissionError(13, "Permission denied", os.fspath(path))
            return real_scandir(path)

        out = self.base / "out.enc"
        with mock.patch("os.scandir", side_effect=scandir):
            report = self._encrypt(out, strict=True)
        self.assertEqual(report.files, 2)
        self.assertEqual(report.unreadable, [])
        self.assertEqual([e.rel_path for e in report.soft_skipped], ["System Volume Information"])
        (label, line), = summarize_failures(report)
        self.assertEqual(label, "skipped")

        stderr = io.StringIO()
        with contextlib.redirect_stderr(stderr), contextlib.redirect_stdout(io.StringIO()):
            _print_report(report, quiet=False)
        self.assertIn("Skipped: System Volume Information", stderr.getvalue())
        stderr = io.StringIO()
        with contextlib.redirect_stderr(stderr), contextlib.redirect_stdout(io.StringIO()):
            _print_report(report, quiet=True)
        self.assertEqual(stderr.getvalue(), "")

    def test_strict_mode_aborts_on_unreadable(self):
        if not _can_symlink(self.base):
            self.skipTest("cannot create symlinks here")
        os.symlink(str(self.src / "a.txt"), self.src / "link.txt")
        out = self.base / "out.enc"
        with self.assertRaises(PackError):
            self._encrypt(out, strict=True)
        self.assertFalse(out.exists())
        self.assertEqual(self._temp_archives(), [])

    def test_nothing_packable_is_an_error(self):
        if not _can_symlink(self.base):
            self.skipTest("cannot create symlinks here")
        only_links = self.base / "links"
        only_links.mkdir()
        os.symlink(str(self.src / "a.txt"), only_links / "a.txt")
        req = BackupRequest.create(str(only_links), str(self.base / "out.enc"), "p@ss", "e")
        with self.assertRaises(PackError):
            run_backup(req, version=ENVELOPE_V1)
        self.assertFalse((self.base / "out.enc").exists())

    def test_empty_source_produces_empty_backup(self):
        empty = self.base / "empty"
        empty.mkdir()
        out = self.base / "empty.enc"
        report = run_backup(BackupRequest.create(str(empty), str(out), "p@ss", "e"), version=ENVELOPE_V1)
        self.assertEqual(report.files, 0)
        restored = self.base / "restored"
        self.assertEqual(self._decrypt(out, restored).files, 0)
        self.assertTrue(restored.is_dir())


class BackupRequestTests(unittest.TestCase):
    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.base = Path(tmp.name)
        self.src = self.base / "src"
        self.src.mkdir()
        self.container = self.base / "c.enc"
        self.container.write_bytes(b"FVLT")

    def test_invalid_mode(self):
        for mode in ("x", "", "encrypt", None):
            with self.subTest(mode=mode):
                with self.assertRaises(ArgumentError):
                    BackupRequest.create(str(self.src), str(self.base / "o"), "pw", mode)

    def test_empty_password(self):
        with self.assertRaises(ArgumentError):
            BackupRequest.create(str(self.src), str(self.base / "o"), "", "e")

    def test_encrypt_destination_must_not_be_directory(self):
        with self.assertRaises(PathError):
            BackupRequest.create(str(self.src), str(self.base), "pw", "e")

    def test_encrypt_source_must_be_directory(self):
        with self.assertRaises(PathError):
            BackupRequest.create(str(self.container), str(self.base / "o"), "pw", "e")
        with self.assertRaises(PathError):
            BackupRequest.create(str(self.base / "missing"), str(self.base / "o"), "pw", "e")

    def test_decrypt_source_must_be_file(self):
        with self.assertRaises(PathError):
            BackupRequest.create(str(self.src), str(self.base / "restore"), "pw", "d")

    def test_decrypt_destination_must_not_be_file(self):
        with self.assertRaises(PathError):
            BackupRequest.create(str(self.container), str(self.container), "pw", "d")

    def test_mode_accepts_enum(self):
        req = BackupRequest.create(str(self.container), str(self.base / "restore"), "pw", Mode.DECRYPT)
        self.assertIs(req.mode, Mode.DECRYPT)
        self.assertIsNone(req.temp_archive_path)

    def test_exclusions_cover_destination_and_temp_archive(self):
        req = BackupRequest.create(
            str(self.src), str(self.src / "nested" / "out.enc"), "pw", "e", extra_excludes=["cache"], now=1700000000.0
        )
        self.assertEqual(req.temp_archive_name, "1700000000000.fvpack")
        self.assertEqual(req.temp_archive_path, os.path.join(str(self.src), "1700000000000.fvpack"))
        for name in ("out.enc", "1700000000000.fvpack", "cache", "$RECYCLE.BIN"):
            self.assertTrue(req.rules.excludes(name), name)

    def test_temp_archive_name_skips_existing(self):
        (self.src / "1700000000000.fvpack").write_bytes(b"")
        req = BackupRequest.create(str(self.src), str(self.base / "o"), "pw", "e", now=1700000000.0)
        self.assertEqual(req.temp_archive_name, "1700000000001.fvpack")

    def test_password_not_in_repr(self):
        req = BackupRequest.create(str(self.src), str(self.base / "o"), "hunter2", "e")
        self.assertNotIn("hunter2", repr(req))


if __name__ == "__main__":
    unittest.main()
