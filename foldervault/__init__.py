"""
foldervault — one password-protected file per folder snapshot.

Features:

- Deterministic tree walk with name-based exclusions (trash, volume metadata,
  the backup's own output and temporary archive, user-supplied names).
- Streaming packed stream (one record per file, optional deflate).
- Versioned encrypted container: PBKDF2 + AES-256-CTR + HMAC-SHA256 (v1) or
  Argon2id + XChaCha20-Poly1305 (v2, default), authenticated end to end.

Programmatic use goes through foldervault.backup (BackupRequest/run_backup);
the building blocks live in foldervault.walker, foldervault.packer and
foldervault.envelope.
"""

__version__ = "0.1"

__all__ = [
    "constants",
    "walker",
    "packer",
    "envelope",
    "backup",
    "cli",
]
