class FolderVaultError(Exception):
    """Base class for foldervault errors."""


# Request / environment
class ArgumentError(FolderVaultError):
    """Malformed command-line input or request field."""


class PathError(FolderVaultError):
    """Destination is a directory, or source is not what the mode requires."""


class CapabilityError(FolderVaultError):
    """Strong (256-bit) cryptography is not available on this host."""


class CryptoInitError(FolderVaultError):
    """Password encoding or cipher engine setup failed."""


# Packing
class PackError(FolderVaultError):
    pass


class UnpackError(FolderVaultError):
    pass


# Envelope
class VersionError(FolderVaultError):
    """Container declares a format version (or parameters) this build does not understand."""


class AuthenticationError(FolderVaultError):
    """Integrity tag mismatch: wrong password, tampered or truncated container."""
