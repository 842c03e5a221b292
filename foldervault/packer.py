from __future__ import annotations

import io
import logging
import os
import struct
from dataclasses import dataclass, field
from typing import BinaryIO, Iterable, Iterator, List, Optional

from .codec import Codec
from .constants import (
    CHUNK_SIZE,
    CODEC_NONE,
    DEFAULT_CODEC_ID,
    MAX_PATH_BYTES,
    PACK_MAGIC,
    PACK_STREAM_VERSION,
)
from .errors import PackError, UnpackError
from .pathutil import norm_path
from .walker import EntryStatus, ExclusionRules, TreeEntry, walk_tree


log = logging.getLogger(__name__)

# Stream header: magic[4], stream version u8, codec u8
_STREAM_HDR_STRUCT = struct.Struct("<4sBB")
_PATH_LEN_STRUCT = struct.Struct("<H")
_SIZE_STRUCT = struct.Struct("<Q")


@dataclass
class PackResult:
    packed: List[str] = field(default_factory=list)
    bytes_packed: int = 0
    unreadable: List[TreeEntry] = field(default_factory=list)
    soft_skipped: List[TreeEntry] = field(default_factory=list)

    def record(self, entry: TreeEntry) -> None:
        if entry.status is EntryStatus.SOFT_SKIP:
            self.soft_skipped.append(entry)
        else:
            self.unreadable.append(entry)


@dataclass
class UnpackResult:
    restored: List[str] = field(default_factory=list)
    bytes_restored: int = 0


class ArchivePacker:
    """Streaming writer for the packed stream: one record per file, then an end marker."""

    def __init__(
        self,
        sink: BinaryIO,
        codec_id: int = DEFAULT_CODEC_ID,
        *,
        rules: Optional[ExclusionRules] = None,
        chunk_size: int = CHUNK_SIZE,
    ):
        self.sink = sink
        self.rules = rules or ExclusionRules.for_run()
        self.codec_id = codec_id
        self.chunk_size = chunk_size
        self.result = PackResult()
        self._out = None

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.close()

    def open(self):
        if self._out is not None:
            return
        self.sink.write(_STREAM_HDR_STRUCT.pack(PACK_MAGIC, PACK_STREAM_VERSION, self.codec_id))
        self._out = Codec(self.codec_id).writer(self.sink)

    def close(self):
        if self._out is None:
            raise RuntimeError("Packer not open")
        self._out.write(_PATH_LEN_STRUCT.pack(0))
        self._out.finish()
        self._out = None

    def add(self, entry: TreeEntry) -> bool:
        """Pack one walker entry; non-ok entries and open failures land in ``result``.

        Returns True when a record was written.
        """
        if self._out is None:
            raise RuntimeError("Packer not open")
        if not entry.ok:
            self.result.record(entry)
            return False
        arc_path = norm_path(entry.rel_path)
        path_bytes = arc_path.encode("utf-8")
        if len(path_bytes) > MAX_PATH_BYTES:
            self.result.record(TreeEntry(entry.rel_path, entry.fs_path, status=EntryStatus.UNREADABLE, reason="path too long"))
            return False
        try:
            fh = open(entry.fs_path, "rb")
        except OSError as exc:
            log.debug("open failed for %s: %s", entry.fs_path, exc)
            self.result.record(
                TreeEntry(
                    entry.rel_path,
                    entry.fs_path,
                    status=self._failure_status(entry.rel_path),
                    reason=f"cannot open: {exc.strerror or exc}",
                )
            )
            return False
        with fh:
            size = os.fstat(fh.fileno()).st_size
            if size != entry.size:
                log.debug("%s changed size since the walk (%d -> %d bytes)", arc_path, entry.size, size)
            self._out.write(_PATH_LEN_STRUCT.pack(len(path_bytes)) + path_bytes + _SIZE_STRUCT.pack(size))
            remaining = size
            while remaining:
                try:
                    buf = fh.read(min(self.chunk_size, remaining))
                except OSError as exc:
                    raise PackError(f"Read failed mid-file for {arc_path}: {exc}") from exc
                if not buf:
                    raise PackError(f"File shrank while packing: {arc_path} ({size - remaining}/{size} bytes)")
                self._out.write(buf)
                remaining -= len(buf)
        self.result.packed.append(arc_path)
        self.result.bytes_packed += size
        return True

    def _failure_status(self, rel_path: str) -> EntryStatus:
        return EntryStatus.SOFT_SKIP if self.rules.is_volume_metadata(rel_path) else EntryStatus.UNREADABLE


def pack_tree(root: str, sink: BinaryIO, rules: ExclusionRules, codec_id: int = DEFAULT_CODEC_ID) -> PackResult:
    """Walk ``root`` and stream every packable file into ``sink``."""
    with ArchivePacker(sink, codec_id, rules=rules) as packer:
        for entry in walk_tree(root, rules):
            packer.add(entry)
    return packer.result


# -------- Unpacking --------

class _ChunkStream(io.RawIOBase):
    """Raw stream over an iterator of byte chunks."""

    def __init__(self, chunks: Iterable[bytes]):
        self._chunks = iter(chunks)
        self._pending = b""

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        if not self._pending:
            for chunk in self._chunks:
                if chunk:
                    self._pending = chunk
                    break
            else:
                return 0
        n = min(len(b), len(self._pending))
        b[:n] = self._pending[:n]
        self._pending = self._pending[n:]
        return n

    def rest(self) -> Iterator[bytes]:
        if self._pending:
            yield self._pending
            self._pending = b""
        yield from self._chunks


def read_exact(f: BinaryIO, n: int) -> bytes:
    buf = bytearray()
    while len(buf) < n:
        b = f.read(n - len(buf))
        if not b:
            break
        buf += b
    if len(buf) != n:
        raise UnpackError(f"Unexpected end of archive ({len(buf)}/{n} bytes)")
    return bytes(buf)


def unpack_stream(chunks: Iterable[bytes], dest_root: str, *, chunk_size: int = CHUNK_SIZE) -> UnpackResult:
    """Restore every record of a packed stream below ``dest_root``.

    Existing files are truncated and overwritten. Any structural problem is a
    fatal :class:`UnpackError` for the whole restore.
    """
    raw = _ChunkStream(chunks)
    magic, version, codec_id = _STREAM_HDR_STRUCT.unpack(read_exact(raw, _STREAM_HDR_STRUCT.size))
    if magic != PACK_MAGIC:
        raise UnpackError("Bad packed stream magic")
    if version != PACK_STREAM_VERSION:
        raise UnpackError(f"Unsupported packed stream version {version}")
    try:
        codec = Codec(codec_id)
    except ValueError as exc:
        raise UnpackError(str(exc)) from exc
    body = raw if codec.codec_id == CODEC_NONE else _ChunkStream(codec.decode(raw.rest()))
    src = io.BufferedReader(body, chunk_size)

    os.makedirs(dest_root, exist_ok=True)
    result = UnpackResult()
    while True:
        (path_len,) = _PATH_LEN_STRUCT.unpack(read_exact(src, _PATH_LEN_STRUCT.size))
        if path_len == 0:
            break
        try:
            arc_path = norm_path(read_exact(src, path_len).decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise UnpackError(f"Malformed record path: {exc}") from exc
        (size,) = _SIZE_STRUCT.unpack(read_exact(src, _SIZE_STRUCT.size))
        out_path = os.path.join(dest_root, *arc_path.split("/"))
        try:
            os.makedirs(os.path.dirname(out_path) or ".", exist_ok=True)
            wf = open(out_path, "wb")
        except (FileExistsError, NotADirectoryError, IsADirectoryError) as exc:
            raise UnpackError(f"Record path conflicts with an existing entry: {arc_path} ({exc.strerror or exc})") from exc
        with wf:
            remaining = size
            while remaining:
                buf = src.read(min(chunk_size, remaining))
                if not buf:
                    raise UnpackError(f"Record truncated: {arc_path} ({size - remaining}/{size} bytes)")
                wf.write(buf)
                remaining -= len(buf)
        result.restored.append(arc_path)
        result.bytes_restored += size
    if src.read(1):
        raise UnpackError("Trailing data after end of archive")
    return result
