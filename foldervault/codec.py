from __future__ import annotations

import zlib
from typing import BinaryIO, Iterable, Iterator, Optional

from .constants import CHUNK_SIZE, CODEC_DEFLATE, CODEC_NONE, DEFLATE_LEVEL
from .errors import UnpackError


class Codec:
    """Streaming codec applied to the record body of a packed stream."""

    def __init__(self, codec_id: int, level: Optional[int] = None):
        if codec_id not in (CODEC_NONE, CODEC_DEFLATE):
            raise ValueError(f"unsupported codec id: {codec_id}")
        self.codec_id = codec_id
        self.level = level

    def writer(self, sink: BinaryIO) -> "_Sink":
        if self.codec_id == CODEC_DEFLATE:
            return _DeflateSink(sink, self.level if self.level is not None else DEFLATE_LEVEL)
        return _Sink(sink)

    def decode(self, chunks: Iterable[bytes]) -> Iterator[bytes]:
        if self.codec_id == CODEC_DEFLATE:
            return _inflate(chunks)
        return iter(chunks)


class _Sink:
    def __init__(self, sink: BinaryIO):
        self._sink = sink

    def write(self, data: bytes) -> None:
        self._sink.write(data)

    def finish(self) -> None:
        pass


class _DeflateSink(_Sink):
    def __init__(self, sink: BinaryIO, level: int):
        super().__init__(sink)
        self._c = zlib.compressobj(level)

    def write(self, data: bytes) -> None:
        out = self._c.compress(data)
        if out:
            self._sink.write(out)

    def finish(self) -> None:
        self._sink.write(self._c.flush())


def _inflate(chunks: Iterable[bytes]) -> Iterator[bytes]:
    d = zlib.decompressobj()
    try:
        for chunk in chunks:
            data = chunk
            while data:
                if d.eof:
                    raise UnpackError("Trailing data after compressed stream")
                # Bounded output per call keeps memory independent of ratio
                out = d.decompress(data, CHUNK_SIZE)
                if out:
                    yield out
                data = d.unconsumed_tail
            if d.unused_data:
                raise UnpackError("Trailing data after compressed stream")
        tail = d.flush()
    except zlib.error as exc:
        raise UnpackError(f"Corrupt compressed stream: {exc}") from exc
    if tail:
        yield tail
    if not d.eof:
        raise UnpackError("Compressed stream truncated")
