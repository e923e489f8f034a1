from __future__ import annotations
from typing import Callable, Iterator, Optional, Protocol
import numpy as np

from .rays import RayBatch
from .utils import get_logger

_log = get_logger()

DEFAULT_CHUNK_SIZE = 1_000_000

ChunkVisitor = Callable[[np.ndarray, np.ndarray, np.ndarray, np.ndarray], None]


class RaySourceError(IOError):
    """Raised when a ray source cannot be opened or is truncated/corrupt."""


class RaySource(Protocol):
    def chunks(self, chunk_size: int) -> Iterator[RayBatch]: ...


class RaySink(Protocol):
    def write_batch(self, batch: RayBatch) -> None: ...

    def close(self) -> None: ...


class ArrayRaySource:
    """In-memory ray source, chunked the same way as a file source."""

    def __init__(self, batch: RayBatch) -> None:
        self.batch = batch

    def chunks(self, chunk_size: int) -> Iterator[RayBatch]:
        n_rays = len(self.batch)
        limit = int(chunk_size or 0)
        if limit <= 0 or n_rays <= limit:
            yield self.batch
            return
        for start in range(0, n_rays, limit):
            stop = min(start + limit, n_rays)
            yield self.batch.take(slice(start, stop))


class RayStream:
    """Bounded-memory access to a ray source.

    Rays arrive in file order, ``chunk_size`` at a time. Chunk boundaries
    carry no meaning. A source failure part way through raises
    :class:`RaySourceError` from :meth:`chunks`; anything a consumer has
    accumulated from earlier chunks is then invalid.
    """

    def __init__(self, source: RaySource, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive.")
        self.source = source
        self.chunk_size = int(chunk_size)

    def chunks(self) -> Iterator[RayBatch]:
        try:
            for batch in self.source.chunks(self.chunk_size):
                yield batch
        except RaySourceError:
            raise
        except (OSError, ValueError) as exc:
            raise RaySourceError(str(exc)) from exc

    def for_each_chunk(self, visitor: ChunkVisitor) -> bool:
        """Push each chunk's (starts, ends, times, colors) into ``visitor``.

        Returns False if the source failed; the visitor may already have
        seen some chunks.
        """
        try:
            for batch in self.chunks():
                visitor(*batch.as_tuple())
        except RaySourceError as exc:
            _log.error("Failed reading ray source: %s", exc)
            return False
        return True

    def read_all(self) -> RayBatch:
        return RayBatch.concatenate(list(self.chunks()))


def as_stream(source: RaySource | RayStream, chunk_size: Optional[int] = None) -> RayStream:
    if isinstance(source, RayStream):
        return source
    return RayStream(source, chunk_size or DEFAULT_CHUNK_SIZE)
