"""Persistent, incrementally readable build logs.

The build runner tees process output into a PersistentLogWriter, which
buffers bytes and appends them as numbered chunks to durable storage.
Log viewers poll with a cursor and receive everything after it.
"""

from __future__ import annotations

import codecs
import logging
import threading
from collections.abc import Callable
from types import TracebackType
from typing import TYPE_CHECKING

from fleet_imagegen.types import BuildStatus, InstallerStatus, LogPage

if TYPE_CHECKING:
    from fleet_imagegen.builds.store import BuildStore

logger = logging.getLogger(__name__)

LOG_FLUSH_SIZE = 4096
LOG_READ_BATCH_LIMIT = 256


class PersistentLogWriter:
    """Buffered sink that persists process output as log chunks.

    The buffer is flushed as one chunk once it reaches LOG_FLUSH_SIZE bytes
    or whenever a write contains a newline. A failing append is logged once
    per writer and the output is dropped; writes keep being accepted.

    Use as a context manager so the trailing partial line is flushed on
    every exit path.
    """

    def __init__(
        self,
        append: Callable[[str], None],
        label: str = "build",
        flush_size: int = LOG_FLUSH_SIZE,
    ) -> None:
        """Initialize the writer.

        Args:
            append: Callable persisting one chunk of text.
            label: Identifier used in diagnostic log messages.
            flush_size: Buffer size that triggers a flush.
        """
        self._append = append
        self._label = label
        self._flush_size = flush_size
        self._buffer = bytearray()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._lock = threading.Lock()
        self._append_failed = False
        self._closed = False

    @property
    def append_failed(self) -> bool:
        """Whether any append to durable storage has failed."""
        return self._append_failed

    def write(self, data: bytes) -> int:
        """Buffer bytes, flushing on newline or size threshold.

        Args:
            data: Raw process output.

        Returns:
            Number of bytes accepted (always len(data)).
        """
        if not data:
            return 0
        with self._lock:
            self._buffer.extend(data)
            if len(self._buffer) >= self._flush_size or b"\n" in data:
                self._flush_locked(final=False)
        return len(data)

    def flush(self) -> None:
        """Persist whatever is buffered."""
        with self._lock:
            self._flush_locked(final=False)

    def close(self) -> None:
        """Flush remaining output, including incomplete UTF-8 sequences."""
        with self._lock:
            if self._closed:
                return
            self._flush_locked(final=True)
            self._closed = True

    def _flush_locked(self, final: bool) -> None:
        data = bytes(self._buffer)
        self._buffer.clear()
        text = self._decoder.decode(data, final=final)
        if not text:
            return
        try:
            self._append(text)
        except Exception:
            if not self._append_failed:
                self._append_failed = True
                logger.exception("Failed to persist %s log output", self._label)

    def __enter__(self) -> PersistentLogWriter:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


def parse_log_cursor(value: str | None) -> int:
    """Parse a log cursor query value.

    Args:
        value: Raw query value; missing, blank, unparsable or negative
            values mean 0.

    Returns:
        Non-negative cursor.
    """
    if value is None:
        return 0
    try:
        cursor = int(value.strip())
    except ValueError:
        return 0
    return max(cursor, 0)


def read_log_page(
    store: BuildStore,
    build_id: str,
    after: int,
    installer: bool = False,
    limit: int = LOG_READ_BATCH_LIMIT,
) -> LogPage:
    """Read the log chunks of a build after a cursor.

    One extra chunk is fetched to learn whether more remain, so a client
    can stop polling once the job is terminal and fully delivered.

    Args:
        store: Build persistence client.
        build_id: Build ID.
        after: Cursor returned by the previous read (0 to start).
        installer: Read the installer log instead of the build log.
        limit: Maximum chunks returned per read.

    Returns:
        LogPage with the concatenated text and the next cursor.

    Raises:
        BuildNotFoundError: If the build does not exist.
    """
    build = store.get_build(build_id)
    chunks = store.list_log_chunks_since(
        build_id, after, limit + 1, installer=installer
    )
    has_more = len(chunks) > limit
    chunks = chunks[:limit]

    if installer:
        status = build.installer_status
        terminal = InstallerStatus(status).is_terminal
    else:
        status = build.status
        terminal = BuildStatus(status).is_terminal

    next_after = chunks[-1][0] if chunks else after
    return LogPage(
        status=status,
        chunk="".join(content for _, content in chunks),
        next_after=next_after,
        done=terminal and not has_more,
    )


__all__ = [
    "LOG_FLUSH_SIZE",
    "LOG_READ_BATCH_LIMIT",
    "PersistentLogWriter",
    "parse_log_cursor",
    "read_log_page",
]
