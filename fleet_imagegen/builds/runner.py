"""Build runner for executing the external image build tool.

This module handles:
- Composing the build command for a named build target
- Executing it in a materialized workspace with subprocess
- Teeing combined stdout/stderr into the persistent log writer
- Reporting a bounded output excerpt when the build fails

There is no timeout on the build itself; image builds can take hours.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from pathlib import Path
from typing import BinaryIO, Protocol

logger = logging.getLogger(__name__)

RESULT_LINK_NAME = "result"
MAX_OUTPUT_EXCERPT_BYTES = 8192
READ_CHUNK_SIZE = 64 * 1024


class OutputSink(Protocol):
    """Destination for raw process output."""

    def write(self, data: bytes) -> int: ...


class BuildExecutionError(Exception):
    """Raised when build execution fails."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "build_failed",
        output_excerpt: str = "",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code
        self.output_excerpt = output_excerpt


class _TailBuffer:
    """Keeps only the most recent bytes written to it."""

    def __init__(self, limit: int) -> None:
        self._limit = limit
        self._data = bytearray()

    def write(self, data: bytes) -> None:
        self._data.extend(data)
        if len(self._data) > 2 * self._limit:
            del self._data[: len(self._data) - self._limit]

    def getvalue(self) -> bytes:
        return bytes(self._data[-self._limit :])


def compose_build_command(build_command: str, build_target: str) -> list[str]:
    """Compose the build command for a target.

    Remote builders are disabled so the build runs on this host only.

    Args:
        build_command: Build tool executable.
        build_target: Flake output to build (e.g. '.#fleet-update').

    Returns:
        Command as list of strings suitable for subprocess.
    """
    return [build_command, "build", "--option", "builders", "", build_target]


def trim_build_output(output: str, max_bytes: int = MAX_OUTPUT_EXCERPT_BYTES) -> str:
    """Return the trailing part of build output for error messages.

    Args:
        output: Captured output.
        max_bytes: Maximum size of the excerpt in UTF-8 bytes.

    Returns:
        Stripped excerpt, or a placeholder when there was no output.
    """
    trimmed = output.strip()
    if not trimmed:
        return "no build output"

    encoded = trimmed.encode("utf-8")
    if len(encoded) <= max_bytes:
        return trimmed
    return encoded[-max_bytes:].decode("utf-8", errors="ignore")


def _pump_output(stream: BinaryIO, sink: OutputSink, tail: _TailBuffer) -> None:
    while data := stream.read1(READ_CHUNK_SIZE):  # type: ignore[attr-defined]
        tail.write(data)
        sink.write(data)


def run_build_command(
    workspace_dir: Path,
    build_target: str,
    sink: OutputSink,
    build_command: str = "nix",
) -> Path:
    """Run the build tool against a workspace.

    Output is read once and written both to the sink and to an in-memory
    tail buffer used for the failure excerpt.

    Args:
        workspace_dir: Materialized build source tree (working directory).
        build_target: Flake output to build.
        sink: Receives raw combined stdout/stderr.
        build_command: Build tool executable.

    Returns:
        Path of the result link or directory in the workspace.

    Raises:
        BuildExecutionError: If the tool cannot start or exits non-zero.
    """
    cmd = compose_build_command(build_command, build_target)
    logger.info("Executing build: %s", shlex.join(cmd))
    logger.debug("Working directory: %s", workspace_dir)

    tail = _TailBuffer(MAX_OUTPUT_EXCERPT_BYTES)
    try:
        process = subprocess.Popen(
            cmd,
            cwd=workspace_dir,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )
    except OSError as e:
        raise BuildExecutionError(
            f"failed to start {build_command} build: {e}",
            code="execution_error",
        ) from e

    with process:
        assert process.stdout is not None
        _pump_output(process.stdout, sink, tail)
        exit_code = process.wait()

    if exit_code != 0:
        excerpt = trim_build_output(tail.getvalue().decode("utf-8", errors="replace"))
        raise BuildExecutionError(
            f"{build_command} build failed: exit status {exit_code}: {excerpt}",
            exit_code=exit_code,
            output_excerpt=excerpt,
        )

    return workspace_dir / RESULT_LINK_NAME


__all__ = [
    "MAX_OUTPUT_EXCERPT_BYTES",
    "RESULT_LINK_NAME",
    "BuildExecutionError",
    "OutputSink",
    "compose_build_command",
    "run_build_command",
    "trim_build_output",
]
