# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbbackupman Process Runner - Invoke external dump/export programs.

Commands run through asyncio subprocesses. Standard output can be
streamed straight into a local file; standard error is captured and
attached to CommandError on failure. Credentials are passed through the
environment, never on the command line.
"""

import asyncio
import os
from pathlib import Path
from typing import Dict, List, Sequence

import structlog

from dbbackupman.exceptions import CommandError

logger = structlog.get_logger()

# Keep error details readable when a tool dumps a lot on stderr
_MAX_STDERR_CHARS = 4000


def build_env(extra: Dict[str, str] | None = None) -> Dict[str, str]:
    """Inherit the current environment and overlay ``extra``."""
    env = dict(os.environ)
    if extra:
        env.update(extra)
    return env


def _describe(cmd: Sequence[str]) -> str:
    return " ".join(cmd)


class ProcessRunner:
    """
    Runs external programs with an optional per-command timeout.

    A timeout kills the process and raises CommandError with
    ``details["timed_out"] = True``.
    """

    def __init__(self, timeout: float | None = None):
        self.timeout = timeout

    async def run(self, cmd: Sequence[str], env: Dict[str, str] | None = None) -> bytes:
        """
        Run a command to completion and return its standard output.

        Raises:
            CommandError: If the program cannot start, exits non-zero or times out
        """
        process = await self._spawn(cmd, env, asyncio.subprocess.PIPE)
        stdout, stderr = await self._communicate(cmd, process)
        self._check(cmd, process.returncode, stderr)
        return stdout or b""

    async def run_to_file(
        self,
        cmd: Sequence[str],
        path: Path,
        env: Dict[str, str] | None = None,
        append: bool = False,
    ) -> int:
        """
        Run a command streaming its standard output into ``path``.

        The file is created (or truncated unless ``append``) before the
        program starts. On failure the partial output is left in place;
        callers decide whether to keep or remove it.

        Returns:
            Size of the file after the command finished
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "ab" if append else "wb") as fh:
            process = await self._spawn(cmd, env, fh)
            _, stderr = await self._communicate(cmd, process)

        self._check(cmd, process.returncode, stderr)
        size = path.stat().st_size

        logger.debug("command_output_written", path=str(path), size=size, program=cmd[0])
        return size

    async def check_tool(self, binary: str) -> None:
        """
        Verify a required binary exists and runs (``<binary> --version``).

        Raises:
            CommandError: If the tool is missing or fails
        """
        try:
            await self.run([binary, "--version"])
        except CommandError as e:
            raise CommandError(
                f"Required tool not found or failed to run: {binary}",
                details={"tool": binary, "error": e.message},
            ) from e

    async def check_tools(self, binaries: List[str]) -> None:
        for binary in binaries:
            await self.check_tool(binary)

    async def _spawn(self, cmd: Sequence[str], env: Dict[str, str] | None, stdout) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *cmd,
                stdout=stdout,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            raise CommandError(
                f"Failed to start {cmd[0]}: {e}",
                details={"command": _describe(cmd)},
            ) from e

    async def _communicate(
        self,
        cmd: Sequence[str],
        process: asyncio.subprocess.Process,
    ) -> tuple[bytes | None, bytes | None]:
        try:
            return await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            logger.error("command_timed_out", program=cmd[0], timeout=self.timeout)
            raise CommandError(
                f"Command timed out after {self.timeout}s: {cmd[0]}",
                details={"command": _describe(cmd), "timed_out": True},
            ) from e

    @staticmethod
    def _check(cmd: Sequence[str], returncode: int | None, stderr: bytes | None) -> None:
        if returncode == 0:
            return
        error_output = (stderr or b"").decode("utf-8", errors="replace").strip()
        raise CommandError(
            f"Command failed: {cmd[0]} (exit {returncode})",
            details={
                "command": _describe(cmd),
                "returncode": returncode,
                "stderr": error_output[-_MAX_STDERR_CHARS:],
            },
        )
