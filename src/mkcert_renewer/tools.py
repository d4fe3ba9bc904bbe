"""
External tool gateway.

Wraps the subprocess calls made by the certificate manager (tool presence
probe and tool invocation) behind a small interface so the manager never
branches on the host OS itself.
"""

import logging
import os
import subprocess
import sys
import threading
from typing import Callable, List, NamedTuple, Optional, Sequence, Union

from mkcert_renewer.errors import SubprocessFailureError

logger = logging.getLogger("mkcert-renewer")

OutputCallback = Callable[[str], None]


class CommandResult(NamedTuple):
    stdout: str
    stderr: str
    returncode: int


class ToolGateway:
    """Runs external tools for the certificate manager.

    Args:
        timeout (Optional[float]): Hard limit in seconds for `run`. The process
            is killed and SubprocessFailureError raised when it is exceeded.
    """

    PROBE_COMMAND = "which"
    USE_SHELL = False
    PROBE_TIMEOUT = 10

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout

    def tool_name(self, name: str) -> str:
        """Platform-specific executable name for a tool."""
        return name

    def probe(self, tool_name: str) -> bool:
        """Return True if `tool_name` is found on PATH."""
        cmd = [self.PROBE_COMMAND, self.tool_name(tool_name)]
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.PROBE_TIMEOUT,
                shell=self.USE_SHELL,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug(f"Probe for {tool_name} failed: {e}")
            return False
        return result.returncode == 0

    def run(
        self,
        tool_name: str,
        args: Sequence[str],
        cwd: Optional[Union[str, os.PathLike]] = None,
        on_output: Optional[OutputCallback] = None,
        input: Optional[bytes] = None,
    ) -> CommandResult:
        """Run a tool and wait for it to exit.

        Output lines are handed to `on_output` as they arrive (stdout and
        stderr alike) and also aggregated into the returned CommandResult.

        Raises:
            SubprocessFailureError: If the tool cannot be started or times out.
                A nonzero exit code is NOT raised, it is returned.
        """
        cmd = [self.tool_name(tool_name), *[str(a) for a in args]]
        logger.debug(f"Running command: {' '.join(cmd)}")

        try:
            proc = subprocess.Popen(
                cmd,
                cwd=cwd,
                stdin=subprocess.PIPE if input is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                shell=self.USE_SHELL,
            )
        except OSError as e:
            logger.error(f"Failed to start {cmd[0]}: {e}")
            raise SubprocessFailureError(f"Failed to start {cmd[0]}: {e}", stderr=str(e))

        stdout_lines: List[str] = []
        stderr_lines: List[str] = []
        readers = [
            threading.Thread(
                target=self._pump, args=(proc.stdout, stdout_lines, on_output), daemon=True
            ),
            threading.Thread(
                target=self._pump, args=(proc.stderr, stderr_lines, on_output), daemon=True
            ),
        ]
        for reader in readers:
            reader.start()

        if input is not None:
            try:
                proc.stdin.write(input)
                proc.stdin.close()
            except BrokenPipeError:
                # process exited before reading its input, exit code tells the rest
                pass

        try:
            returncode = proc.wait(timeout=self.timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
            for reader in readers:
                reader.join()
            logger.error(f"Command {cmd[0]} timed out after {self.timeout} seconds")
            raise SubprocessFailureError(
                f"{cmd[0]} timed out after {self.timeout} seconds",
                stderr="".join(stderr_lines),
            )

        for reader in readers:
            reader.join()

        return CommandResult("".join(stdout_lines), "".join(stderr_lines), returncode)

    @staticmethod
    def _pump(stream, sink: List[str], on_output: Optional[OutputCallback]):
        for raw in iter(stream.readline, b""):
            text = raw.decode("utf-8", errors="replace")
            sink.append(text)
            if on_output is not None:
                on_output(text)
        stream.close()


class PosixToolGateway(ToolGateway):
    """Gateway for Linux and macOS hosts."""


class WindowsToolGateway(ToolGateway):
    """Gateway for Windows hosts (`where` probe, `.exe` suffix, shell launch)."""

    PROBE_COMMAND = "where"
    USE_SHELL = True

    def tool_name(self, name: str) -> str:
        if name.lower().endswith(".exe"):
            return name
        return f"{name}.exe"


def default_gateway(timeout: Optional[float] = None) -> ToolGateway:
    """Return the gateway matching the current host OS."""
    if sys.platform.startswith("win"):
        return WindowsToolGateway(timeout=timeout)
    return PosixToolGateway(timeout=timeout)
