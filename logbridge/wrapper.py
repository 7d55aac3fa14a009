"""
Process wrapper.

Runs a command with its output piped through this process. Raw bytes are
echoed to the terminal unchanged; a decoded, ANSI-stripped, redacted copy of
each line goes to the session log on the stdout or stderr channel.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import re
import shlex
import signal
import sys
from typing import BinaryIO

from .config import BridgeConfig
from .log_writer import SessionLogWriter, StreamLineBuffer
from .session_registry import SessionRegistry
from .session_schema import SessionKind
from .sweeper import RetentionSweeper

logger = logging.getLogger(__name__)

READ_CHUNK = 64 * 1024

# CSI, OSC and two-byte escape sequences
ANSI_PATTERN = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b[@-Z\\-_]"
)


def strip_ansi(text: str) -> str:
    return ANSI_PATTERN.sub("", text)


def exit_status(returncode: int) -> int:
    """Shell-style exit status: a child killed by signal N reports 128 + N."""
    return returncode if returncode >= 0 else 128 - returncode


class CommandWrapper:
    """
    Runs one command as one process-output session.

    Example:
        wrapper = CommandWrapper(registry, ["npm", "run", "dev"])
        code = await wrapper.run()
    """

    def __init__(
        self,
        registry: SessionRegistry,
        command: list[str],
        project_dir: str | None = None,
        archive: bool = True,
        sweeper: RetentionSweeper | None = None,
        stdout: BinaryIO | None = None,
        stderr: BinaryIO | None = None,
    ):
        """
        Initialize the wrapper.

        Args:
            registry: Registry for process-output sessions
            command: Program and arguments
            project_dir: Project the session belongs to (default: cwd)
            archive: Archive (True) or delete (False) the log at finalize
            sweeper: Run once before the command starts
            stdout: Echo target for the child's stdout (default: our stdout)
            stderr: Echo target for the child's stderr (default: our stderr)
        """
        if not command:
            raise ValueError("No command given")
        self.registry = registry
        self.command = list(command)
        self.project_dir = project_dir
        self.archive = archive
        self.sweeper = sweeper
        self.stdout = stdout if stdout is not None else sys.stdout.buffer
        self.stderr = stderr if stderr is not None else sys.stderr.buffer
        self.session = None
        self.returncode: int | None = None
        self._finalized = False

    @classmethod
    def from_config(cls, config: BridgeConfig, command: list[str], project_dir: str | None = None) -> "CommandWrapper":
        registry = SessionRegistry.from_config(config, SessionKind.PROCESS_OUTPUT)
        return cls(
            registry=registry,
            command=command,
            project_dir=project_dir,
            archive=config.archive_on_finalize,
            sweeper=RetentionSweeper.from_config(config, registry),
        )

    @property
    def descriptor(self) -> str:
        return shlex.join(self.command)

    async def run(self) -> int:
        """
        Run the command to completion.

        Returns:
            The child's exit status (127 if it could not be started)
        """
        if self.sweeper is not None:
            await asyncio.to_thread(self.sweeper.run)

        project = self.project_dir or os.getcwd()
        session = await asyncio.to_thread(self.registry.open_session, project, self.descriptor)
        self.session = session
        self._finalized = False
        writer = SessionLogWriter(session, on_error=self._on_writer_error)
        writer.open()

        footer = None
        try:
            try:
                proc = await asyncio.create_subprocess_exec(
                    *self.command,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as e:
                logger.error(f"Could not start {self.command[0]}: {e}")
                footer = f"Process error: {e}"
                self.returncode = 127
                return self.returncode

            loop = asyncio.get_running_loop()
            installed = _forward_signals(loop, proc)
            try:
                await asyncio.gather(
                    self._pump(proc.stdout, "stdout", self.stdout, writer),
                    self._pump(proc.stderr, "stderr", self.stderr, writer),
                )
                returncode = await proc.wait()
            finally:
                for sig in installed:
                    loop.remove_signal_handler(sig)

            footer = f"Process exited with code: {returncode}"
            self.returncode = exit_status(returncode)
            return self.returncode
        finally:
            await self._finalize(writer, footer)

    def _on_writer_error(self, writer: SessionLogWriter, error: OSError) -> None:
        logger.error(f"Session {writer.session.id} can no longer be written; finalizing it, the command keeps running")

    async def _finalize(self, writer: SessionLogWriter, footer: str | None = None) -> None:
        """Close the log and finalize the session; later calls do nothing."""
        if self._finalized:
            return
        self._finalized = True
        writer.close(footer)
        self.session = await asyncio.to_thread(self.registry.finalize, writer.session, self.archive)

    async def _pump(
        self,
        stream: asyncio.StreamReader,
        channel: str,
        sink: BinaryIO,
        writer: SessionLogWriter,
    ) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        lines = StreamLineBuffer(lambda line: writer.write_line(channel, strip_ansi(line)))
        echo = True

        while True:
            chunk = await stream.read(READ_CHUNK)
            if not chunk:
                break
            if echo:
                try:
                    sink.write(chunk)
                    sink.flush()
                except (OSError, ValueError) as e:
                    logger.debug(f"Stopped echoing {channel}: {e}")
                    echo = False
            lines.feed(decoder.decode(chunk))
            if writer.failed:
                await self._finalize(writer)

        lines.feed(decoder.decode(b"", final=True))
        lines.close()


def _forward_signals(loop: asyncio.AbstractEventLoop, proc: asyncio.subprocess.Process) -> list[int]:
    def forward(sig: int) -> None:
        try:
            proc.send_signal(sig)
        except ProcessLookupError:
            pass

    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, forward, sig)
        except (NotImplementedError, RuntimeError, ValueError):
            continue
        installed.append(sig)
    return installed


def run_command(config: BridgeConfig, command: list[str], project_dir: str | None = None) -> int:
    """Blocking entry point for the command line."""
    wrapper = CommandWrapper.from_config(config, command, project_dir=project_dir)
    return asyncio.run(wrapper.run())


__all__ = [
    "ANSI_PATTERN",
    "CommandWrapper",
    "exit_status",
    "run_command",
    "strip_ansi",
]
