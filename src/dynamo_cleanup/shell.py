"""Subprocess execution for the external CLIs (terraform, helm)."""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .exceptions import CommandError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    command: list[str]
    returncode: int
    output: str
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def tail(self, lines: int = 40) -> str:
        text = "\n".join(part for part in (self.output, self.stderr) if part)
        return "\n".join(text.splitlines()[-lines:])


class CommandRunner:
    """Runs a command, streaming its output line by line to the log.

    Children run in their own session so an operator's Ctrl-C reaches only
    this process; the orchestrator decides when to stop.
    """

    def __init__(self, log_file: Path | None = None):
        self.log_file = log_file

    def available(self, binary: str) -> bool:
        return shutil.which(binary) is not None

    def run(
        self,
        command: list[str],
        cwd: Path | None = None,
        stream: bool = True,
        merge_stderr: bool = True,
    ) -> CommandResult:
        """Run ``command`` to completion.

        With ``merge_stderr=False`` stdout is kept clean for parsing and
        stderr is returned separately.

        Raises:
            CommandError: If the executable cannot be started
        """
        logger.debug("$ %s", " ".join(command))
        try:
            process = subprocess.Popen(
                command,
                cwd=str(cwd) if cwd else None,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT if merge_stderr else subprocess.PIPE,
                text=True,
                bufsize=1,
                start_new_session=True,
            )
        except OSError as e:
            raise CommandError(f"Failed to start {command[0]}: {e}", command=command) from e

        try:
            if merge_stderr:
                output, stderr = self._stream(command, process, stream), ""
            else:
                output, stderr = process.communicate()
                output = output.rstrip("\n")
                stderr = stderr.rstrip("\n")
                for line in stderr.splitlines():
                    logger.debug("  %s", line)
        except KeyboardInterrupt:
            # Second Ctrl-C: do not leave the child behind.
            process.terminate()
            process.wait()
            raise

        return CommandResult(command=command, returncode=process.returncode, output=output, stderr=stderr)

    def _stream(self, command: list[str], process: subprocess.Popen, stream: bool) -> str:
        output_lines: list[str] = []
        log_handle = open(self.log_file, "a", encoding="utf-8") if self.log_file else None
        try:
            if log_handle:
                log_handle.write(f"=== {' '.join(command)} ===\n")
            assert process.stdout is not None
            for line in process.stdout:
                line = line.rstrip()
                output_lines.append(line)
                if log_handle:
                    log_handle.write(line + "\n")
                    log_handle.flush()
                if stream and line.strip():
                    logger.info("  %s", line)
            process.wait()
        finally:
            if log_handle:
                log_handle.close()
        return "\n".join(output_lines)
