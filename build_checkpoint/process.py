"""Child process execution with streamed output."""

from __future__ import annotations

import os
import shutil
import subprocess
from collections import deque
from pathlib import Path
from typing import Mapping, Sequence

from build_checkpoint.exceptions import CommandFailedError, PreconditionFailure
from build_checkpoint.logging import get_logger

log = get_logger(source=__name__)

# Lines of child output kept for error messages
OUTPUT_TAIL_LINES = 20


def check_tool_available(tool: str) -> bool:
    """Check if a command-line tool is available."""
    return shutil.which(tool) is not None


def require_tools(*tools: str) -> None:
    """Raise PreconditionFailure naming every tool that is not installed."""
    missing = [tool for tool in tools if not check_tool_available(tool)]
    if missing:
        raise PreconditionFailure(f"Required tools not installed: {', '.join(missing)}")


def run_command(
    command: Sequence[str],
    *,
    cwd: Path | str | None = None,
    env: Mapping[str, str] | None = None,
    input_text: str | None = None,
    check: bool = False,
    log_prefix: str | None = None,
) -> int:
    """Run a command, streaming its output into the debug log.

    Args:
        command: Program and arguments
        cwd: Working directory for the child
        env: Extra environment variables layered over the current environment
        input_text: Text written to the child's stdin, which is then closed
        check: Raise CommandFailedError on a non-zero exit code
        log_prefix: Prefix for echoed output lines (defaults to the program name)

    Returns:
        The child's exit code

    Raises:
        PreconditionFailure: The program does not exist
        CommandFailedError: The child failed and check is True
    """
    command = [str(part) for part in command]
    prefix = log_prefix or Path(command[0]).name
    out_log = log.bind(tags=["process", prefix])
    child_env = None
    if env:
        child_env = dict(os.environ)
        child_env.update(env)

    log.debug(f"Running command: {' '.join(command)}")
    try:
        process = subprocess.Popen(
            command,
            cwd=str(cwd) if cwd is not None else None,
            env=child_env,
            stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
    except FileNotFoundError as e:
        raise PreconditionFailure(f"Command not found: {command[0]}") from e

    if input_text is not None:
        try:
            process.stdin.write(input_text)
            process.stdin.close()
        except BrokenPipeError:
            pass

    tail: deque[str] = deque(maxlen=OUTPUT_TAIL_LINES)
    for line in process.stdout:
        line = line.rstrip()
        tail.append(line)
        out_log.debug(f"[{prefix}] {line}")
    process.stdout.close()
    returncode = process.wait()

    if returncode != 0:
        log.debug(f"Command exited with code {returncode}: {' '.join(command)}")
        if check:
            raise CommandFailedError(command, returncode, "\n".join(tail).strip())
    return returncode


__all__ = [
    "check_tool_available",
    "require_tools",
    "run_command",
]
