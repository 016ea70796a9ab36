"""External process execution.

``CommandRunner`` is the only place that calls ``subprocess``.  Results and
errors carry the exit code and captured stderr, never the argv or environment
of the invocation, so they are safe to log.

``PrivilegedRunner`` is the elevation boundary: it runs a fixed allow-list of
executables through ``sudo -n`` at absolute paths.  The sudoers policy on the
host mirrors the same list.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

SAFE_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"

DEFAULT_PRIVILEGED_COMMANDS = {
    "mkdir": "/usr/bin/mkdir",
    "chown": "/usr/bin/chown",
    "ceymail-backup": "/usr/local/bin/ceymail-backup",
}


class CommandError(RuntimeError):
    def __init__(self, message: str, *, exit_code: Optional[int] = None, stderr: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = (stderr or "").strip()


class CommandTimeout(CommandError):
    pass


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """Runs one process to completion with a hard timeout.

    On timeout the process gets SIGTERM first and SIGKILL only after
    ``terminate_grace`` seconds: ``sudo`` relays SIGTERM to the command it
    started but cannot relay SIGKILL, which would orphan the child.
    """

    def __init__(self, terminate_grace: float = 5.0) -> None:
        self.terminate_grace = terminate_grace

    def run(
        self,
        argv: Sequence[str],
        *,
        timeout: float,
        env: Optional[Mapping[str, str]] = None,
    ) -> CommandResult:
        name = argv[0].rsplit("/", 1)[-1]
        try:
            proc = subprocess.Popen(
                list(argv),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                env=dict(env) if env is not None else {"PATH": SAFE_PATH},
            )
        except OSError as exc:
            raise CommandError(f"{name} could not be started", stderr=exc.strerror or "") from None

        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired as exc:
            self._stop(proc)
            partial = exc.stderr.decode("utf-8", "replace") if isinstance(exc.stderr, bytes) else exc.stderr
            raise CommandTimeout(f"{name} timed out after {timeout:g}s", stderr=partial or "") from None
        return CommandResult(
            returncode=proc.returncode,
            stdout=stdout or "",
            stderr=(stderr or "").strip(),
        )

    def _stop(self, proc: subprocess.Popen) -> None:
        proc.terminate()
        try:
            proc.wait(timeout=self.terminate_grace)
        except subprocess.TimeoutExpired:
            logger.warning("command_kill_after_grace", extra={"stage": str(proc.args[0])})
            proc.kill()
            proc.wait()
        # Grandchildren may still hold the pipes open; do not wait for EOF.
        for stream in (proc.stdout, proc.stderr):
            if stream is not None:
                stream.close()


class PrivilegedRunner:
    def __init__(
        self,
        sudo_path: str = "/usr/bin/sudo",
        commands: Optional[Mapping[str, str]] = None,
        runner: Optional[CommandRunner] = None,
    ) -> None:
        self.sudo_path = sudo_path
        self.commands = dict(commands if commands is not None else DEFAULT_PRIVILEGED_COMMANDS)
        self.runner = runner or CommandRunner()

    def run(self, name: str, args: Sequence[str], *, timeout: float) -> CommandResult:
        executable = self.commands.get(name)
        if executable is None:
            raise CommandError(f"command not allowed: {name}")
        logger.debug("privileged_command", extra={"stage": name})
        return self.runner.run(
            [self.sudo_path, "-n", executable, *args],
            timeout=timeout,
            env={"PATH": SAFE_PATH},
        )
