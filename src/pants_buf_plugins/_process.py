"""Subprocess execution with run-wide cancellation (no Pants dependencies)."""

from __future__ import annotations

import logging
import subprocess
import threading
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence, Tuple

from pants_buf_plugins._exceptions import Cancelled, SubprocessFailure

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.2


class Cancellation:
    """A request-wide cancel signal shared by HTTP calls and subprocesses."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self, operation: str) -> None:
        """Raise :class:`Cancelled` if the run has been cancelled."""
        if self._event.is_set():
            raise Cancelled(operation)

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)


@dataclass(frozen=True)
class CommandResult:
    argv: tuple
    returncode: int
    stdout: str
    stderr: str = ""


def run_command(
    argv: Sequence[str],
    *,
    cwd: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    cancellation: Optional[Cancellation] = None,
    capture: bool = False,
) -> CommandResult:
    """Run ``argv`` to completion, terminating it if the run is cancelled.

    Output is inherited from the parent unless ``capture`` is set, in which
    case stdout and stderr are collected separately.

    Raises:
        Cancelled: If cancellation was requested before or during the run.
        SubprocessFailure: If the command exits non-zero or cannot start.
    """
    argv = tuple(argv)
    if cancellation is not None:
        cancellation.check(" ".join(argv))
    logger.debug("running %s (cwd=%s)", " ".join(argv), cwd or ".")
    try:
        proc = subprocess.Popen(
            argv,
            cwd=cwd,
            env=dict(env) if env is not None else None,
            stdout=subprocess.PIPE if capture else None,
            stderr=subprocess.PIPE if capture else None,
            text=True,
        )
    except OSError as exc:
        raise SubprocessFailure(argv, -1, str(exc)) from exc

    if cancellation is None:
        stdout, stderr = proc.communicate()
    else:
        stdout, stderr = _wait_cancellable(proc, cancellation, argv)

    if proc.returncode != 0:
        raise SubprocessFailure(argv, proc.returncode, stderr or stdout or "")
    return CommandResult(
        argv=argv, returncode=proc.returncode, stdout=stdout or "", stderr=stderr or ""
    )


def _wait_cancellable(
    proc: subprocess.Popen, cancellation: Cancellation, argv: tuple
) -> Tuple[Optional[str], Optional[str]]:
    # Output read before a timeout is kept by Popen and returned on retry.
    while True:
        try:
            return proc.communicate(timeout=_POLL_INTERVAL)
        except subprocess.TimeoutExpired:
            if cancellation.cancelled:
                logger.info("terminating %s", " ".join(argv))
                proc.terminate()
                try:
                    proc.wait(timeout=10)
                except subprocess.TimeoutExpired:
                    proc.kill()
                    proc.wait()
                raise Cancelled(" ".join(argv))
