"""Certificate renewal supervision.

The renewal process is:
1. Release ports 443 and 80 (certbot needs these ports)
2. Run the certbot script
3. Resume listening on these ports

Step 3 always runs, whatever happened in steps 1 and 2. If it fails the
host is unreachable, so the whole process exits and the process manager
takes over.
"""

import logging
import os
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Sequence

from edge_server.common import prefix_lines, run_command
from edge_server.config import DEFAULT_RENEWAL_COMMAND, DEFAULT_RENEWAL_INTERVAL, DEFAULT_RENEWAL_TIMEOUT
from edge_server.errors import FatalRestartError, RenewalCommandError

logger = logging.getLogger(__name__)

FATAL_EXIT_CODE = 1


def cert_log(message: str, level: int = logging.INFO, **kwargs):
    """Log a renewal message with every line prefixed "CERT: "."""
    logger.log(level, "%s", prefix_lines(message, "CERT: "), **kwargs)


def _fatal_exit(code: int):
    # Called from the supervisor thread, where sys.exit would only end the thread
    logging.shutdown()
    os._exit(code)


@dataclass(frozen=True)
class RenewalOutcome:
    """Result of one renewal command run."""

    exit_code: int
    stdout: bytes
    stderr: bytes

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0

    def log(self):
        """Log captured output, one ">>  " prefixed line per output line."""
        for name, data in (("stdout", self.stdout), ("stderr", self.stderr)):
            if data:
                logger.info("Certbot %s:\n%s", name, prefix_lines(data.rstrip(b"\n"), ">>  "))


def run_renewal(
    command: Sequence[str] = DEFAULT_RENEWAL_COMMAND,
    timeout: Optional[float] = DEFAULT_RENEWAL_TIMEOUT,
) -> RenewalOutcome:
    """Run the renewal command to completion and capture its output."""
    exit_code, stdout, stderr = run_command(list(command), timeout=timeout)
    return RenewalOutcome(exit_code=exit_code, stdout=stdout, stderr=stderr)


class RenewalState(str, Enum):
    IDLE = "idle"
    RELEASING = "releasing"
    RENEWING = "renewing"
    RESTARTING = "restarting"
    FATAL = "fatal"


class RenewalSupervisor:
    """Owns the live ServerPair and periodically renews its certificate.

    All reads and writes of the current pair happen on the supervisor thread
    (or after it has exited), so no lock guards it. Cycles run strictly one
    after another: the next wait starts only once the previous restart has
    finished.

    Args:
        pair: The already started ServerPair to take ownership of
        pair_factory: Returns a new, unstarted ServerPair
        interval: Seconds between renewal cycles
        first_delay: Seconds before the first cycle (default: interval)
        command: Renewal command line
        command_timeout: Seconds before the command is killed
        resume_after_failure: Keep scheduling after a failed renewal command
        runner: Runs the command and returns a RenewalOutcome
        exit_func: Terminates the process on a fatal restart failure
    """

    def __init__(
        self,
        pair,
        pair_factory: Callable[[], object],
        interval: float = DEFAULT_RENEWAL_INTERVAL,
        first_delay: Optional[float] = None,
        command: Sequence[str] = DEFAULT_RENEWAL_COMMAND,
        command_timeout: Optional[float] = DEFAULT_RENEWAL_TIMEOUT,
        resume_after_failure: bool = False,
        runner: Callable[..., RenewalOutcome] = run_renewal,
        exit_func: Callable[[int], None] = _fatal_exit,
    ):
        self._pair = pair
        self.pair_factory = pair_factory
        self.interval = interval
        self.first_delay = interval if first_delay is None else first_delay
        self.command = tuple(command)
        self.command_timeout = command_timeout
        self.resume_after_failure = resume_after_failure
        self.runner = runner
        self.exit_func = exit_func

        self.state = RenewalState.IDLE
        self.cycles = 0
        self.last_outcome: Optional[RenewalOutcome] = None
        self.failure: Optional[BaseException] = None

        self._cycle_lock = threading.Lock()
        self._wake = threading.Event()
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def pair(self):
        return self._pair

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> threading.Thread:
        """Start the renewal loop thread."""
        if self._thread is not None:
            raise RuntimeError("Renewal supervisor already started")
        self._thread = threading.Thread(target=self.run, name="cert-renewal", daemon=True)
        self._thread.start()
        return self._thread

    def trigger(self):
        """Run the next cycle now instead of waiting for the timer.

        If a cycle is in progress the new one starts after it completes.
        """
        self._wake.set()

    def close(self, timeout: Optional[float] = None):
        """Stop scheduling and drain the current servers.

        A cycle already in progress is allowed to finish first.
        """
        self._stopping.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("Renewal cycle still running; leaving servers to it")
                return
        if self._pair is not None:
            self._pair.stop()
            self._pair = None

    def run(self):
        """Renewal loop; returns when stopped or after an unrecovered failure."""
        cert_log("Cert renewal loop active")
        delay = self.first_delay
        try:
            while True:
                self._wake.wait(delay)
                self._wake.clear()
                if self._stopping.is_set():
                    return
                delay = self.interval

                try:
                    self.renew_once()
                except FatalRestartError:
                    raise
                except Exception:
                    if not self.resume_after_failure:
                        raise
                    cert_log(
                        f"Cert renewal failed; next attempt in {self.interval:g}s",
                        logging.ERROR, exc_info=True,
                    )
        except Exception as e:
            self.failure = e
            cert_log(
                "Cert renewal failed (renewal loop exited); no further renewals will be attempted",
                logging.ERROR, exc_info=True,
            )

    def renew_once(self):
        """Run one release → renew → restart cycle.

        Raises:
            RenewalCommandError: The command failed (servers were restarted)
            FatalRestartError: Restart failed and exit_func returned
        """
        with self._cycle_lock:
            self.cycles += 1
            cert_log("Performing cert renewal...")

            failure: Optional[BaseException] = None
            try:
                self._release()
                self._renew()
            except Exception as e:
                failure = e

            self._restart()

        if failure is not None:
            raise failure
        cert_log("Cert renewal success!")

    def _release(self):
        self.state = RenewalState.RELEASING
        cert_log("Freeing ports 80 and 443...")
        pair, self._pair = self._pair, None
        if pair is not None:
            pair.stop()
        cert_log("Freed!")

    def _renew(self):
        self.state = RenewalState.RENEWING
        cert_log("Running certbot script...")
        outcome = self.runner(self.command, timeout=self.command_timeout)
        self.last_outcome = outcome
        outcome.log()
        if not outcome.succeeded:
            raise RenewalCommandError(outcome)
        cert_log("Certbot script complete!")

    def _restart(self):
        self.state = RenewalState.RESTARTING
        cert_log("Restarting servers...")
        try:
            pair = self.pair_factory()
            pair.start()
        except Exception as e:
            self.state = RenewalState.FATAL
            cert_log("Fatal error; unable to restart servers", logging.CRITICAL, exc_info=True)
            self.exit_func(FATAL_EXIT_CODE)
            raise FatalRestartError("Unable to restart servers after renewal") from e

        self._pair = pair
        self.state = RenewalState.IDLE
        cert_log("Servers restarted successfully!")
