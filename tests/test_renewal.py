"""Tests for edge_server/renewal.py - certificate renewal supervision."""

import logging
import socket
import subprocess
import sys
import textwrap
import threading
import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from conftest import free_port
from edge_server.errors import FatalRestartError, RenewalCommandError, ServerStartError
from edge_server.pair import ServerPair
from edge_server.renewal import (
    FATAL_EXIT_CODE,
    RenewalOutcome,
    RenewalState,
    RenewalSupervisor,
    run_renewal,
)


SRC_DIR = Path(__file__).parent.parent / "src"


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def _port_bindable(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            s.bind(("127.0.0.1", port))
        except OSError:
            return False
        return True


class FakePair:
    """Stands in for ServerPair and records lifecycle calls."""

    def __init__(self, events, fail_start=False):
        self.events = events
        self.fail_start = fail_start
        self.live = False

    def start(self):
        self.events.append("start")
        if self.fail_start:
            raise ServerStartError([OSError("address in use")])
        self.live = True

    def stop(self):
        self.events.append("stop")
        self.live = False


class FakeRunner:
    """Returns canned outcomes and records the calls it receives."""

    def __init__(self, events, *outcomes):
        self.events = events
        self.outcomes = list(outcomes) or [RenewalOutcome(0, b"", b"")]
        self.calls = []

    def __call__(self, command, timeout=None):
        self.events.append("renew")
        self.calls.append((command, timeout))
        if len(self.outcomes) > 1:
            return self.outcomes.pop(0)
        return self.outcomes[0]


class SlowRunner(FakeRunner):
    """FakeRunner that takes a while and records how many calls overlap."""

    def __init__(self, events, delay):
        super().__init__(events)
        self.delay = delay
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def __call__(self, command, timeout=None):
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            time.sleep(self.delay)
            return super().__call__(command, timeout)
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture
def events():
    return []


def _supervisor(events, runner=None, fail_restart=False, **kwargs):
    initial = FakePair(events)
    initial.live = True
    kwargs.setdefault("interval", 3600)
    return RenewalSupervisor(
        initial,
        lambda: FakePair(events, fail_start=fail_restart),
        runner=runner or FakeRunner(events),
        exit_func=kwargs.pop("exit_func", MagicMock()),
        **kwargs,
    )


class TestRenewalOutcome:
    """Tests for RenewalOutcome."""

    def test_succeeded(self):
        assert RenewalOutcome(0, b"", b"").succeeded
        assert not RenewalOutcome(1, b"", b"").succeeded
        assert not RenewalOutcome(-1, b"", b"").succeeded

    def test_log_prefixes_output(self, caplog):
        outcome = RenewalOutcome(0, b"line one\nline two\n", b"warn\n")
        with caplog.at_level(logging.INFO):
            outcome.log()
        assert "Certbot stdout:\n>>  line one\n>>  line two" in caplog.text
        assert "Certbot stderr:\n>>  warn" in caplog.text

    def test_log_skips_empty_streams(self, caplog):
        with caplog.at_level(logging.INFO):
            RenewalOutcome(0, b"", b"").log()
        assert "Certbot" not in caplog.text


class TestRunRenewal:
    """Tests for run_renewal with real subprocesses."""

    def test_success(self):
        outcome = run_renewal([sys.executable, "-c", "print('renewed')"])
        assert outcome.succeeded
        assert outcome.stdout == b"renewed\n"

    def test_failure_exit_code(self):
        outcome = run_renewal([sys.executable, "-c", "raise SystemExit(2)"])
        assert outcome.exit_code == 2

    def test_timeout_counts_as_failure(self):
        outcome = run_renewal(
            [sys.executable, "-c", "import time; time.sleep(5)"], timeout=0.2
        )
        assert outcome.exit_code == -1
        assert not outcome.succeeded


class TestRenewOnce:
    """Tests for a single release -> renew -> restart cycle."""

    def test_order_of_operations(self, events):
        """The old pair is stopped before the command, restart comes after."""
        supervisor = _supervisor(events)
        old_pair = supervisor.pair

        supervisor.renew_once()

        assert events == ["stop", "renew", "start"]
        assert supervisor.pair is not old_pair
        assert supervisor.pair.live
        assert supervisor.state is RenewalState.IDLE
        assert supervisor.cycles == 1

    def test_command_and_timeout_passed(self, events):
        runner = FakeRunner(events)
        supervisor = _supervisor(
            events, runner=runner, command=("certbot", "renew", "-q"), command_timeout=30
        )
        supervisor.renew_once()
        assert runner.calls == [(("certbot", "renew", "-q"), 30)]

    def test_failed_command_still_restarts(self, events):
        """A non-zero exit code restarts the servers, then raises."""
        runner = FakeRunner(events, RenewalOutcome(1, b"", b"rate limited"))
        supervisor = _supervisor(events, runner=runner)

        with pytest.raises(RenewalCommandError, match="exit-code 1") as exc_info:
            supervisor.renew_once()

        assert events == ["stop", "renew", "start"]
        assert supervisor.pair.live
        assert exc_info.value.outcome.stderr == b"rate limited"
        assert supervisor.last_outcome.exit_code == 1

    def test_runner_exception_still_restarts(self, events):
        def broken_runner(command, timeout=None):
            events.append("renew")
            raise OSError("spawn failed")

        supervisor = _supervisor(events, runner=broken_runner)
        with pytest.raises(OSError, match="spawn failed"):
            supervisor.renew_once()
        assert events == ["stop", "renew", "start"]
        assert supervisor.pair.live

    def test_release_failure_still_restarts(self, events):
        """If stopping the old pair blows up, renewal is skipped but restart runs."""
        supervisor = _supervisor(events)
        supervisor.pair.stop = MagicMock(side_effect=RuntimeError("drain failed"))

        with pytest.raises(RuntimeError, match="drain failed"):
            supervisor.renew_once()
        assert events == ["start"]
        assert supervisor.pair.live

    def test_restart_failure_is_fatal(self, events):
        exit_func = MagicMock()
        supervisor = _supervisor(events, fail_restart=True, exit_func=exit_func)

        with pytest.raises(FatalRestartError):
            supervisor.renew_once()

        exit_func.assert_called_once_with(FATAL_EXIT_CODE)
        assert supervisor.state is RenewalState.FATAL
        assert supervisor.pair is None

    def test_restart_failure_after_command_failure_is_fatal(self, events):
        """A restart failure wins over the command failure."""
        exit_func = MagicMock()
        runner = FakeRunner(events, RenewalOutcome(3, b"", b""))
        supervisor = _supervisor(events, runner=runner, fail_restart=True, exit_func=exit_func)

        with pytest.raises(FatalRestartError):
            supervisor.renew_once()
        exit_func.assert_called_once_with(FATAL_EXIT_CODE)

    def test_logs_cert_prefixed(self, events, caplog):
        supervisor = _supervisor(events)
        with caplog.at_level(logging.INFO):
            supervisor.renew_once()
        messages = [r.getMessage() for r in caplog.records]
        assert "CERT: Performing cert renewal..." in messages
        assert "CERT: Freeing ports 80 and 443..." in messages
        assert "CERT: Running certbot script..." in messages
        assert "CERT: Restarting servers..." in messages
        assert "CERT: Cert renewal success!" in messages

    def test_fatal_logged_critical(self, events, caplog):
        supervisor = _supervisor(events, fail_restart=True)
        with caplog.at_level(logging.INFO), pytest.raises(FatalRestartError):
            supervisor.renew_once()
        critical = [r for r in caplog.records if r.levelno == logging.CRITICAL]
        assert len(critical) == 1
        assert "unable to restart servers" in critical[0].getMessage()


class TestRenewalLoop:
    """Tests for the scheduling loop."""

    def test_first_delay_short(self, events):
        """With a short first delay the first cycle runs well before the interval."""
        supervisor = _supervisor(events, interval=3600, first_delay=0.05)
        supervisor.start()
        try:
            assert _wait_for(lambda: supervisor.cycles == 1)
            time.sleep(0.2)
            assert supervisor.cycles == 1
        finally:
            supervisor.close(timeout=5)

    def test_no_cycle_before_interval(self, events):
        supervisor = _supervisor(events, interval=3600)
        supervisor.start()
        try:
            time.sleep(0.2)
            assert supervisor.cycles == 0
            assert events == []
        finally:
            supervisor.close(timeout=5)

    def test_repeats_every_interval(self, events):
        supervisor = _supervisor(events, interval=0.05)
        supervisor.start()
        try:
            assert _wait_for(lambda: supervisor.cycles >= 3)
        finally:
            supervisor.close(timeout=5)
        assert events[:6] == ["stop", "renew", "start", "stop", "renew", "start"]

    def test_trigger_runs_cycle_now(self, events):
        supervisor = _supervisor(events, interval=3600)
        supervisor.start()
        try:
            supervisor.trigger()
            assert _wait_for(lambda: supervisor.cycles == 1)
        finally:
            supervisor.close(timeout=5)

    def test_failure_stops_scheduling(self, events, caplog):
        """After a failed command the servers are back but no further cycles run."""
        runner = FakeRunner(events, RenewalOutcome(1, b"", b""))
        supervisor = _supervisor(events, runner=runner, interval=0.05)
        with caplog.at_level(logging.INFO):
            supervisor.start()
            assert _wait_for(lambda: not supervisor.running)
        try:
            assert supervisor.cycles == 1
            assert isinstance(supervisor.failure, RenewalCommandError)
            assert supervisor.pair.live
            assert "no further renewals will be attempted" in caplog.text
        finally:
            supervisor.close(timeout=5)

    def test_resume_after_failure(self, events):
        runner = FakeRunner(
            events, RenewalOutcome(1, b"", b""), RenewalOutcome(0, b"", b"")
        )
        supervisor = _supervisor(
            events, runner=runner, interval=0.05, resume_after_failure=True
        )
        supervisor.start()
        try:
            assert _wait_for(lambda: supervisor.cycles >= 2)
            assert supervisor.running
            assert supervisor.failure is None
        finally:
            supervisor.close(timeout=5)

    def test_fatal_restart_ends_loop(self, events):
        exit_func = MagicMock()
        supervisor = _supervisor(
            events, fail_restart=True, interval=0.05, exit_func=exit_func,
            resume_after_failure=True,
        )
        supervisor.start()
        assert _wait_for(lambda: not supervisor.running)
        exit_func.assert_called_once_with(FATAL_EXIT_CODE)
        assert isinstance(supervisor.failure, FatalRestartError)
        supervisor.close(timeout=5)

    def test_close_stops_pair(self, events):
        supervisor = _supervisor(events)
        pair = supervisor.pair
        supervisor.start()
        supervisor.close(timeout=5)

        assert not supervisor.running
        assert not pair.live
        assert supervisor.pair is None

    def test_close_without_start(self, events):
        supervisor = _supervisor(events)
        supervisor.close()
        assert events == ["stop"]

    def test_start_twice_rejected(self, events):
        supervisor = _supervisor(events)
        supervisor.start()
        try:
            with pytest.raises(RuntimeError):
                supervisor.start()
        finally:
            supervisor.close(timeout=5)


class TestRenewalWithRealServers:
    """Renewal cycles against real listeners on ephemeral ports."""

    @pytest.fixture
    def pair_factory(self, cert_dir, ok_handler):
        ports = {"https_port": free_port(), "http_port": free_port()}

        def factory():
            return ServerPair("127.0.0.1", cert_dir, ok_handler, **ports)

        factory.ports = ports
        return factory

    def test_ports_free_while_command_runs(self, pair_factory):
        """The renewal command can bind both ports."""
        observed = {}

        def runner(command, timeout=None):
            observed["https"] = _port_bindable(pair_factory.ports["https_port"])
            observed["http"] = _port_bindable(pair_factory.ports["http_port"])
            return RenewalOutcome(0, b"", b"")

        pair = pair_factory()
        pair.start()
        supervisor = RenewalSupervisor(pair, pair_factory, runner=runner, exit_func=MagicMock())
        try:
            supervisor.renew_once()
            assert observed == {"https": True, "http": True}
            assert supervisor.pair.live
            assert not _port_bindable(pair_factory.ports["https_port"])
        finally:
            supervisor.close()

    def test_missing_cert_on_restart_is_fatal(self, pair_factory, cert_dir):
        """If the command leaves no usable certificate the restart fails."""
        exit_func = MagicMock()

        def runner(command, timeout=None):
            (cert_dir / "privkey.pem").unlink()
            return RenewalOutcome(0, b"", b"")

        pair = pair_factory()
        pair.start()
        supervisor = RenewalSupervisor(pair, pair_factory, runner=runner, exit_func=exit_func)

        with pytest.raises(FatalRestartError) as exc_info:
            supervisor.renew_once()

        assert isinstance(exc_info.value.__cause__, ServerStartError)
        exit_func.assert_called_once_with(FATAL_EXIT_CODE)
        assert _port_bindable(pair_factory.ports["http_port"])


class TestCycleOverlap:
    """Cycles run one after another however they are requested."""

    def test_triggers_and_direct_calls_never_overlap(self, events):
        runner = SlowRunner(events, delay=0.1)
        supervisor = _supervisor(events, runner=runner, interval=3600)
        supervisor.start()
        try:
            supervisor.trigger()
            assert _wait_for(lambda: supervisor.cycles == 1)

            # Triggers arriving mid-cycle queue at most one follow-up cycle
            for _ in range(20):
                supervisor.trigger()
                time.sleep(0.005)

            threads = [threading.Thread(target=supervisor.renew_once) for _ in range(3)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(timeout=10)

            assert _wait_for(
                lambda: supervisor.cycles >= 5
                and runner.active == 0
                and supervisor.state is RenewalState.IDLE
            )
        finally:
            supervisor.close(timeout=10)

        assert runner.peak == 1
        # Last event is the stop from close()
        cycle_events = events[:-1]
        assert len(cycle_events) == 3 * supervisor.cycles
        assert cycle_events == ["stop", "renew", "start"] * supervisor.cycles


FATAL_RESTART_SCRIPT = textwrap.dedent('''
    import logging
    import socket
    import sys

    sys.path.insert(0, sys.argv[1])

    from http.server import BaseHTTPRequestHandler

    from edge_server.pair import ServerPair
    from edge_server.renewal import RenewalOutcome, RenewalSupervisor

    cert_dir, https_port, http_port = sys.argv[2], int(sys.argv[3]), int(sys.argv[4])
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")
    held = []


    def factory():
        return ServerPair(
            "127.0.0.1", cert_dir, BaseHTTPRequestHandler,
            https_port=https_port, http_port=http_port,
        )


    def runner(command, timeout=None):
        # Another process takes the http port while the servers are down
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", http_port))
        blocker.listen(1)
        held.append(blocker)
        return RenewalOutcome(0, b"", b"")


    pair = factory()
    pair.start()
    RenewalSupervisor(pair, factory, runner=runner).renew_once()
    print("renew_once returned")
''')


class TestFatalRestartExit:
    """The default exit hook really terminates the process."""

    def test_bind_failure_on_restart_exits(self, cert_dir, tmp_path):
        script = tmp_path / "fatal_restart.py"
        script.write_text(FATAL_RESTART_SCRIPT)

        result = subprocess.run(
            [
                sys.executable, str(script), str(SRC_DIR), str(cert_dir),
                str(free_port()), str(free_port()),
            ],
            capture_output=True,
            text=True,
            timeout=60,
        )

        assert result.returncode == FATAL_EXIT_CODE
        assert "renew_once returned" not in result.stdout
        assert "[CRITICAL] CERT: Fatal error; unable to restart servers" in result.stderr
        assert "BindError" in result.stderr
