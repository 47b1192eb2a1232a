"""Unit Tests for ProcessRunner - exit codes, streaming and timeouts"""
import time

import pytest

from synapscript.runner.process import ProcessRunner, ProcessTimeoutError


@pytest.fixture
def runner():
    return ProcessRunner()


class TestExitCodes:
    """Exit status is returned, never raised"""

    def test_successful_command(self, runner):
        """echo should exit 0 with its output captured"""
        result = runner.run('echo hello', timeout=10)
        assert result.exit_code == 0
        assert result.success is True
        assert result.stdout == 'hello\n'
        assert result.stderr == ''

    def test_non_zero_exit_is_returned(self, runner):
        """A failing command reports its exit code instead of raising"""
        result = runner.run('exit 3', timeout=10)
        assert result.exit_code == 3
        assert result.success is False

    def test_stderr_is_captured_separately(self, runner):
        """stderr output should not leak into stdout"""
        result = runner.run('echo out; echo oops 1>&2', timeout=10)
        assert result.stdout == 'out\n'
        assert result.stderr == 'oops\n'

    def test_duration_is_recorded(self, runner):
        """duration_seconds reflects wall time"""
        result = runner.run('sleep 0.2', timeout=10)
        assert result.duration_seconds >= 0.2


class TestStreaming:
    """Output is surfaced line by line while the process runs"""

    def test_stdout_lines_forwarded_in_order(self, runner):
        """Every stdout line reaches the callback in order"""
        lines = []
        runner.run("printf 'a\\nb\\nc\\n'", timeout=10, on_stdout=lines.append)
        assert lines == ['a\n', 'b\n', 'c\n']

    def test_stderr_lines_forwarded(self, runner):
        """stderr lines go to the stderr callback"""
        out, err = [], []
        runner.run('echo x; echo y 1>&2', timeout=10, on_stdout=out.append, on_stderr=err.append)
        assert out == ['x\n']
        assert err == ['y\n']

    def test_lines_arrive_before_exit(self, runner):
        """The first line is delivered before the command finishes"""
        arrivals = []
        start = time.time()
        runner.run('echo first; sleep 1; echo second', timeout=10,
                   on_stdout=lambda line: arrivals.append(time.time() - start))
        assert len(arrivals) == 2
        assert arrivals[0] < 0.9
        assert arrivals[1] >= 0.9

    def test_failing_callback_does_not_break_capture(self, runner):
        """A callback that raises is logged and output is still aggregated"""
        def boom(line):
            raise RuntimeError("callback failed")

        result = runner.run('echo one; echo two', timeout=10, on_stdout=boom)
        assert result.exit_code == 0
        assert result.stdout == 'one\ntwo\n'


class TestTimeout:
    """Commands exceeding the timeout are killed and reported"""

    @pytest.mark.slow
    def test_timeout_raises_with_command_and_elapsed(self, runner):
        """TimeoutError carries the command text and elapsed time"""
        start = time.time()
        with pytest.raises(ProcessTimeoutError) as exc_info:
            runner.run('sleep 5', timeout=0.5)

        assert time.time() - start < 4
        assert exc_info.value.command == 'sleep 5'
        assert exc_info.value.elapsed >= 0.5
        assert 'sleep 5' in str(exc_info.value)
        assert isinstance(exc_info.value, TimeoutError)

    @pytest.mark.slow
    def test_timed_out_process_is_killed(self, runner, tmp_path):
        """Children of a timed-out command never get to finish"""
        marker = tmp_path / 'survived'
        with pytest.raises(ProcessTimeoutError):
            runner.run(f'sleep 1.5 && touch {marker}', timeout=0.3)

        time.sleep(2)
        assert not marker.exists()

    @pytest.mark.slow
    def test_background_child_holding_pipes_times_out(self, runner, tmp_path):
        """A shell that exits while a background child keeps stdout open still honours the timeout"""
        marker = tmp_path / 'survived'
        lines = []
        start = time.time()
        with pytest.raises(ProcessTimeoutError):
            runner.run(f'(sleep 3 && touch {marker}) & echo started', timeout=0.5, on_stdout=lines.append)

        assert time.time() - start < 2.5
        assert lines == ['started\n']

        time.sleep(3)
        assert not marker.exists()

    def test_quick_background_child_within_timeout(self, runner):
        """Background output that finishes before the deadline is collected normally"""
        result = runner.run('(sleep 0.2; echo late) & echo early', timeout=10)
        assert result.exit_code == 0
        assert result.stdout == 'early\nlate\n'
