"""Tests for the dispatcher: validation, lifecycle, classification, concurrency."""

import os
import threading
import time

import pytest

from judge.config import Settings
from judge.errors import InvalidSubmission, Overloaded, SandboxFailure
from judge.pool import WorkerPool
from judge.sandbox import RawExecutionOutput, RunnerStrategy
from judge.schemas import Outcome


def _leftovers(settings):
    if not os.path.isdir(settings.temp_dir):
        return []
    return os.listdir(settings.temp_dir)


def test_passing_submission(make_dispatcher, add_submission, harness_output, settings):
    dispatcher, runner = make_dispatcher(lambda *_: harness_output(
        [{'passed': True, 'expected': 5, 'actual': 5, 'description': 'adds two numbers'}]
    ))
    report = dispatcher.submit(**add_submission())

    assert report.outcome is Outcome.COMPLETED
    assert report.success is True
    assert len(report.results) == 1
    assert report.results[0].passed is True
    assert report.results[0].actual == 5
    assert report.results[0].expected == 5
    assert report.total_time_ms > 0
    assert 'solution.js' in runner.files
    assert _leftovers(settings) == []


def test_failing_submission_reports_actual(make_dispatcher, add_submission, harness_output):
    dispatcher, _ = make_dispatcher(lambda *_: harness_output(
        [{'passed': False, 'expected': 5, 'actual': 4, 'description': 'adds two numbers'}]
    ))
    report = dispatcher.submit(**add_submission(source_code='function add(a, b) { return 4; }'))

    assert report.outcome is Outcome.COMPLETED
    assert report.success is False
    assert report.results[0].passed is False
    assert report.results[0].actual == 4
    assert report.passed_tests == 0
    assert report.total_tests == 1


@pytest.mark.parametrize('overrides', [
    {'language': 'cobol'},
    {'test_cases': []},
    {'test_cases': None},
    {'source_code': '   '},
    {'function_name': 'add(); process.exit(0); //'},
    {'time_limit_ms': 0},
    {'time_limit_ms': 60000},
    {'memory_limit_mb': 4096},
])
def test_invalid_submissions_are_rejected_before_running(overrides, make_dispatcher, add_submission, harness_output):
    dispatcher, runner = make_dispatcher(lambda *_: harness_output([]))
    with pytest.raises(InvalidSubmission):
        dispatcher.submit(**add_submission(**overrides))
    assert runner.calls == []
    assert dispatcher.pool.available == dispatcher.pool.capacity


def test_too_many_test_cases(make_dispatcher, add_submission, harness_output, settings):
    limited = settings.model_copy(update={'max_test_cases': 2})
    dispatcher, _ = make_dispatcher(lambda *_: harness_output([]), dispatcher_settings=limited)
    cases = [{'input': [i, i], 'expected': 2 * i} for i in range(3)]
    with pytest.raises(InvalidSubmission):
        dispatcher.submit(**add_submission(test_cases=cases))


def test_deadline_kills_runaway_submission(make_dispatcher, add_submission, settings):
    def hang_until_killed(artifact, limits, context):
        killed = threading.Event()
        context.on_cancel(killed.set)
        killed.wait(10)
        return RawExecutionOutput(stdout='', stderr='', exit_code=137, timed_out=False)

    dispatcher, _ = make_dispatcher(hang_until_killed)
    started = time.monotonic()
    report = dispatcher.submit(**add_submission(source_code='function add() { while (true) {} }', time_limit_ms=500))
    elapsed = time.monotonic() - started

    assert report.outcome is Outcome.TIMEOUT
    # 500ms limit + 100ms host margin + 200ms grace
    assert elapsed < 3.0
    assert all(not r.passed and '500ms' in r.error for r in report.results)
    assert _leftovers(settings) == []
    assert dispatcher.pool.available == dispatcher.pool.capacity


def test_runner_reported_timeout(make_dispatcher, add_submission):
    dispatcher, _ = make_dispatcher(
        lambda *_: RawExecutionOutput(stdout='partial', stderr='', exit_code=124, timed_out=True)
    )
    report = dispatcher.submit(**add_submission(time_limit_ms=750))
    assert report.outcome is Outcome.TIMEOUT
    assert '750ms' in report.results[0].error


def test_short_harness_output_is_sandbox_error(make_dispatcher, add_submission, harness_output):
    cases = [{'input': [i, 1], 'expected': i + 1, 'description': f'case {i}'} for i in range(3)]
    dispatcher, _ = make_dispatcher(lambda *_: harness_output([
        {'passed': True, 'expected': 1, 'actual': 1, 'description': 'case 0'},
        {'passed': True, 'expected': 2, 'actual': 2, 'description': 'case 1'},
    ]))
    report = dispatcher.submit(**add_submission(test_cases=cases))

    assert report.outcome is Outcome.SANDBOX_ERROR
    assert len(report.results) == 3
    assert report.success is False


def test_compile_error_classification(make_dispatcher, add_submission):
    dispatcher, _ = make_dispatcher(lambda *_: RawExecutionOutput(
        stdout='', stderr="solution.ts(1,1): error TS1005: '}' expected.", exit_code=1, timed_out=False,
    ))
    report = dispatcher.submit(**add_submission(language='typescript'))
    assert report.outcome is Outcome.COMPILE_ERROR
    assert 'TS1005' in report.results[0].error


def test_runner_failure_becomes_sandbox_error(make_dispatcher, add_submission, settings):
    def broken(artifact, limits, context):
        raise SandboxFailure('daemon went away: /var/run/docker.sock')

    dispatcher, _ = make_dispatcher(broken)
    report = dispatcher.submit(**add_submission())

    assert report.outcome is Outcome.SANDBOX_ERROR
    assert 'docker.sock' not in report.results[0].error
    assert _leftovers(settings) == []
    assert dispatcher.pool.available == dispatcher.pool.capacity


def test_teardown_failure_becomes_sandbox_error(make_dispatcher, add_submission, harness_output):
    def leaves_stuck_unit(artifact, limits, context):
        def teardown():
            raise RuntimeError('container is stuck')
        context.register_unit(context.unit_name, teardown)
        return harness_output([{'passed': True, 'expected': 5, 'actual': 5, 'description': 'x'}])

    dispatcher, _ = make_dispatcher(leaves_stuck_unit)
    report = dispatcher.submit(**add_submission())
    assert report.outcome is Outcome.SANDBOX_ERROR
    assert dispatcher.pool.available == dispatcher.pool.capacity


def test_teardown_happens_before_slot_release(make_dispatcher, add_submission, harness_output, settings):
    events = []

    class RecordingPool(WorkerPool):
        def release(self):
            events.append('release')
            super().release()

    def run(artifact, limits, context):
        context.register_unit(context.unit_name, lambda: events.append('teardown'))
        return harness_output([{'passed': True, 'expected': 5, 'actual': 5, 'description': 'x'}])

    dispatcher, _ = make_dispatcher(run, pool=RecordingPool(1))
    dispatcher.submit(**add_submission())
    assert events == ['teardown', 'release']


def test_saturated_pool_raises_overloaded(make_dispatcher, add_submission, harness_output):
    pool = WorkerPool(1)
    dispatcher, runner = make_dispatcher(lambda *_: harness_output([]), pool=pool)
    pool.acquire()
    try:
        with pytest.raises(Overloaded):
            dispatcher.submit(**add_submission())
    finally:
        pool.release()
    assert runner.calls == []


def test_each_execution_gets_its_own_context(make_dispatcher, add_submission, harness_output):
    dispatcher, runner = make_dispatcher(lambda *_: harness_output(
        [{'passed': True, 'expected': 5, 'actual': 5, 'description': 'x'}]
    ))
    dispatcher.submit(**add_submission())
    dispatcher.submit(**add_submission())

    (a1, _, c1), (a2, _, c2) = runner.calls
    assert a1.workdir != a2.workdir
    assert c1.unit_name != c2.unit_name
    assert c1.execution_id != c2.execution_id


def test_sandbox_timeout_override_applies_to_sandboxed_path_only(make_dispatcher, add_submission, harness_output, settings):
    ok = [{'passed': True, 'expected': 5, 'actual': 5, 'description': 'x'}]
    overridden = settings.model_copy(update={'sandbox_timeout_ms': 1500, 'native_languages': ['php']})
    dispatcher, runner = make_dispatcher(lambda *_: harness_output(ok), dispatcher_settings=overridden)

    dispatcher.submit(**add_submission(time_limit_ms=800))
    _, limits, _ = runner.calls[-1]
    assert limits.time_limit_ms == 1500
    assert limits.host_timeout_ms == 1500 + overridden.host_margin_ms
    assert limits.deadline_ms == limits.host_timeout_ms + overridden.grace_ms

    native_runner = dispatcher._runners[RunnerStrategy.NATIVE]
    dispatcher.submit(**add_submission(language='php', time_limit_ms=800))
    _, native_limits, _ = native_runner.calls[-1]
    assert native_limits.time_limit_ms == 800


def test_go_limit_bounds_the_run_phase_not_the_build(make_dispatcher, add_submission, harness_output, settings):
    ok = [{'passed': True, 'expected': 5, 'actual': 5, 'description': 'x'}]
    dispatcher, runner = make_dispatcher(lambda *_: harness_output(ok))
    dispatcher.submit(**add_submission(language='go', source_code='func add(a, b int) int { return a + b }'))

    artifact, limits, _ = runner.calls[-1]
    assert limits.time_limit_ms == 1000
    # only the outer timeouts carry the build allowance
    assert limits.wall_timeout_ms == 1000 + settings.go_build_allowance_ms
    script = artifact.command[-1]
    assert script.index('go build') < script.index('timeout -k 1 1.000 ./solution')


def test_go_run_phase_uses_overridden_sandbox_limit(make_dispatcher, add_submission, harness_output, settings):
    ok = [{'passed': True, 'expected': 5, 'actual': 5, 'description': 'x'}]
    overridden = settings.model_copy(update={'sandbox_timeout_ms': 1500})
    dispatcher, runner = make_dispatcher(lambda *_: harness_output(ok), dispatcher_settings=overridden)
    dispatcher.submit(**add_submission(language='go', source_code='func add(a, b int) int { return a + b }'))

    artifact, _, _ = runner.calls[-1]
    assert 'timeout -k 1 1.500 ./solution' in artifact.command[-1]


def test_concurrent_mixed_batch_leaks_nothing(make_dispatcher, add_submission, harness_output, settings):
    roomy = settings.model_copy(update={'queue_timeout_ms': 10000})
    lock = threading.Lock()
    active = [0]
    peak = [0]

    def run(artifact, limits, context):
        with lock:
            active[0] += 1
            peak[0] = max(peak[0], active[0])
        try:
            source = (artifact.workdir / 'solution.js').read_text()
            if 'hang' in source:
                killed = threading.Event()
                context.on_cancel(killed.set)
                killed.wait(10)
                return RawExecutionOutput(stdout='', stderr='', exit_code=137, timed_out=False)
            if 'crash' in source:
                raise SandboxFailure('container create failed')
            time.sleep(0.02)
            return harness_output([{'passed': True, 'expected': 5, 'actual': 5, 'description': 'x'}])
        finally:
            with lock:
                active[0] -= 1

    dispatcher, _ = make_dispatcher(run, dispatcher_settings=roomy)
    kinds = ['ok', 'hang', 'crash'] * 3
    reports = {}

    def worker(index, kind):
        code = f'function add(a, b) {{ /* {kind} */ return a + b; }}'
        reports[index] = dispatcher.submit(**add_submission(source_code=code, time_limit_ms=200))

    threads = [threading.Thread(target=worker, args=(i, k)) for i, k in enumerate(kinds)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(30)

    assert len(reports) == len(kinds)
    expected = {'ok': Outcome.COMPLETED, 'hang': Outcome.TIMEOUT, 'crash': Outcome.SANDBOX_ERROR}
    for index, kind in enumerate(kinds):
        assert reports[index].outcome is expected[kind]
    assert peak[0] <= dispatcher.pool.capacity
    assert dispatcher.pool.available == dispatcher.pool.capacity
    assert _leftovers(roomy) == []


def test_default_runners_cover_both_strategies(tmp_path):
    from judge.executor import Dispatcher

    dispatcher = Dispatcher(Settings(temp_dir=str(tmp_path)))
    assert set(dispatcher._runners) == set(RunnerStrategy)


def test_module_level_submit_uses_given_dispatcher(make_dispatcher, add_submission, harness_output):
    from judge.executor import submit

    dispatcher, runner = make_dispatcher(lambda *_: harness_output(
        [{'passed': True, 'expected': 5, 'actual': 5, 'description': 'adds two numbers'}]
    ))
    report = submit(dispatcher=dispatcher, **add_submission())
    assert report.success is True
    assert len(runner.calls) == 1
