import dataclasses
import logging
import threading
import time
from typing import Any, Dict, Optional, Sequence

from pydantic import ValidationError

from .config import Settings
from .context import ExecutionContext
from .docker_runner import DockerRunner
from .errors import InvalidSubmission, SandboxFailure
from .languages import ADAPTERS, LanguageAdapter, get_adapter
from .native_runner import NativeRunner
from .pool import WorkerPool
from .result_parser import SANDBOX_MESSAGE, fail_all, parse_output
from .sandbox import RawExecutionOutput, Runner, RunLimits, RunnerStrategy
from .schemas import ExecutionReport, Outcome, Submission
from .strategy import StrategySelector


logger = logging.getLogger(__name__)


def _summarize(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        loc = '.'.join(str(p) for p in err.get('loc', ()))
        parts.append(f'{loc}: {err.get("msg")}' if loc else str(err.get('msg')))
    return '; '.join(parts)


class Dispatcher:
    """Entry point of the engine: validate, queue, run, classify, report.

    One dispatcher is shared by all callers; the worker pool it owns is the
    only state concurrent executions have in common.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        pool: Optional[WorkerPool] = None,
        selector: Optional[StrategySelector] = None,
        runners: Optional[Dict[RunnerStrategy, Runner]] = None,
    ):
        self.settings = settings or Settings.from_env()
        self.pool = pool or WorkerPool(self.settings.max_concurrency)
        self.selector = selector or StrategySelector(self.settings)
        if runners is None:
            runners = {
                RunnerStrategy.NATIVE: NativeRunner(self.settings),
                RunnerStrategy.SANDBOXED: DockerRunner(self.settings),
            }
        self._runners = runners

    def submit(
        self,
        source_code: str,
        language: str,
        test_cases: Sequence[Any],
        function_name: str,
        time_limit_ms: int,
        memory_limit_mb: int,
    ) -> ExecutionReport:
        try:
            cases = list(test_cases)
        except TypeError:
            raise InvalidSubmission(f'test cases must be a list, got {type(test_cases).__name__}')
        try:
            submission = Submission(
                source_code=source_code,
                language=language,
                test_cases=cases,
                function_name=function_name,
                time_limit_ms=time_limit_ms,
                memory_limit_mb=memory_limit_mb,
            )
        except ValidationError as e:
            raise InvalidSubmission(_summarize(e)) from e
        return self.execute(submission)

    def validate(self, submission: Submission) -> None:
        s = self.settings
        if submission.language not in ADAPTERS:
            raise InvalidSubmission(f'unsupported language: {submission.language}')
        if not submission.source_code.strip():
            raise InvalidSubmission('source code is empty')
        if len(submission.source_code.encode('utf-8')) > s.max_source_bytes:
            raise InvalidSubmission(f'source code exceeds {s.max_source_bytes} bytes')
        if not submission.test_cases:
            raise InvalidSubmission('at least one test case is required')
        if len(submission.test_cases) > s.max_test_cases:
            raise InvalidSubmission(f'at most {s.max_test_cases} test cases are allowed')
        if submission.time_limit_ms > s.max_time_limit_ms:
            raise InvalidSubmission(f'time limit must not exceed {s.max_time_limit_ms}ms')
        if submission.memory_limit_mb > s.max_memory_limit_mb:
            raise InvalidSubmission(f'memory limit must not exceed {s.max_memory_limit_mb}MB')

    def limits_for(self, submission: Submission, adapter: LanguageAdapter) -> RunLimits:
        s = self.settings
        time_limit = submission.time_limit_ms
        if adapter.runner_strategy() is RunnerStrategy.SANDBOXED and s.sandbox_timeout_ms:
            time_limit = s.sandbox_timeout_ms
        wall = time_limit + adapter.build_allowance_ms()
        host = wall + s.host_margin_ms
        return RunLimits(
            time_limit_ms=time_limit,
            wall_timeout_ms=wall,
            host_timeout_ms=host,
            deadline_ms=host + s.grace_ms,
            memory_mb=submission.memory_limit_mb,
        )

    def execute(self, submission: Submission) -> ExecutionReport:
        self.validate(submission)
        strategy = self.selector.strategy_for(submission.language)
        adapter = get_adapter(submission.language, strategy, self.settings)
        runner = self._runners[adapter.runner_strategy()]
        limits = self.limits_for(submission, adapter)

        with self.pool.slot(timeout=self.settings.queue_timeout_ms / 1000.0):
            return self._execute_in_slot(submission, adapter, runner, limits)

    def _execute_in_slot(
        self,
        submission: Submission,
        adapter: LanguageAdapter,
        runner: Runner,
        limits: RunLimits,
    ) -> ExecutionReport:
        started = time.monotonic()
        execution_id = None
        try:
            context = ExecutionContext(self.settings.temp_dir, submission.language.value)
            execution_id = context.execution_id
            logger.info(
                'execution %s: %s via %s, %d test(s), limit %dms',
                execution_id, submission.language.value, runner.strategy.value,
                len(submission.test_cases), limits.time_limit_ms,
                extra={'execution_id': execution_id},
            )
            with context:
                raw = self._run(submission, adapter, runner, limits, context)
            # the context is gone by now; the slot is released only after this returns
        except (SandboxFailure, OSError) as e:
            elapsed = (time.monotonic() - started) * 1000.0
            logger.error('execution %s: sandbox failure: %s', execution_id, e, extra={'execution_id': execution_id})
            results = fail_all(submission.test_cases, SANDBOX_MESSAGE, elapsed)
            return ExecutionReport.build(results, Outcome.SANDBOX_ERROR, elapsed)

        results, outcome = parse_output(
            raw,
            submission.test_cases,
            compile_markers=adapter.compile_markers,
            time_limit_ms=limits.time_limit_ms,
            memory_limit_mb=limits.memory_mb,
            max_error_chars=self.settings.max_error_chars,
        )
        elapsed = (time.monotonic() - started) * 1000.0
        report = ExecutionReport.build(results, outcome, elapsed)
        logger.info(
            'execution %s: %s, %d/%d passed in %.0fms',
            execution_id, outcome.value, report.passed_tests, report.total_tests, elapsed,
            extra={'execution_id': execution_id},
        )
        return report

    def _run(
        self,
        submission: Submission,
        adapter: LanguageAdapter,
        runner: Runner,
        limits: RunLimits,
        context: ExecutionContext,
    ) -> RawExecutionOutput:
        watchdog = threading.Timer(limits.deadline_s, context.cancel)
        watchdog.name = f'judge-deadline-{context.execution_id[:12]}'
        watchdog.daemon = True
        watchdog.start()
        try:
            artifact = adapter.prepare(submission, context.workdir, limits.time_limit_ms)
            raw = runner.run(artifact, limits, context)
        finally:
            watchdog.cancel()
        if context.cancelled and not raw.timed_out:
            raw = dataclasses.replace(raw, timed_out=True)
        return raw


_default_dispatcher: Optional[Dispatcher] = None
_default_lock = threading.Lock()


def default_dispatcher() -> Dispatcher:
    """Process-wide dispatcher for library callers, built from the environment on first use."""
    global _default_dispatcher
    with _default_lock:
        if _default_dispatcher is None:
            _default_dispatcher = Dispatcher()
        return _default_dispatcher


def submit(
    source_code: str,
    language: str,
    test_cases: Sequence[Any],
    function_name: str,
    time_limit_ms: int,
    memory_limit_mb: int,
    dispatcher: Optional[Dispatcher] = None,
) -> ExecutionReport:
    return (dispatcher or default_dispatcher()).submit(
        source_code, language, test_cases, function_name, time_limit_ms, memory_limit_mb,
    )
