import json
import logging
from typing import Any, Iterable, List, Sequence, Tuple

from .sandbox import RawExecutionOutput
from .schemas import Outcome, TestCase, TestResult


logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = 'Execution timed out after {limit}ms'
MEMORY_MESSAGE = 'Memory limit exceeded ({limit} MB)'
# protocol breaches are operational faults; the learner only sees this
SANDBOX_MESSAGE = 'Internal execution error, please try again later'

_NO_RESULT = object()


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + '... [truncated]'


def _result_line(stdout: str) -> Any:
    """Decode the last non-empty line of stdout; earlier lines are learner prints."""
    for line in reversed(stdout.splitlines()):
        if not line.strip():
            continue
        try:
            return json.loads(line)
        except ValueError:
            return _NO_RESULT
    return _NO_RESULT


def _protocol_problem(payload: Any, expected_count: int) -> str:
    if not isinstance(payload, list):
        return f'result line is {type(payload).__name__}, not an array'
    if len(payload) != expected_count:
        return f'harness reported {len(payload)} results for {expected_count} test cases'
    for index, item in enumerate(payload):
        if not isinstance(item, dict) or not isinstance(item.get('passed'), bool):
            return f'result {index} is malformed'
    return ''


def fail_all(test_cases: Sequence[TestCase], error: str, total_ms: float) -> List[TestResult]:
    share = total_ms / len(test_cases) if test_cases else 0.0
    return [
        TestResult(
            passed=False,
            expected=tc.expected,
            error=error,
            description=tc.description,
            execution_time_ms=share,
        )
        for tc in test_cases
    ]


def _map_results(payload: Iterable[dict], test_cases: Sequence[TestCase], total_ms: float, max_error_chars: int) -> List[TestResult]:
    share = total_ms / len(test_cases) if test_cases else 0.0
    results = []
    for tc, item in zip(test_cases, payload):
        fields = {
            'passed': item['passed'],
            'expected': tc.expected,
            'description': tc.description,
        }
        if 'actual' in item:
            fields['actual'] = item['actual']
        error = item.get('error')
        if error:
            fields['error'] = truncate(str(error), max_error_chars)
        elapsed = item.get('executionTimeMs')
        if isinstance(elapsed, (int, float)) and not isinstance(elapsed, bool):
            fields['execution_time_ms'] = float(elapsed)
        else:
            fields['execution_time_ms'] = share
        results.append(TestResult(**fields))
    return results


def parse_output(
    raw: RawExecutionOutput,
    test_cases: Sequence[TestCase],
    compile_markers: Tuple[str, ...] = (),
    time_limit_ms: int = 0,
    memory_limit_mb: int = 0,
    max_error_chars: int = 2000,
) -> Tuple[List[TestResult], Outcome]:
    """Turn raw runner output into one verdict per test case, in order."""
    total_ms = raw.duration_ms

    if raw.timed_out:
        # partial stdout is never trusted after a forced stop
        return fail_all(test_cases, TIMEOUT_MESSAGE.format(limit=time_limit_ms), total_ms), Outcome.TIMEOUT

    if raw.oom_killed:
        return fail_all(test_cases, MEMORY_MESSAGE.format(limit=memory_limit_mb), total_ms), Outcome.RUNTIME_ERROR

    payload = _result_line(raw.stdout)
    # a crash after a learner print leaves a stray JSON scalar as the last line
    if payload is _NO_RESULT or (raw.exit_code != 0 and not isinstance(payload, list)):
        if raw.exit_code != 0:
            detail = raw.stderr.strip() or f'Process exited with code {raw.exit_code}'
            outcome = Outcome.RUNTIME_ERROR
            if any(marker in raw.stderr for marker in compile_markers):
                outcome = Outcome.COMPILE_ERROR
            return fail_all(test_cases, truncate(detail, max_error_chars), total_ms), outcome
        logger.error('harness protocol violation: exit code 0 but no JSON result line (stdout %d chars)', len(raw.stdout))
        return fail_all(test_cases, SANDBOX_MESSAGE, total_ms), Outcome.SANDBOX_ERROR

    problem = _protocol_problem(payload, len(test_cases))
    if problem:
        logger.error('harness protocol violation: %s', problem)
        return fail_all(test_cases, SANDBOX_MESSAGE, total_ms), Outcome.SANDBOX_ERROR

    return _map_results(payload, test_cases, total_ms, max_error_chars), Outcome.COMPLETED
