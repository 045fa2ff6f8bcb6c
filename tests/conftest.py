"""
Shared fixtures: settings pointing at a private temp root, and a scripted
runner that stands in for docker or a host process.
"""

import json

import pytest

from judge.config import Settings
from judge.executor import Dispatcher
from judge.sandbox import RawExecutionOutput, RunnerStrategy


class ScriptedRunner:
    """Runner double: records each call and answers through ``respond``."""

    def __init__(self, respond, strategy=RunnerStrategy.SANDBOXED):
        self.respond = respond
        self.strategy = strategy
        self.calls = []
        self.files = {}

    def run(self, artifact, limits, context):
        self.calls.append((artifact, limits, context))
        self.files = {p.name: p.read_text(encoding='utf-8') for p in artifact.workdir.iterdir()}
        return self.respond(artifact, limits, context)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        temp_dir=str(tmp_path / 'work'),
        max_concurrency=2,
        queue_timeout_ms=200,
        grace_ms=200,
        host_margin_ms=100,
    )


@pytest.fixture
def harness_output():
    """Build the raw output a well-behaved harness would produce."""

    def _build(results, exit_code=0, stderr='', prefix=''):
        stdout = prefix + '\n' + json.dumps(results) + '\n'
        return RawExecutionOutput(stdout=stdout, stderr=stderr, exit_code=exit_code, timed_out=False, duration_ms=12.0)

    return _build


@pytest.fixture
def make_dispatcher(settings):
    def _make(respond, pool=None, dispatcher_settings=None):
        runner = ScriptedRunner(respond)
        native = ScriptedRunner(respond, strategy=RunnerStrategy.NATIVE)
        dispatcher = Dispatcher(
            dispatcher_settings or settings,
            pool=pool,
            runners={RunnerStrategy.SANDBOXED: runner, RunnerStrategy.NATIVE: native},
        )
        return dispatcher, runner

    return _make


@pytest.fixture
def add_submission():
    def _build(**overrides):
        fields = dict(
            source_code='function add(a, b) { return a + b; }',
            language='javascript',
            test_cases=[{'input': [2, 3], 'expected': 5, 'description': 'adds two numbers'}],
            function_name='add',
            time_limit_ms=1000,
            memory_limit_mb=128,
        )
        fields.update(overrides)
        return fields

    return _build
