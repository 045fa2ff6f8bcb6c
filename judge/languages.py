import json
import re
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Type

from . import harnesses
from .config import Settings
from .sandbox import RunnableArtifact, RunnerStrategy
from .schemas import Language, Submission


TESTS_FILE = 'tests.json'
# seconds between TERM and KILL for an over-limit run phase
RUN_KILL_AFTER_S = 1

_GO_MAIN_RE = re.compile(r'^func\s+main\s*\(\s*\)')


class LanguageAdapter:
    """Turns a submission into a runnable artifact for one language.

    Subclasses only describe files and commands; the strategy (native or
    sandboxed) is decided by configuration and handed in by the dispatcher.
    """

    language: Language
    source_name: str
    compile_markers: Tuple[str, ...] = ()
    limit_address_space = True

    def __init__(self, strategy: RunnerStrategy, settings: Settings):
        self._strategy = strategy
        self._settings = settings

    def runner_strategy(self) -> RunnerStrategy:
        return self._strategy

    def build_allowance_ms(self) -> int:
        return 0

    def prepare(self, submission: Submission, workdir: Path, time_limit_ms: Optional[int] = None) -> RunnableArtifact:
        if time_limit_ms is None:
            time_limit_ms = submission.time_limit_ms
        cases = [
            {'input': tc.input, 'expected': tc.expected, 'description': tc.description}
            for tc in submission.test_cases
        ]
        (workdir / TESTS_FILE).write_text(json.dumps(cases), encoding='utf-8')
        for name, content in self.render(submission).items():
            (workdir / name).write_text(content, encoding='utf-8')
        return RunnableArtifact(
            workdir=workdir,
            command=self.command(submission, time_limit_ms),
            image=self._settings.images[self.language.value],
            env=self.environment(),
            limit_address_space=self.limit_address_space,
        )

    def render(self, submission: Submission) -> Dict[str, str]:
        raise NotImplementedError

    def command(self, submission: Submission, time_limit_ms: int) -> List[str]:
        raise NotImplementedError

    def environment(self) -> Dict[str, str]:
        return {}


class TypeScriptAdapter(LanguageAdapter):
    language = Language.TYPESCRIPT
    source_name = 'solution.ts'
    compile_markers = ('error TS', 'TSError', 'SyntaxError')
    limit_address_space = False
    harness = harnesses.SCRIPT_HARNESS

    def render(self, submission: Submission) -> Dict[str, str]:
        harness = self.harness.replace(harnesses.FUNCTION_PLACEHOLDER, submission.function_name)
        return {self.source_name: submission.source_code + harness}

    def command(self, submission: Submission, time_limit_ms: int) -> List[str]:
        return [
            'ts-node',
            '--transpile-only',
            '--compiler-options',
            harnesses.TS_COMPILER_OPTIONS,
            self.source_name,
        ]


class JavaScriptAdapter(TypeScriptAdapter):
    language = Language.JAVASCRIPT
    source_name = 'solution.js'
    compile_markers = ('SyntaxError',)
    harness = harnesses.JS_HARNESS

    def command(self, submission: Submission, time_limit_ms: int) -> List[str]:
        return ['node', self.source_name]


def strip_go_entrypoint(code: str) -> str:
    """Force ``package main`` and drop any ``func main`` the learner left in."""
    kept = []
    in_main = False
    depth = 0
    opened = False
    for line in code.splitlines():
        stripped = line.strip()
        if not in_main and stripped.startswith('package '):
            continue
        if not in_main and _GO_MAIN_RE.match(stripped):
            in_main, depth, opened = True, 0, False
        if in_main:
            depth += line.count('{') - line.count('}')
            opened = opened or '{' in line
            if opened and depth <= 0:
                in_main = False
            continue
        kept.append(line)
    body = '\n'.join(kept).strip('\n')
    return f'package main\n\n{body}\n'


class GoAdapter(LanguageAdapter):
    language = Language.GO
    source_name = 'solution.go'
    compile_markers = ('# solution', 'syntax error', 'undefined: ')
    limit_address_space = False

    def build_allowance_ms(self) -> int:
        return self._settings.go_build_allowance_ms

    def render(self, submission: Submission) -> Dict[str, str]:
        return {
            self.source_name: strip_go_entrypoint(submission.source_code),
            'harness.go': harnesses.GO_HARNESS.replace(harnesses.FUNCTION_PLACEHOLDER, submission.function_name),
            'go.mod': harnesses.GO_MOD,
        }

    def environment(self) -> Dict[str, str]:
        # host runs share a build cache; containers use the image's GOCACHE
        if self._strategy is RunnerStrategy.NATIVE:
            return {'GOCACHE': self._settings.go_cache_dir}
        return {}

    def command(self, submission: Submission, time_limit_ms: int) -> List[str]:
        # the build gets the allowance on the outer timeout, the run only the learner's limit
        script = (
            'export HOME="$PWD" GOCACHE="${GOCACHE:-$PWD/.gocache}" GOTOOLCHAIN=local CGO_ENABLED=0 '
            '&& go build -o ./solution . '
            f'&& exec timeout -k {RUN_KILL_AFTER_S} {time_limit_ms / 1000.0:.3f} ./solution'
        )
        return ['sh', '-c', script]


class PhpAdapter(LanguageAdapter):
    language = Language.PHP
    source_name = 'solution.php'
    compile_markers = ('Parse error', 'Cannot redeclare')

    def render(self, submission: Submission) -> Dict[str, str]:
        code = submission.source_code
        if not code.lstrip().startswith('<?'):
            code = '<?php\n' + code
        return {
            self.source_name: code,
            'harness.php': harnesses.PHP_HARNESS.replace(harnesses.FUNCTION_PLACEHOLDER, submission.function_name),
        }

    def command(self, submission: Submission, time_limit_ms: int) -> List[str]:
        return ['php', '-d', 'display_errors=stderr', '-d', 'log_errors=0', 'harness.php']


ADAPTERS: Dict[Language, Type[LanguageAdapter]] = {
    Language.TYPESCRIPT: TypeScriptAdapter,
    Language.JAVASCRIPT: JavaScriptAdapter,
    Language.GO: GoAdapter,
    Language.PHP: PhpAdapter,
}


def get_adapter(language: Language, strategy: RunnerStrategy, settings: Settings) -> LanguageAdapter:
    try:
        adapter_cls = ADAPTERS[language]
    except KeyError:
        raise ValueError(f'unsupported language: {language}')
    return adapter_cls(strategy, settings)
