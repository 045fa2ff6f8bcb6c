import re
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


IDENTIFIER_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')

_LANGUAGE_ALIASES = {
    'ts': 'typescript',
    'js': 'javascript',
    'node': 'javascript',
    'golang': 'go',
}


class Language(str, Enum):
    TYPESCRIPT = 'typescript'
    JAVASCRIPT = 'javascript'
    GO = 'go'
    PHP = 'php'

    @classmethod
    def parse(cls, value: Any) -> 'Language':
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        key = _LANGUAGE_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            raise ValueError(f'unsupported language: {value}')


class Outcome(str, Enum):
    COMPLETED = 'Completed'
    COMPILE_ERROR = 'CompileError'
    RUNTIME_ERROR = 'RuntimeError'
    TIMEOUT = 'Timeout'
    SANDBOX_ERROR = 'SandboxError'


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class TestCase(_WireModel):
    __test__ = False

    input: Any = None
    expected: Any = None
    description: str = ''


class Submission(_WireModel):
    source_code: str
    language: Language
    test_cases: List[TestCase]
    function_name: str
    time_limit_ms: int = Field(gt=0)
    memory_limit_mb: int = Field(gt=0)

    @field_validator('language', mode='before')
    @classmethod
    def _parse_language(cls, value):
        return Language.parse(value)

    @field_validator('function_name')
    @classmethod
    def _check_identifier(cls, value: str) -> str:
        if not IDENTIFIER_RE.match(value):
            raise ValueError(f'function name must be a plain identifier, got {value!r}')
        return value


class TestResult(_WireModel):
    __test__ = False

    passed: bool
    expected: Any = None
    # left unset when execution never completed for this test
    actual: Any = None
    error: Optional[str] = None
    description: str = ''
    execution_time_ms: float = 0.0


class ExecutionReport(_WireModel):
    results: List[TestResult]
    total_time_ms: float
    outcome: Outcome
    passed_tests: int
    total_tests: int
    success: bool

    @classmethod
    def build(cls, results: List[TestResult], outcome: Outcome, total_time_ms: float) -> 'ExecutionReport':
        passed = sum(1 for r in results if r.passed)
        return cls(
            results=results,
            total_time_ms=round(total_time_ms, 3),
            outcome=outcome,
            passed_tests=passed,
            total_tests=len(results),
            success=outcome is Outcome.COMPLETED and passed == len(results),
        )

    def to_wire(self) -> dict:
        return self.model_dump(mode='json', by_alias=True, exclude_unset=True)


class ExecutionRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    source_code: str
    # validated by the dispatcher so an unknown language is a 400, not a 422
    language: str
    test_cases: List[TestCase]
    function_name: str
    time_limit_ms: int = 5000
    memory_limit_mb: int = 128
