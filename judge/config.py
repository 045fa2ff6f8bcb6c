import os
import tempfile
from typing import Dict, List, Mapping, Optional

from pydantic import BaseModel, Field

from .errors import ConfigurationError


DEFAULT_IMAGES = {
    'typescript': 'code-runner',
    'javascript': 'code-runner',
    'go': 'go-runner',
    'php': 'php-runner',
}


def _get_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == '':
        return default
    return raw.strip().lower() in ('true', '1', 'yes', 'on')


def _get_int(env: Mapping[str, str], name: str, default: Optional[int], minimum: int = 1) -> Optional[int]:
    raw = env.get(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f'{name} must be an integer, got {raw!r}')
    if value < minimum:
        raise ConfigurationError(f'{name} must be >= {minimum}, got {value}')
    return value


def _get_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f'{name} must be a number, got {raw!r}')
    if value <= 0:
        raise ConfigurationError(f'{name} must be positive, got {value}')
    return value


def _get_list(env: Mapping[str, str], name: str) -> List[str]:
    raw = env.get(name, '')
    return [item.strip().lower() for item in raw.split(',') if item.strip()]


class Settings(BaseModel):
    # executor strategy
    use_native: bool = False
    native_languages: List[str] = Field(default_factory=list)
    sandbox_timeout_ms: Optional[int] = None

    # concurrency and deadlines
    max_concurrency: int = 4
    queue_timeout_ms: int = 10000
    grace_ms: int = 2000
    host_margin_ms: int = 1000

    # submission caps
    max_time_limit_ms: int = 10000
    max_memory_limit_mb: int = 512
    max_test_cases: int = 200
    max_source_bytes: int = 65536

    # sandbox
    temp_dir: str = Field(default_factory=lambda: os.path.join(tempfile.gettempdir(), 'judge'))
    cpus: float = 0.5
    pids_limit: int = 64
    scratch_mb: int = 64
    images: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_IMAGES))
    go_build_allowance_ms: int = 10000
    # persistent across runs so host builds do not start cold
    go_cache_dir: str = Field(default_factory=lambda: os.path.join(tempfile.gettempdir(), 'judge-gocache'))
    docker_timeout_s: int = 30

    # output bounds
    max_error_chars: int = 2000
    max_output_bytes: int = 1048576

    log_level: str = 'INFO'
    log_format: str = 'json'

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Settings':
        env = os.environ if environ is None else environ
        defaults = cls()

        images = dict(DEFAULT_IMAGES)
        for lang in images:
            override = env.get(f'JUDGE_IMAGE_{lang.upper()}')
            if override:
                images[lang] = override

        log_format = env.get('JUDGE_LOG_FORMAT', defaults.log_format).strip().lower()
        if log_format not in ('json', 'text'):
            raise ConfigurationError(f'JUDGE_LOG_FORMAT must be json or text, got {log_format!r}')

        log_level = env.get('JUDGE_LOG_LEVEL', defaults.log_level).strip().upper()
        if log_level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ConfigurationError(f'JUDGE_LOG_LEVEL is not a logging level: {log_level!r}')

        return cls(
            use_native=_get_bool(env, 'JUDGE_USE_NATIVE', defaults.use_native),
            native_languages=_get_list(env, 'JUDGE_NATIVE_LANGUAGES'),
            sandbox_timeout_ms=_get_int(env, 'JUDGE_SANDBOX_TIMEOUT_MS', None),
            max_concurrency=_get_int(env, 'JUDGE_MAX_CONCURRENCY', defaults.max_concurrency),
            queue_timeout_ms=_get_int(env, 'JUDGE_QUEUE_TIMEOUT_MS', defaults.queue_timeout_ms, minimum=0),
            grace_ms=_get_int(env, 'JUDGE_GRACE_MS', defaults.grace_ms, minimum=0),
            host_margin_ms=_get_int(env, 'JUDGE_HOST_MARGIN_MS', defaults.host_margin_ms, minimum=0),
            max_time_limit_ms=_get_int(env, 'JUDGE_MAX_TIME_LIMIT_MS', defaults.max_time_limit_ms),
            max_memory_limit_mb=_get_int(env, 'JUDGE_MAX_MEMORY_LIMIT_MB', defaults.max_memory_limit_mb),
            max_test_cases=_get_int(env, 'JUDGE_MAX_TEST_CASES', defaults.max_test_cases),
            max_source_bytes=_get_int(env, 'JUDGE_MAX_SOURCE_BYTES', defaults.max_source_bytes),
            temp_dir=env.get('JUDGE_TEMP_DIR') or defaults.temp_dir,
            cpus=_get_float(env, 'JUDGE_SANDBOX_CPUS', defaults.cpus),
            pids_limit=_get_int(env, 'JUDGE_PIDS_LIMIT', defaults.pids_limit),
            scratch_mb=_get_int(env, 'JUDGE_SCRATCH_MB', defaults.scratch_mb),
            images=images,
            go_build_allowance_ms=_get_int(env, 'JUDGE_GO_BUILD_ALLOWANCE_MS', defaults.go_build_allowance_ms, minimum=0),
            go_cache_dir=env.get('JUDGE_GO_CACHE_DIR') or defaults.go_cache_dir,
            docker_timeout_s=_get_int(env, 'JUDGE_DOCKER_TIMEOUT_S', defaults.docker_timeout_s),
            max_error_chars=_get_int(env, 'JUDGE_MAX_ERROR_CHARS', defaults.max_error_chars),
            max_output_bytes=_get_int(env, 'JUDGE_MAX_OUTPUT_BYTES', defaults.max_output_bytes),
            log_level=log_level,
            log_format=log_format,
        )
