import math
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Union

from .context import ExecutionContext

# exit status of coreutils timeout when the limit expires
TIMEOUT_EXIT_CODE = 124


class RunnerStrategy(str, Enum):
    NATIVE = 'native'
    SANDBOXED = 'sandboxed'


@dataclass(frozen=True)
class RunnableArtifact:
    """Materialized submission: a directory of files and the command that runs them."""

    workdir: Path
    command: List[str]
    image: str
    env: Dict[str, str] = field(default_factory=dict)
    # runtimes that reserve large virtual address ranges (V8, the Go toolchain)
    # cannot run under RLIMIT_AS
    limit_address_space: bool = True


@dataclass(frozen=True)
class RunLimits:
    time_limit_ms: int
    wall_timeout_ms: int
    host_timeout_ms: int
    deadline_ms: int
    memory_mb: int

    @property
    def wall_timeout_s(self) -> float:
        return self.wall_timeout_ms / 1000.0

    @property
    def host_timeout_s(self) -> float:
        return self.host_timeout_ms / 1000.0

    @property
    def deadline_s(self) -> float:
        return self.deadline_ms / 1000.0

    @property
    def cpu_seconds(self) -> int:
        return max(1, math.ceil(self.wall_timeout_ms / 1000.0))


@dataclass(frozen=True)
class RawExecutionOutput:
    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool
    oom_killed: bool = False
    duration_ms: float = 0.0


class Runner(Protocol):
    strategy: RunnerStrategy

    def run(self, artifact: RunnableArtifact, limits: RunLimits, context: ExecutionContext) -> RawExecutionOutput:
        ...


def read_output(raw: Optional[Union[bytes, tuple]], max_bytes: int) -> str:
    if raw is None:
        return ''
    if isinstance(raw, tuple):
        out = b''.join([p for p in raw if p])
    else:
        out = raw
    if len(out) > max_bytes:
        out = out[:max_bytes]
    return out.decode('utf-8', errors='replace')
