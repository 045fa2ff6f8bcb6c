import logging
import os
import shutil
import signal
import subprocess
import sys
import time
from typing import Dict, List

from .config import Settings
from .context import ExecutionContext
from .errors import SandboxFailure
from .sandbox import TIMEOUT_EXIT_CODE, RawExecutionOutput, RunLimits, RunnableArtifact, RunnerStrategy, read_output


logger = logging.getLogger(__name__)

KILL_GRACE_S = 2.0
MAX_FILE_BYTES = 16 * 1024 * 1024
_ENV_ALLOWLIST = ('PATH', 'LANG', 'LC_ALL', 'GOCACHE', 'GOROOT', 'NODE_PATH')

# Applies the resource limits in the child and execs the real command.
# Runs in a fresh interpreter, so it is safe to start from any thread.
_LIMIT_WRAPPER = '''\
import os, resource, signal, sys
cpu, mem, fsize = (int(v) for v in sys.argv[1:4])
resource.setrlimit(resource.RLIMIT_CPU, (cpu, cpu + 1))
if mem > 0:
    resource.setrlimit(resource.RLIMIT_AS, (mem, mem))
resource.setrlimit(resource.RLIMIT_FSIZE, (fsize, fsize))
# the interpreter ignores these at startup and exec would keep them ignored
for sig in (signal.SIGPIPE, signal.SIGXFSZ):
    signal.signal(sig, signal.SIG_DFL)
os.execvp(sys.argv[4], sys.argv[4:])
'''


def _sanitized_env(artifact: RunnableArtifact) -> Dict[str, str]:
    env = {key: os.environ[key] for key in _ENV_ALLOWLIST if key in os.environ}
    env['HOME'] = str(artifact.workdir)
    # not the workdir itself: go ignores a go.mod found in the temp root
    env['TMPDIR'] = str(artifact.workdir / '.tmp')
    env.update(artifact.env)
    return env


def _kill_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


class NativeRunner:
    """Runs an artifact as a host process, for trusted and test deployments.

    The process gets its own session so the whole group (compiler, runtime,
    children) can be killed. ``RLIMIT_CPU`` is the in-process limit and
    ``communicate(timeout=...)`` the host-side one.
    """

    strategy = RunnerStrategy.NATIVE

    def __init__(self, settings: Settings):
        self._settings = settings

    def command(self, artifact: RunnableArtifact, limits: RunLimits) -> List[str]:
        mem_bytes = limits.memory_mb * 1024 * 1024 if artifact.limit_address_space else 0
        return [
            sys.executable, '-I', '-S', '-c', _LIMIT_WRAPPER,
            str(limits.cpu_seconds), str(mem_bytes), str(MAX_FILE_BYTES),
            *artifact.command,
        ]

    def run(self, artifact: RunnableArtifact, limits: RunLimits, context: ExecutionContext) -> RawExecutionOutput:
        env = _sanitized_env(artifact)
        os.makedirs(env['TMPDIR'], exist_ok=True)
        # the wrapper would only fail after exec, so check the runtime exists first
        if shutil.which(artifact.command[0], path=env.get('PATH')) is None:
            raise SandboxFailure(f'could not start {artifact.command[0]}: not found on PATH')

        started = time.monotonic()
        try:
            proc = subprocess.Popen(
                self.command(artifact, limits),
                cwd=str(artifact.workdir),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=env,
                start_new_session=True,
            )
        except OSError as e:
            raise SandboxFailure(f'could not start {artifact.command[0]}: {e}') from e

        name = context.unit_name
        context.register_unit(name, lambda: _kill_group(proc))
        context.on_cancel(lambda: _kill_group(proc))
        host_killed = False
        try:
            try:
                out, err = proc.communicate(timeout=limits.host_timeout_s)
            except subprocess.TimeoutExpired:
                logger.warning(
                    'execution %s: process %d outlived its %.1fs host timeout, killing',
                    context.execution_id, proc.pid, limits.host_timeout_s,
                )
                _kill_group(proc)
                host_killed = True
                try:
                    out, err = proc.communicate(timeout=KILL_GRACE_S)
                except subprocess.TimeoutExpired:
                    # a descendant left the group and still holds the pipes
                    proc.kill()
                    proc.wait()
                    proc.stdout.close()
                    proc.stderr.close()
                    out, err = b'', b''
            duration_ms = (time.monotonic() - started) * 1000.0

            code = proc.returncode
            timed_out = (
                host_killed
                or context.cancelled
                or code == -signal.SIGXCPU
                or code == TIMEOUT_EXIT_CODE
                or duration_ms >= limits.wall_timeout_ms
            )
            max_bytes = self._settings.max_output_bytes
            return RawExecutionOutput(
                stdout=read_output(out, max_bytes),
                stderr=read_output(err, max_bytes),
                exit_code=code,
                timed_out=timed_out,
                duration_ms=duration_ms,
            )
        finally:
            # reap anything the program left running in its group
            context.teardown_unit(name)
