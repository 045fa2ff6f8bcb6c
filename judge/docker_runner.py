import logging
import shlex
import threading
import time
from typing import Callable, Optional

import docker
from docker.errors import APIError, DockerException, NotFound
from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import ReadTimeout, RequestException

from .config import Settings
from .context import ExecutionContext
from .errors import DockerUnavailableError, SandboxFailure
from .sandbox import TIMEOUT_EXIT_CODE, RawExecutionOutput, RunLimits, RunnableArtifact, RunnerStrategy, read_output


logger = logging.getLogger(__name__)

WORKSPACE = '/workspace'
SCRATCH = '/tmp/run'
KILLED_EXIT_CODE = 137
KILL_AFTER_S = 1


def _kill(container) -> None:
    try:
        container.kill()
    except NotFound:
        pass
    except APIError as e:
        # 409: container is not running any more
        if e.status_code != 409:
            raise


class DockerRunner:
    """Runs an artifact inside a throwaway, network-less container.

    The wall-clock limit is enforced twice: by ``timeout`` inside the
    container, which lets the program flush partial output, and by the host
    waiting on the container with a slightly longer timeout and killing it.
    """

    strategy = RunnerStrategy.SANDBOXED

    def __init__(self, settings: Settings, client_factory: Optional[Callable[[], object]] = None):
        self._settings = settings
        self._client_factory = client_factory or (lambda: docker.from_env(timeout=settings.docker_timeout_s))
        self._client = None
        self._lock = threading.Lock()

    def _get_client(self):
        with self._lock:
            if self._client is None:
                try:
                    self._client = self._client_factory()
                except DockerException as e:
                    raise DockerUnavailableError(f'Docker is not available: {e}') from e
            return self._client

    def command(self, artifact: RunnableArtifact, limits: RunLimits) -> list:
        run_cmd = shlex.join(artifact.command)
        script = (
            f'cp -a {WORKSPACE}/. {SCRATCH}/ && cd {SCRATCH} '
            f'&& exec timeout -k {KILL_AFTER_S} {limits.wall_timeout_s:.3f} {run_cmd}'
        )
        return ['sh', '-c', script]

    def _remove(self, client, name: str) -> None:
        try:
            client.containers.get(name).remove(force=True)
        except NotFound:
            pass

    def run(self, artifact: RunnableArtifact, limits: RunLimits, context: ExecutionContext) -> RawExecutionOutput:
        client = self._get_client()
        name = context.unit_name
        # registered before creation so a half-created container is still removed
        context.register_unit(name, lambda: self._remove(client, name))
        container = None
        host_killed = False
        try:
            memory = f'{limits.memory_mb}m'
            started = time.monotonic()
            # Mount the artifact read-only and use a writable tmpfs at /tmp/run
            container = client.containers.run(
                artifact.image,
                command=self.command(artifact, limits),
                name=name,
                detach=True,
                working_dir=SCRATCH,
                volumes={str(artifact.workdir): {'bind': WORKSPACE, 'mode': 'ro'}},
                network_mode='none',
                read_only=True,
                tmpfs={SCRATCH: f'rw,exec,nosuid,size={self._settings.scratch_mb}m'},
                security_opt=['no-new-privileges'],
                cap_drop=['ALL'],
                mem_limit=memory,
                memswap_limit=memory,
                nano_cpus=int(self._settings.cpus * 1e9),
                pids_limit=self._settings.pids_limit,
                environment=artifact.env,
                labels={'judge.execution': context.execution_id},
            )
            context.on_cancel(lambda: _kill(container))
            logger.debug('execution %s: started container %s (%s)', context.execution_id, name, artifact.image)

            try:
                status = container.wait(timeout=limits.host_timeout_s)
                exit_code = int(status.get('StatusCode', -1))
            except (ReadTimeout, RequestsConnectionError):
                logger.warning(
                    'execution %s: container %s outlived its %.1fs host timeout, killing',
                    context.execution_id, name, limits.host_timeout_s,
                )
                _kill(container)
                host_killed = True
                exit_code = KILLED_EXIT_CODE
            duration_ms = (time.monotonic() - started) * 1000.0

            max_bytes = self._settings.max_output_bytes
            stdout = read_output(container.logs(stdout=True, stderr=False), max_bytes)
            stderr = read_output(container.logs(stdout=False, stderr=True), max_bytes)
            container.reload()
            oom_killed = bool(container.attrs.get('State', {}).get('OOMKilled', False))

            timed_out = (
                host_killed
                or context.cancelled
                or exit_code == TIMEOUT_EXIT_CODE
                or (exit_code == KILLED_EXIT_CODE and not oom_killed)
            )
            return RawExecutionOutput(
                stdout=stdout,
                stderr=stderr,
                exit_code=exit_code,
                timed_out=timed_out,
                oom_killed=oom_killed and not timed_out,
                duration_ms=duration_ms,
            )

        except (DockerException, RequestException) as e:
            if context.cancelled:
                # the deadline killed the container while we were talking to it
                return RawExecutionOutput(stdout='', stderr='', exit_code=KILLED_EXIT_CODE, timed_out=True)
            raise SandboxFailure(f'container {name} failed: {e}') from e

        finally:
            try:
                context.teardown_unit(name)
            except (DockerException, RequestException) as e:
                # stays registered on the context; close() retries and reports it
                logger.warning('execution %s: could not remove container %s: %s', context.execution_id, name, e)
