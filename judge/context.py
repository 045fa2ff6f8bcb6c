import logging
import os
import shutil
import tempfile
import threading
import uuid
from pathlib import Path
from typing import Callable, Dict, List

from .errors import TeardownError


logger = logging.getLogger(__name__)


class ExecutionContext:
    """Ephemeral resources owned by one execution run.

    Holds the artifact directory and the names of any isolated units started
    for the run. ``close`` tears all of them down and is safe to call more
    than once; it raises ``TeardownError`` if anything could not be removed.
    """

    def __init__(self, root: str, language: str):
        self.execution_id = uuid.uuid4().hex
        os.makedirs(root, exist_ok=True)
        self.workdir = Path(tempfile.mkdtemp(prefix=f'exec_{self.execution_id[:12]}_', dir=root))
        # readable by the unprivileged user inside runner images
        os.chmod(self.workdir, 0o755)
        self.unit_name = f'judge-{language}-{self.execution_id}'
        self._cancelled = threading.Event()
        self._lock = threading.Lock()
        self._cancel_hooks: List[Callable[[], None]] = []
        self._units: Dict[str, Callable[[], None]] = {}
        self._closed = False

    def __enter__(self) -> 'ExecutionContext':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def on_cancel(self, hook: Callable[[], None]) -> None:
        with self._lock:
            if not self._cancelled.is_set():
                self._cancel_hooks.append(hook)
                return
        # already cancelled: the unit started after the deadline fired
        self._run_hook(hook)

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled.is_set():
                return
            self._cancelled.set()
            hooks = list(self._cancel_hooks)
        logger.warning('execution %s cancelled, terminating %d unit(s)', self.execution_id, len(hooks))
        for hook in hooks:
            self._run_hook(hook)

    def _run_hook(self, hook: Callable[[], None]) -> None:
        try:
            hook()
        except Exception:
            # the unit stays registered, close() retries the teardown
            logger.exception('execution %s: kill hook failed', self.execution_id)

    def register_unit(self, name: str, teardown: Callable[[], None]) -> None:
        with self._lock:
            self._units[name] = teardown

    def teardown_unit(self, name: str) -> None:
        with self._lock:
            teardown = self._units.pop(name, None)
        if teardown is None:
            return
        try:
            teardown()
        except Exception:
            with self._lock:
                self._units[name] = teardown
            raise

    @property
    def live_units(self) -> List[str]:
        with self._lock:
            return list(self._units)

    def close(self) -> None:
        if self._closed:
            return
        failures = []
        for name in self.live_units:
            try:
                self.teardown_unit(name)
            except Exception as e:
                logger.error('execution %s: failed to tear down unit %s: %s', self.execution_id, name, e)
                failures.append(f'{name}: {e}')
        try:
            shutil.rmtree(self.workdir)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error('execution %s: failed to remove %s: %s', self.execution_id, self.workdir, e)
            failures.append(f'{self.workdir}: {e}')
        if failures:
            raise TeardownError('; '.join(failures))
        self._closed = True
