# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Isolated execution scope hosting runnables: network or cluster, shared
directory, name registry, listeners and teardown.
"""
import logging
import os
import shutil
import tempfile
import threading
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Callable, List, Optional, Set

from ..errors import BackendError, EnvironmentClosedError, NameConflictError
from ..MODELS.environment_config import EnvironmentConfig
from ..UTILS.naming import generate_name
from .runnable import Runnable

if TYPE_CHECKING:
    from ..BACKENDS.base import Backend

logger = logging.getLogger(__name__)


class EnvironmentListener(ABC):
    """
    Notified synchronously whenever the list of started runnables changes.
    """

    @abstractmethod
    def on_runnable_change(self, started: List[Runnable]) -> None:
        """Receives the full, current list of started runnables."""


def make_shared_dir(parent: Optional[str] = None) -> str:
    """
    Creates the directory shared by all runnables of one environment.

    :param parent: Where to create it; the current working directory by default.
    :return: Absolute path of the new directory.
    """
    return os.path.abspath(tempfile.mkdtemp(prefix="e2e_", dir=parent or os.getcwd()))


class Environment:
    """
    Runs runnables in an isolated area through a pluggable backend.

    Creating the environment removes leftovers of a previous run with the
    same name, creates the shared directory and sets the backend scope up.
    ``close`` tears everything down in reverse order; it never raises and
    can be called any number of times.
    """

    def __init__(self,
                 backend: "Backend",
                 config: Optional[EnvironmentConfig] = None,
                 log: Optional[logging.Logger] = None):
        """
        :param backend: Strategy driving the container engine or cluster.
        :param config: Environment settings.
        :param log: Logger for this environment and its runnables.
        """
        self.config = config or EnvironmentConfig()
        self.logger = log or logger
        self.backend = backend
        self._name = self.config.name or generate_name()
        backend.validate_name(self._name)

        self._lock = threading.RLock()
        self._registered: Set[str] = set()
        self._listeners: List[EnvironmentListener] = []
        self._started: List[Runnable] = []
        self._closers: List[Callable[[], None]] = []
        self._closed = False
        self._dir = ""
        self._host_addr = ""

        backend.attach(self)
        # Force a shutdown in case a previous run with this name didn't clean up.
        backend.teardown(self._name)

        self._dir = make_shared_dir(self.config.temp_dir)
        try:
            self._host_addr = backend.setup()
        except BaseException:
            self.close()
            raise
        self.logger.info("started %s environment %s", backend.kind, self._name)

    def __enter__(self) -> "Environment":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def name(self) -> str:
        return self._name

    @property
    def shared_dir(self) -> str:
        """Host directory shared with every runnable."""
        return self._dir

    @property
    def host_addr(self) -> str:
        """Address of the controlling host, reachable from runnables."""
        return self._host_addr

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def runnable(self, name: str) -> Runnable:
        """
        Registers a new runnable under ``name``.

        :raises EnvironmentClosedError: The environment was closed.
        :raises NameConflictError: ``name`` is already registered.
        :raises ConfigurationError: ``name`` is invalid for the backend.
        """
        with self._lock:
            if self._closed:
                raise EnvironmentClosedError("environment close was invoked already")
            if name in self._registered:
                raise NameConflictError(name, self._name)
            self.backend.validate_runnable_name(name)

            runnable = Runnable(self, name)
            os.makedirs(runnable.dir, mode=0o750, exist_ok=True)
            self._registered.add(name)
            return runnable

    def started(self) -> List[Runnable]:
        """Started runnables, in start order."""
        with self._lock:
            return list(self._started)

    def add_listener(self, listener: EnvironmentListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def add_closer(self, closer: Callable[[], None]) -> None:
        """Registers a callback invoked on close, before runnables are killed."""
        with self._lock:
            self._closers.append(closer)

    def _notify(self) -> None:
        started = list(self._started)
        for listener in list(self._listeners):
            listener.on_runnable_change(started)

    def _register_started(self, runnable: Runnable) -> None:
        with self._lock:
            self._started.append(runnable)
            self._notify()

    def _register_stopped(self, runnable: Runnable) -> None:
        with self._lock:
            if runnable not in self._started:
                return
            self._started.remove(runnable)
            self._notify()

    def close(self) -> None:
        """
        Shuts the environment down and cleans its resources up.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            closers = list(self._closers)

        for closer in closers:
            try:
                closer()
            except Exception:
                self.logger.exception("Environment closer failed")

        # Kill the services in the opposite order.
        for runnable in reversed(self.started()):
            try:
                runnable.kill()
            except Exception as e:
                self.logger.warning("Unable to kill service %s: %s", runnable.name, e)

        self.backend.teardown(self._name)
        self._remove_shared_dir()

    def _remove_shared_dir(self) -> None:
        if not self._dir:
            return
        # Runnables may have written files as other users.
        try:
            self.backend.runner.run(["chmod", "-R", "777", self._dir])
        except BackendError as e:
            self.logger.warning("Error while chmod sharedDir %s: %s", self._dir, e)
        try:
            shutil.rmtree(self._dir)
        except OSError as e:
            self.logger.warning("Error while removing sharedDir %s: %s", self._dir, e)
