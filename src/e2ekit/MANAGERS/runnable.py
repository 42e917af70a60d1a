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
Lifecycle of a single managed workload inside an environment.
"""
import os
import threading
from typing import TYPE_CHECKING, Any, Dict, Optional, TypeVar

from ..errors import (
    AlreadyRunningError,
    ConfigurationError,
    NotRunningError,
    ProbeFailure,
)
from ..MODELS.backoff import Backoff
from ..MODELS.command import Command
from ..MODELS.start_options import StartOptions
from ..PROBES.readiness import STOPPED_ENDPOINT
from ..UTILS.line_writer import LinePrefixWriter
from ..UTILS.retry import BackoffExhausted, call_with_backoff
from .extensions import ExtensionKey

T = TypeVar("T")

if TYPE_CHECKING:
    from .environment import Environment


class Runnable:
    """
    One workload registered in an :class:`Environment`.

    The same object is the builder (``with_ports``/``init``), the linkable
    future (``internal_endpoint`` works before start) and the started
    runnable. All mutable state is guarded by a per-runnable lock, as
    parallel test cases may share one environment.
    """

    def __init__(self, environment: "Environment", name: str):
        self._env = environment
        self._name = name
        self.logger = environment.logger

        self._lock = threading.RLock()
        self._ports: Dict[str, int] = {}
        self._host_ports: Dict[str, int] = {}
        self._opts: Optional[StartOptions] = None
        self._running = False
        self._extensions: Dict[ExtensionKey, Any] = {}

    def __repr__(self) -> str:
        return f"Runnable({self._name!r}, running={self.is_running()})"

    @property
    def name(self) -> str:
        return self._name

    @property
    def environment(self) -> "Environment":
        return self._env

    @property
    def dir(self) -> str:
        """Host working directory of this runnable."""
        return os.path.join(self._env.shared_dir, "data", self._name)

    @property
    def internal_dir(self) -> str:
        """Working directory as seen from inside the environment."""
        return self._env.backend.internal_dir(self)

    @property
    def opts(self) -> Optional[StartOptions]:
        with self._lock:
            return self._opts

    @property
    def ports(self) -> Dict[str, int]:
        """Declared port name to container port mapping."""
        with self._lock:
            return dict(self._ports)

    @property
    def host_ports(self) -> Dict[str, int]:
        """Port name to host-reachable port mapping; empty unless running."""
        with self._lock:
            return dict(self._host_ports)

    @property
    def wait_backoff(self) -> Backoff:
        with self._lock:
            if self._opts is None or self._opts.wait_ready_backoff is None:
                return self._env.config.default_backoff
            return self._opts.wait_ready_backoff

    # Builder

    def with_ports(self, ports: Dict[str, int]) -> "Runnable":
        """
        Declares named container ports, usable through ``endpoint`` and
        ``internal_endpoint``.
        """
        for port_name, port in ports.items():
            if not isinstance(port, int) or not 0 < port < 65536:
                raise ConfigurationError(f"invalid port {port!r} for {port_name!r} of {self._name}")
        with self._lock:
            if self._running:
                raise AlreadyRunningError(self._name)
            self._ports = dict(ports)
        return self

    def future(self) -> "Runnable":
        """Returns the runnable for linking before it is initialized."""
        return self

    def init(self, opts: StartOptions) -> "Runnable":
        """
        Sets the start options. The environment backoff is used when the
        options don't carry one.
        """
        if opts.wait_ready_backoff is None:
            opts = opts.model_copy(update={"wait_ready_backoff": self._env.config.default_backoff})
        with self._lock:
            if self._running:
                raise AlreadyRunningError(self._name)
            self._opts = opts
        return self

    # Extensions

    def set_extension(self, key: ExtensionKey[T], value: T) -> None:
        with self._lock:
            self._extensions[key] = value

    def extension(self, key: ExtensionKey[T]) -> Optional[T]:
        with self._lock:
            return self._extensions.get(key)

    # Lifecycle

    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def start(self) -> None:
        """
        Starts the workload and resolves its host ports.

        Raises:
            ConfigurationError: ``init`` was never called.
            AlreadyRunningError: The runnable is running.
            BackendError: The backend failed; partial state has been removed.
        """
        backend = self._env.backend
        with self._lock:
            if self._opts is None:
                raise ConfigurationError(f"{self._name} has no start options; call init() first")
            if self._running:
                raise AlreadyRunningError(self._name)

            self.logger.info("Starting %s", self._name)
            try:
                backend.start(self)
                self._running = True
                backend.wait_running(self)
                host_ports = backend.discover_ports(self)
            except BaseException:
                self._running = False
                backend.remove(self)
                raise
            self._host_ports = host_ports
            if self._ports:
                self.logger.info(
                    "Ports for container %s >> Local ports: %s Ports available from host: %s",
                    self._name, self._ports, self._host_ports,
                )
        self._env._register_started(self)

    def stop(self) -> None:
        """Gracefully stops the workload; no-op when not running."""
        with self._lock:
            if not self._running:
                return
            self.logger.info("Stopping %s", self._name)
            self._env.backend.stop(self)
            self._running = False
            self._host_ports = {}
        self._env._register_stopped(self)

    def kill(self) -> None:
        """Kills the workload immediately; no-op when not running."""
        with self._lock:
            if not self._running:
                return
            self.logger.info("Killing %s", self._name)
            self._env.backend.kill(self)
            self._running = False
            self._host_ports = {}
        self._env._register_stopped(self)

    def ready(self) -> None:
        """Runs the readiness probe once."""
        with self._lock:
            if not self._running:
                raise NotRunningError(self._name)
            readiness = self._opts.readiness
        if readiness is None:
            return
        readiness.ready(self)

    def wait_ready(self) -> None:
        """
        Polls the readiness probe until it passes or the backoff is exhausted.

        Raises:
            NotRunningError: The runnable is (or becomes) stopped.
            ConfigurationError: The probe references an undeclared port.
            ProbeFailure: The probe never passed.
        """
        if not self.is_running():
            raise NotRunningError(self._name)
        try:
            call_with_backoff(
                self.wait_backoff,
                self.ready,
                give_up_on=(ConfigurationError, NotRunningError),
            )
        except BackoffExhausted as e:
            raise ProbeFailure(self._name, e.attempts, e.last_error) from e.last_error

    def exec(self, command: Command, stdout=None, stderr=None) -> None:
        """
        Runs ``command`` inside the workload.

        :param command: Command to execute.
        :param stdout: Writer for standard output; logged by default.
        :param stderr: Writer for standard error; logged by default.
        :raises NotRunningError: The runnable is not running.
        :raises ExecError: The command exited with a non-zero code.
        """
        if not self.is_running():
            raise NotRunningError(self._name)
        log_writer = LinePrefixWriter(self.logger, f"{self._name}-exec: ")
        self._env.backend.exec(self, command, stdout or log_writer, stderr or log_writer)

    # Addresses

    def endpoint(self, port_name: str) -> str:
        """
        Returns the host-reachable ``host:port`` for ``port_name``.

        An undeclared port gives ``""``; a stopped runnable gives ``"stopped"``.
        """
        with self._lock:
            if port_name not in self._ports:
                return ""
            if not self._running:
                return STOPPED_ENDPOINT
            host_port = self._host_ports.get(port_name)
        if host_port is None:
            return ""
        return f"{self._env.backend.endpoint_host()}:{host_port}"

    def internal_endpoint(self, port_name: str) -> str:
        """
        Returns ``host:port`` reachable from other runnables of the same
        environment, whether or not this one is running.
        """
        with self._lock:
            port = self._ports.get(port_name)
        if port is None:
            return ""
        return self._env.backend.internal_endpoint(self, port)


def start_and_wait_ready(*runnables: Runnable) -> None:
    """
    Starts every runnable, then waits for all of them to be ready.
    """
    for runnable in runnables:
        runnable.start()
    for runnable in runnables:
        runnable.wait_ready()
