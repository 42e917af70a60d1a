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
Strategy interface implemented by every environment backend.
"""
import logging
import re
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Dict, Optional

from ..errors import BackendError, ExecError
from ..MODELS.command import Command
from ..RUNNERS.process_runner import ProcessRunner
from ..UTILS.line_writer import LinePrefixWriter
from ..UTILS.naming import validate_name

if TYPE_CHECKING:
    from ..MANAGERS.environment import Environment
    from ..MANAGERS.runnable import Runnable

logger = logging.getLogger(__name__)


class Backend(ABC):
    """
    Drives one container engine or cluster on behalf of an Environment.

    The Environment and Runnable classes own every piece of state shared by
    both backends (registry, running flag, port maps, locking, teardown
    order); a backend only translates lifecycle steps into external
    commands and parses their output.
    """
    kind = "backend"
    name_pattern = re.compile(r".+")
    runnable_name_pattern = re.compile(r".+")

    def __init__(self, runner: Optional[ProcessRunner] = None):
        self.runner = runner or ProcessRunner()
        self._owns_runner = runner is None
        self.environment: Optional["Environment"] = None

    @property
    def logger(self) -> logging.Logger:
        return self.environment.logger if self.environment else logger

    def attach(self, environment: "Environment") -> None:
        """Binds the backend to the environment it serves."""
        self.environment = environment
        if self._owns_runner:
            self.runner = ProcessRunner(environment.logger, environment.config.verbose)

    def validate_name(self, name: str) -> None:
        validate_name(name, self.name_pattern, f"{self.kind} environment name")

    def validate_runnable_name(self, name: str) -> None:
        validate_name(name, self.runnable_name_pattern, f"{self.kind} runnable name")

    def internal_dir(self, runnable: "Runnable") -> str:
        # The shared directory is mounted at the same path everywhere.
        return runnable.dir

    def pull_image(self, runnable: "Runnable") -> None:
        """
        Makes sure the runnable image is available locally, pulling it if needed.
        """
        image = runnable.opts.image
        try:
            self.runner.run(["docker", "image", "inspect", image])
            return
        except BackendError:
            # Assuming "No such image"; the pull below reports real failures.
            pass

        writer = LinePrefixWriter(runnable.logger, f"{runnable.name}: ")
        command = ["docker", "pull", image]
        exit_code = self.runner.stream(command, writer, writer)
        if exit_code != 0:
            raise BackendError(
                f"docker image {image} failed to download", command=command, exit_code=exit_code
            )

    def run_exec(self, runnable: "Runnable", command: Command, args, stdout, stderr) -> None:
        exit_code = self.runner.stream(args, stdout, stderr)
        if exit_code != 0:
            raise ExecError(
                f"command {str(command)!r} in {runnable.name} exited with code {exit_code}",
                command=args,
                exit_code=exit_code,
            )

    @abstractmethod
    def setup(self) -> str:
        """
        Creates the isolated scope of the attached environment.

        :return: Host address reachable from runnables.
        """

    @abstractmethod
    def teardown(self, name: str) -> None:
        """
        Removes every backend resource of the scope called ``name``.
        Best effort: failures are logged, never raised.
        """

    @abstractmethod
    def start(self, runnable: "Runnable") -> None:
        """Creates the workload."""

    @abstractmethod
    def wait_running(self, runnable: "Runnable") -> None:
        """Blocks until the backend reports the workload as running."""

    @abstractmethod
    def discover_ports(self, runnable: "Runnable") -> Dict[str, int]:
        """Returns the host port of every declared port name."""

    @abstractmethod
    def remove(self, runnable: "Runnable") -> None:
        """Force-removes whatever a failed start left behind. Best effort."""

    @abstractmethod
    def stop(self, runnable: "Runnable") -> None:
        pass

    @abstractmethod
    def kill(self, runnable: "Runnable") -> None:
        pass

    @abstractmethod
    def exec(self, runnable: "Runnable", command: Command, stdout, stderr) -> None:
        pass

    @abstractmethod
    def endpoint_host(self) -> str:
        """Address under which host ports are reachable from the controlling process."""

    @abstractmethod
    def internal_endpoint(self, runnable: "Runnable", port: int) -> str:
        pass
