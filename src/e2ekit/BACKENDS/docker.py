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
Docker backend: one container per runnable on a per-environment bridge network.
"""
import json
import logging
import os
import platform
import re
import socket
import subprocess
import threading
from typing import TYPE_CHECKING, Dict, List, Optional

from ..errors import BackendError
from ..MODELS.command import Command
from ..MODELS.environment_config import EnvironmentConfig
from ..RUNNERS.process_runner import ProcessRunner
from ..UTILS.line_writer import LinePrefixWriter
from ..UTILS.retry import BackoffExhausted, call_with_backoff
from .base import Backend

if TYPE_CHECKING:
    from ..MANAGERS.environment import Environment
    from ..MANAGERS.runnable import Runnable

DOCKER_GATEWAY_ADDR = "host.docker.internal"

_PORT_LINE = re.compile(r"^(.+):(\d+)$")


def container_host(network: str, name: str) -> str:
    """Container name and DNS name of a runnable within the network."""
    return f"{network}-{name}"


def parse_port_mapping(output: str) -> int:
    """
    Parses ``docker port <container> <port>`` output into the host port.

    Every non-empty line must be ``address:port``. Dual-stack engines print
    one line per address family; all lines must then agree on the port.

    :raises BackendError: Output is empty, malformed or inconsistent.
    """
    trimmed = output.strip()
    lines = [line.strip() for line in trimmed.splitlines() if line.strip()]
    if not lines:
        raise BackendError(f"got unexpected output: {trimmed!r}", output=output)

    ports = set()
    for line in lines:
        match = _PORT_LINE.match(line)
        if not match:
            raise BackendError(f"got unexpected output: {trimmed!r}", output=output)
        ports.add(int(match.group(2)))
    if len(ports) != 1:
        raise BackendError(f"got inconsistent port mappings: {trimmed!r}", output=output)
    return ports.pop()


def parse_network_gateway(output: str) -> str:
    """
    Extracts the gateway IP from ``docker network inspect`` JSON output.
    """
    try:
        details = json.loads(output)
    except ValueError as e:
        raise BackendError(
            "unmarshal docker inspect details to obtain Gateway IP", output=output
        ) from e

    try:
        if len(details) != 1 or len(details[0]["IPAM"]["Config"]) != 1:
            raise BackendError(
                "unexpected format of docker inspect; expected exactly one element in root "
                f"and IPAM.Config, got {output}",
                output=output,
            )
        return details[0]["IPAM"]["Config"][0]["Gateway"]
    except (KeyError, TypeError, IndexError) as e:
        raise BackendError(f"unexpected format of docker inspect: {output}", output=output) from e


def uses_docker_gateway() -> bool:
    """
    Docker Desktop (macOS) and WSL2 don't expose the bridge gateway to the host.
    """
    return platform.system() == "Darwin" or "microsoft" in platform.release().lower()


def in_container() -> bool:
    return os.path.exists("/.dockerenv")


class DockerBackend(Backend):
    """
    Runs each runnable as ``docker run`` on the environment network.
    """
    kind = "docker"
    # Docker network name constraints.
    name_pattern = re.compile(r"[-a-zA-Z0-9]{1,16}")
    runnable_name_pattern = re.compile(r"[a-zA-Z0-9][a-zA-Z0-9_.-]*")

    def __init__(self, runner: Optional[ProcessRunner] = None):
        super().__init__(runner)
        self._lock = threading.Lock()
        self._processes: Dict[str, subprocess.Popen] = {}
        self._endpoint_host: Optional[str] = None

    def container_name(self, runnable: "Runnable") -> str:
        return container_host(self.environment.name, runnable.name)

    # Scope

    def setup(self) -> str:
        name = self.environment.name
        try:
            self.runner.run(["docker", "network", "create", "-d", "bridge", name])
        except BackendError as e:
            raise BackendError(
                f"create docker network {name!r}: {e}", command=e.command, output=e.output
            ) from e

        if uses_docker_gateway():
            return DOCKER_GATEWAY_ADDR
        try:
            output = self.runner.run(["docker", "network", "inspect", name])
        except BackendError as e:
            raise BackendError(
                f"inspect docker network {name!r}: {e}", command=e.command, output=e.output
            ) from e
        return parse_network_gateway(output)

    def teardown(self, name: str) -> None:
        # Ensure there are no leftover containers.
        try:
            output = self.runner.run(
                ["docker", "ps", "-a", "--quiet", "--filter", f"network={name}"]
            )
        except BackendError as e:
            self.logger.warning("Unable to cleanup leftover containers: %s", e)
        else:
            for container_id in output.split():
                try:
                    self.runner.run(["docker", "rm", "--force", container_id])
                except BackendError as e:
                    self.logger.warning(
                        "Unable to cleanup leftover container %s: %s", container_id, e
                    )

        # Skip removal of a network that does not exist to avoid a misleading
        # error when called before setup.
        try:
            exists = self.runner.run(
                ["docker", "network", "ls", "--quiet", "--filter", f"name=^{name}$"]
            ).strip() != ""
        except BackendError as e:
            self.logger.warning("Unable to check if docker network %s exists: %s", name, e)
            exists = True
        if exists:
            try:
                self.runner.run(["docker", "network", "rm", name])
            except BackendError as e:
                self.logger.warning("Unable to remove docker network %s: %s", name, e)

    # Runnables

    def build_run_args(self, runnable: "Runnable") -> List[str]:
        """
        Builds the ``docker run`` arguments of a runnable.
        """
        env = self.environment
        opts = runnable.opts
        args = [
            "--rm",
            f"--net={env.name}",
            f"--name={self.container_name(runnable)}",
            f"--hostname={runnable.name}",
        ]

        # The shared directory is mounted at the same path in every container
        # so that symlinks and paths work from both sides.
        args += ["-v", f"{env.shared_dir}:{env.shared_dir}:z"]
        for volume in list(env.config.volumes) + list(opts.volumes):
            args += ["-v", volume]

        for key, value in opts.env_vars.items():
            args += ["-e", f"{key}={value}"]
        if opts.user:
            args += ["--user", opts.user]
        if opts.user_ns:
            args += ["--userns", opts.user_ns]
        if opts.privileged:
            args.append("--privileged")
        for capability in opts.capabilities:
            args += ["--cap-add", capability.value]
        if opts.limit_memory_bytes > 0:
            args += ["--memory", f"{opts.limit_memory_bytes}b"]
        if opts.limit_cpus > 0:
            args += ["--cpus", f"{opts.limit_cpus:f}"]

        # Published ports, bound to random host ports.
        for port in runnable.ports.values():
            args += ["-p", str(port)]

        if opts.command.entrypoint_disabled:
            args += ["--entrypoint", ""]

        args.append(opts.image)
        args += opts.command.to_list()
        return args

    def start(self, runnable: "Runnable") -> None:
        self.pull_image(runnable)
        output = LinePrefixWriter(runnable.logger, f"{runnable.name}: ")
        process = self.runner.spawn(["docker", "run"] + self.build_run_args(runnable), output)
        with self._lock:
            self._processes[runnable.name] = process

    def _is_running(self, container: str) -> None:
        # Bounded per call; the engine has been seen to hang here.
        output = self.runner.run(
            ["docker", "inspect", "--format={{json .State.Running}}", container], timeout=5
        ).strip()
        if output != "true":
            raise BackendError(f"unexpected output: {output!r}", output=output)

    def wait_running(self, runnable: "Runnable") -> None:
        container = self.container_name(runnable)
        try:
            call_with_backoff(
                runnable.wait_backoff,
                lambda: self._is_running(container),
                retry_on=(BackendError,),
            )
        except BackoffExhausted as e:
            raise BackendError(
                f"docker container {runnable.name} failed to start: {e.last_error}"
            ) from e.last_error

    def discover_ports(self, runnable: "Runnable") -> Dict[str, int]:
        container = self.container_name(runnable)
        host_ports: Dict[str, int] = {}
        for port_name, port in runnable.ports.items():
            try:
                output = self.runner.run(["docker", "port", container, str(port)])
            except BackendError as e:
                # Catch init errors.
                try:
                    self._is_running(container)
                except BackendError as inspect_err:
                    raise BackendError(
                        f"failed to get mapping for port as container {container} exited: {e}"
                    ) from inspect_err
                raise BackendError(
                    f"unable to get mapping for port {port}; service: {runnable.name}; "
                    f"output: {e.output!r}",
                    command=e.command,
                    output=e.output,
                ) from e

            try:
                host_ports[port_name] = parse_port_mapping(output)
            except BackendError as e:
                raise BackendError(
                    f"unable to get mapping for port {port}; service: {runnable.name}: {e}",
                    output=output,
                ) from e
        return host_ports

    def _release(self, runnable: "Runnable", timeout: float = 10) -> None:
        with self._lock:
            process = self._processes.pop(runnable.name, None)
        ProcessRunner.terminate(process, timeout=timeout)

    def remove(self, runnable: "Runnable") -> None:
        # We don't know whether the container was created, so errors are expected.
        try:
            self.runner.run(["docker", "rm", "--force", self.container_name(runnable)])
        except BackendError as e:
            self.logger.debug("Removing container of %s: %s", runnable.name, e)
        self._release(runnable, timeout=5)

    def stop(self, runnable: "Runnable") -> None:
        self.runner.run(["docker", "stop", "--time=30", self.container_name(runnable)])
        self._release(runnable)

    def kill(self, runnable: "Runnable") -> None:
        container = self.container_name(runnable)
        self.runner.run(["docker", "kill", container])
        # Fails if the container already exited and was removed.
        try:
            self.runner.run(["docker", "wait", container])
        except BackendError as e:
            self.logger.debug("Waiting for %s: %s", container, e)
        self._release(runnable)

    def exec(self, runnable: "Runnable", command: Command, stdout, stderr) -> None:
        args = ["docker", "exec", self.container_name(runnable)] + command.to_list()
        self.run_exec(runnable, command, args, stdout, stderr)

    # Addresses

    def endpoint_host(self) -> str:
        if self._endpoint_host is None:
            # Do not use "localhost"; some clients resolve it to IPv6 only.
            addr = "127.0.0.1"
            # Inside a container 127.0.0.1 is not the host.
            if in_container():
                try:
                    socket.gethostbyname(DOCKER_GATEWAY_ADDR)
                    addr = DOCKER_GATEWAY_ADDR
                except OSError:
                    pass
            self._endpoint_host = addr
        return self._endpoint_host

    def internal_endpoint(self, runnable: "Runnable", port: int) -> str:
        return f"{self.container_name(runnable)}:{port}"


def new_docker_environment(config: Optional[EnvironmentConfig] = None,
                           log: Optional[logging.Logger] = None,
                           runner: Optional[ProcessRunner] = None) -> "Environment":
    """
    Creates a new, isolated docker environment.
    """
    from ..MANAGERS.environment import Environment

    return Environment(DockerBackend(runner), config, log)
