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
Kind backend: a single-node Kubernetes cluster per environment, one
single-replica Deployment (plus NodePort Service) per runnable.
"""
import json
import logging
import os
import re
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import yaml
from jinja2 import Template

from ..errors import BackendError, ConfigurationError
from ..MODELS.command import Command
from ..MODELS.environment_config import EnvironmentConfig
from ..RUNNERS.process_runner import ProcessRunner
from ..UTILS.retry import BackoffExhausted, call_with_backoff
from .base import Backend

if TYPE_CHECKING:
    from ..MANAGERS.environment import Environment
    from ..MANAGERS.runnable import Runnable

KIND_CONFIG_TEMPLATE = """kind: Cluster
apiVersion: kind.x-k8s.io/v1alpha4
nodes:
- role: control-plane
{%- if mounts %}
  extraMounts:
{%- for mount in mounts %}
  - hostPath: {{ mount }}
    containerPath: {{ mount }}
{%- endfor %}
{%- endif %}
"""

NAME_LABEL = "app.kubernetes.io/name"

# IANA service names, as required for named container ports.
_PORT_NAME = re.compile(r"[a-z0-9]([a-z0-9-]*[a-z0-9])?")
_USER = re.compile(r"(\d+)(?::(\d+))?")


def unwrap_quotes(output: str) -> str:
    """Strips the quotes kubectl keeps around jsonpath output."""
    return output.strip().strip("'")


def parse_node_ip(output: str) -> str:
    """
    Extracts the single InternalIP from node ``.status.addresses`` output.
    """
    try:
        addresses = json.loads(unwrap_quotes(output))
    except ValueError as e:
        raise BackendError("unmarshal kubectl output to get node IP", output=output) from e

    if not isinstance(addresses, list):
        raise BackendError("unexpected output of kubectl get node; expected a list of addresses", output=output)
    internal_ips = [
        a.get("address", "") for a in addresses
        if isinstance(a, dict) and a.get("type") == "InternalIP"
    ]
    if len(internal_ips) != 1:
        raise BackendError(
            "unexpected output of kubectl get node; expected exactly one internal IP, "
            f"got {len(internal_ips)}",
            output=output,
        )
    return internal_ips[0]


def match_node_ports(name: str, declared: Dict[str, int], output: str) -> Dict[str, int]:
    """
    Maps declared port names to node ports from service ``.spec.ports`` output.

    :raises BackendError: The service ports differ from the declared ones.
    """
    try:
        ports = json.loads(unwrap_quotes(output))
    except ValueError as e:
        raise BackendError("unmarshal kubectl output to get ports", output=output) from e

    if not isinstance(ports, list) or not all(isinstance(p, dict) for p in ports):
        raise BackendError("unexpected output of kubectl get service; expected a list of ports", output=output)
    if len(ports) != len(declared):
        raise BackendError(
            f"found inconsistent ports: the running service {name!r} has a different "
            "number of ports than declared",
            output=output,
        )
    host_ports = {}
    for port in ports:
        port_name = str(port.get("name", ""))
        if port_name not in declared:
            raise BackendError(
                f"found inconsistent ports: port {port_name!r} is not declared in service {name!r}",
                output=output,
            )
        try:
            host_ports[port_name] = int(port["nodePort"])
        except (KeyError, TypeError, ValueError) as e:
            raise BackendError(f"no node port for {port_name!r} in service {name!r}", output=output) from e
    return host_ports


def validate_port_name(name: str) -> None:
    if (len(name) > 15 or not _PORT_NAME.fullmatch(name)
            or "--" in name or not re.search(r"[a-z]", name)):
        raise ConfigurationError(f"port name {name!r} is not a valid Kubernetes service port name")


def parse_user(user: str) -> Dict[str, int]:
    """Turns ``uid[:gid]`` into securityContext fields."""
    match = _USER.fullmatch(user)
    if not match:
        raise ConfigurationError(f"user {user!r} must be numeric uid[:gid] on kind")
    context = {"runAsUser": int(match.group(1))}
    if match.group(2) is not None:
        context["runAsGroup"] = int(match.group(2))
    return context


def split_volume(volume: str) -> List[str]:
    """Splits ``host[:target[:mode]]`` into host and target paths."""
    parts = volume.split(":")
    return [parts[0], parts[1] if len(parts) > 1 and parts[1] else parts[0]]


def build_manifest(name: str,
                   ports: Dict[str, int],
                   opts,
                   volumes: Dict[str, List[str]]) -> str:
    """
    Renders the Deployment (and Service when ports are declared) of a runnable.

    :param name: Runnable name, used for every object and label.
    :param ports: Declared port name to container port.
    :param opts: StartOptions of the runnable.
    :param volumes: Volume name to ``[host path, mount path]``.
    :return: Multi-document YAML.
    """
    labels = {NAME_LABEL: name}
    container: Dict[str, Any] = {"name": name, "image": opts.image}

    command = opts.command
    if command.entrypoint_disabled:
        if command.cmd:
            container["command"] = [command.cmd]
        if command.args:
            container["args"] = list(command.args)
    elif command.to_list():
        container["args"] = command.to_list()

    if ports:
        for port_name in ports:
            validate_port_name(port_name)
        container["ports"] = [
            {"name": port_name, "containerPort": port} for port_name, port in sorted(ports.items())
        ]
    if opts.env_vars:
        container["env"] = [
            {"name": key, "value": value} for key, value in sorted(opts.env_vars.items())
        ]

    resources = {}
    if opts.limit_memory_bytes:
        resources["memory"] = opts.limit_memory_bytes
    if opts.limit_cpus:
        resources["cpu"] = opts.limit_cpus
    if resources:
        container["resources"] = {"limits": dict(resources), "requests": dict(resources)}

    security: Dict[str, Any] = {}
    if opts.user:
        security.update(parse_user(opts.user))
    if opts.privileged:
        security["privileged"] = True
    if opts.capabilities:
        security["capabilities"] = {"add": [c.value for c in opts.capabilities]}
    if security:
        container["securityContext"] = security

    pod_spec: Dict[str, Any] = {"containers": [container]}
    if volumes:
        container["volumeMounts"] = [
            {"name": key, "mountPath": paths[1]} for key, paths in sorted(volumes.items())
        ]
        pod_spec["volumes"] = [
            {"name": key, "hostPath": {"path": paths[0]}} for key, paths in sorted(volumes.items())
        ]
    if opts.user_ns:
        pod_spec["hostUsers"] = opts.user_ns == "host"

    documents = [{
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name, "labels": labels},
        "spec": {
            "replicas": 1,
            "selector": {"matchLabels": labels},
            "template": {"metadata": {"labels": labels}, "spec": pod_spec},
        },
    }]
    if ports:
        documents.append({
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {"name": name, "labels": labels},
            "spec": {
                "type": "NodePort",
                "selector": labels,
                "ports": [
                    {"name": port_name, "port": port} for port_name, port in sorted(ports.items())
                ],
            },
        })
    return yaml.safe_dump_all(documents, default_flow_style=False, sort_keys=False)


class KindBackend(Backend):
    """
    Runs runnables as Deployments in a kind cluster named after the environment.
    """
    kind = "kind"
    name_pattern = re.compile(r"[a-z0-9.-]+")
    # DNS-1123 label.
    runnable_name_pattern = re.compile(r"[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?")

    def __init__(self, runner: Optional[ProcessRunner] = None):
        super().__init__(runner)
        self.template = Template(KIND_CONFIG_TEMPLATE)
        self.node_ip = ""

    @property
    def kubeconfig(self) -> str:
        return os.path.join(self.environment.shared_dir, "kubeconfig")

    def kubectl(self, *args: str) -> List[str]:
        return ["kubectl", "--kubeconfig", self.kubeconfig] + list(args)

    def render_config(self) -> str:
        env = self.environment
        return self.template.render(mounts=[env.shared_dir] + list(env.config.volumes))

    def volumes(self, runnable: "Runnable") -> Dict[str, List[str]]:
        env = self.environment
        # The working directory is shared across all containers.
        volumes = {"working-directory": [env.shared_dir, env.shared_dir]}
        for i, volume in enumerate(list(env.config.volumes) + list(runnable.opts.volumes)):
            volumes[f"volume{i}"] = split_volume(volume)
        return volumes

    # Scope

    def setup(self) -> str:
        name = self.environment.name
        config_path = os.path.join(self.environment.shared_dir, "kind.yaml")
        with open(config_path, "w") as f:
            f.write(self.render_config())

        self.runner.run([
            "kind", "create", "cluster",
            "--kubeconfig", self.kubeconfig,
            "--config", config_path,
            "--name", name,
        ])
        output = self.runner.run(self.kubectl(
            "get", "nodes", f"{name}-control-plane",
            "--output", "jsonpath='{.status.addresses}'",
        ))
        self.node_ip = parse_node_ip(output)
        return self.node_ip

    def teardown(self, name: str) -> None:
        # Kind doesn't fail when the cluster doesn't exist.
        try:
            self.runner.run(["kind", "delete", "cluster", "--name", name])
        except BackendError as e:
            self.logger.warning("Unable to delete kind cluster %s: %s", name, e)

    # Runnables

    def start(self, runnable: "Runnable") -> None:
        opts = runnable.opts
        manifest = build_manifest(runnable.name, runnable.ports, opts, self.volumes(runnable))

        # Locally built images are only visible to the cluster once loaded.
        self.pull_image(runnable)
        self.runner.run(["kind", "load", "docker-image", opts.image, "--name", self.environment.name])

        output = self.runner.run(self.kubectl("apply", "--filename", "-"), input=manifest)
        for line in output.splitlines():
            if line.strip():
                runnable.logger.info("%s: %s", runnable.name, line.strip())

    def _wait_pod_ready(self, runnable: "Runnable") -> None:
        self.runner.run(
            self.kubectl(
                "wait", "pod",
                "--for", "condition=Ready",
                "--selector", f"{NAME_LABEL}={runnable.name}",
                "--timeout", "5s",
            ),
            timeout=10,
        )

    def wait_running(self, runnable: "Runnable") -> None:
        try:
            call_with_backoff(
                runnable.wait_backoff,
                lambda: self._wait_pod_ready(runnable),
                retry_on=(BackendError,),
            )
        except BackoffExhausted as e:
            raise BackendError(
                f"pod {runnable.name!r} failed to start: {e.last_error}"
            ) from e.last_error

    def discover_ports(self, runnable: "Runnable") -> Dict[str, int]:
        declared = runnable.ports
        if not declared:
            return {}
        try:
            output = self.runner.run(self.kubectl(
                "get", "service", runnable.name, "--output", "jsonpath='{.spec.ports}'",
            ))
        except BackendError as e:
            raise BackendError(
                f"unable to get mapping for ports for service {runnable.name!r}; output: {e.output!r}",
                command=e.command,
                output=e.output,
            ) from e
        return match_node_ports(runnable.name, declared, output)

    def delete_args(self, runnable: "Runnable", kind: str, force: bool) -> List[str]:
        args = ["delete", kind, runnable.name, "--ignore-not-found"]
        if force:
            args += ["--grace-period", "0", "--force"]
        else:
            args += ["--grace-period", "30"]
        return self.kubectl(*args)

    def _delete(self, runnable: "Runnable", force: bool) -> None:
        for kind in ("deployment", "service"):
            self.runner.run(self.delete_args(runnable, kind, force))

    def remove(self, runnable: "Runnable") -> None:
        try:
            self._delete(runnable, force=True)
        except BackendError as e:
            self.logger.warning("Unable to remove %s: %s", runnable.name, e)

    def stop(self, runnable: "Runnable") -> None:
        self._delete(runnable, force=False)

    def kill(self, runnable: "Runnable") -> None:
        self._delete(runnable, force=True)

    def exec(self, runnable: "Runnable", command: Command, stdout, stderr) -> None:
        args = self.kubectl("exec", f"deployment/{runnable.name}", "--") + command.to_list()
        self.run_exec(runnable, command, args, stdout, stderr)

    # Addresses

    def endpoint_host(self) -> str:
        return self.environment.host_addr

    def internal_endpoint(self, runnable: "Runnable", port: int) -> str:
        return f"{runnable.name}:{port}"


def new_kind_environment(config: Optional[EnvironmentConfig] = None,
                         log: Optional[logging.Logger] = None,
                         runner: Optional[ProcessRunner] = None) -> "Environment":
    """
    Creates a new, isolated kind environment.

    Runnables are modeled as single-replica Deployments. Anything else must
    be deployed manually with the kubeconfig in the shared directory.
    """
    from ..MANAGERS.environment import Environment

    return Environment(KindBackend(runner), config, log)
