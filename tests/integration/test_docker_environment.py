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
End-to-end tests against a real docker engine. Opt in with E2E_INTEGRATION=1.
"""
import os
import shutil

import pytest

from e2ekit.BACKENDS.docker import new_docker_environment
from e2ekit.errors import ExecError, NotRunningError
from e2ekit.INSTRUMENTED.instrumented import as_instrumented
from e2ekit.INSTRUMENTED.metrics import greater
from e2ekit.MODELS.command import Command
from e2ekit.MODELS.environment_config import EnvironmentConfig
from e2ekit.MODELS.metrics_options import wait_missing_metrics
from e2ekit.MODELS.start_options import StartOptions
from e2ekit.PROBES.readiness import CmdReadinessProbe, HTTPReadinessProbe

pytestmark = pytest.mark.skipif(
    os.environ.get("E2E_INTEGRATION") != "1" or shutil.which("docker") is None,
    reason="requires docker and E2E_INTEGRATION=1",
)


@pytest.fixture
def docker_env(tmp_path):
    env = new_docker_environment(EnvironmentConfig(name="e2ekit-it", temp_dir=str(tmp_path)))
    yield env
    env.close()


def test_exec_and_stop(docker_env):
    runnable = docker_env.runnable("sleeper").init(StartOptions(
        image="alpine:3.19",
        command=Command.run_until_stop(),
        readiness=CmdReadinessProbe(Command.new("true")),
    ))
    runnable.start()
    runnable.wait_ready()

    lines = []

    class Writer:
        def write(self, text):
            lines.append(text)

    runnable.exec(Command.new("echo", "hello"), stdout=Writer())
    assert "".join(lines).strip() == "hello"

    with pytest.raises(ExecError):
        runnable.exec(Command.new("false"))

    runnable.kill()
    with pytest.raises(NotRunningError):
        runnable.exec(Command.new("true"))


def test_shared_dir_is_visible(docker_env):
    runnable = docker_env.runnable("writer").init(StartOptions(
        image="alpine:3.19", command=Command.run_until_stop(),
    ))
    runnable.start()
    runnable.exec(Command.new("sh", "-c", f"echo ok > {runnable.internal_dir}/out"))
    with open(os.path.join(runnable.dir, "out")) as f:
        assert f.read().strip() == "ok"


def test_instrumented_prometheus(docker_env):
    prometheus = as_instrumented(
        docker_env.runnable("prometheus").with_ports({"http": 9090}).init(StartOptions(
            image="quay.io/prometheus/prometheus:v2.51.0",
            readiness=HTTPReadinessProbe("http", "/-/ready"),
        )),
        "http",
    )
    prometheus.start()
    prometheus.wait_ready()
    assert prometheus.endpoint("http").endswith(str(prometheus.host_ports["http"]))

    prometheus.wait_sum_metrics_with_options(
        greater(0), ["prometheus_http_requests_total"], wait_missing_metrics()
    )
