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
Unit tests for readiness probes.
"""
import socket

import pytest

from e2ekit.errors import ConfigurationError, ExecError, NotRunningError, ProbeFailure
from e2ekit.MODELS.command import Command
from e2ekit.MODELS.start_options import StartOptions
from e2ekit.PROBES.readiness import (
    CmdReadinessProbe,
    HTTPReadinessProbe,
    ProbeError,
    TCPReadinessProbe,
)


@pytest.fixture
def served(env, backend, metrics_server):
    """A running runnable whose "http" port is the local metrics server."""
    backend.host_ports["http"] = metrics_server.port
    runnable = env.runnable("web").with_ports({"http": 8080}).init(StartOptions(image="web"))
    runnable.start()
    return runnable


class TestHTTPReadinessProbe:
    """Tests for HTTPReadinessProbe."""

    def test_ready(self, served, metrics_server):
        metrics_server.body = "OK ready"
        HTTPReadinessProbe("http", "/ready", expected_content=["ready"]).ready(served)

    def test_status_out_of_range(self, served, metrics_server):
        metrics_server.status = 503
        with pytest.raises(ProbeError, match="503"):
            HTTPReadinessProbe("http", "/ready").ready(served)

    def test_custom_status_range(self, served, metrics_server):
        metrics_server.status = 404
        HTTPReadinessProbe("http", "/ready", 200, 404).ready(served)

    def test_missing_content(self, served, metrics_server):
        metrics_server.body = "starting"
        with pytest.raises(ProbeError, match="expected body containing ready"):
            HTTPReadinessProbe("http", "/", expected_content=["ready"]).ready(served)

    def test_undeclared_port(self, served):
        with pytest.raises(ConfigurationError):
            HTTPReadinessProbe("grpc", "/").ready(served)

    def test_not_running(self, env):
        runnable = env.runnable("idle").with_ports({"http": 80})
        with pytest.raises(NotRunningError):
            HTTPReadinessProbe("http", "/").ready(runnable)


class TestTCPReadinessProbe:
    """Tests for TCPReadinessProbe."""

    def test_ready(self, served):
        TCPReadinessProbe("http").ready(served)

    def test_closed_port(self, env, backend):
        sock = socket.socket()
        sock.bind(("127.0.0.1", 0))
        free_port = sock.getsockname()[1]
        sock.close()

        backend.host_ports["tcp"] = free_port
        runnable = env.runnable("db").with_ports({"tcp": 5432}).init(StartOptions(image="db"))
        runnable.start()
        with pytest.raises(OSError):
            TCPReadinessProbe("tcp").ready(runnable)


class TestCmdReadinessProbe:
    """Tests for CmdReadinessProbe."""

    def test_runs_command_in_runnable(self, served, backend):
        CmdReadinessProbe(Command.new("pg_isready")).ready(served)
        assert ("exec", "web", ["pg_isready"]) in backend.events

    def test_failing_command(self, served, backend):
        backend.fail_exec.add("web")
        with pytest.raises(ExecError):
            CmdReadinessProbe(Command.new("false")).ready(served)


class TestWaitReady:
    """Tests for Runnable.wait_ready with probes."""

    def test_retries_until_ready(self, env, backend, metrics_server, fast_backoff):
        backend.host_ports["http"] = metrics_server.port
        metrics_server.status = 503

        class FlippingProbe(HTTPReadinessProbe):
            calls = 0

            def ready(self, runnable):
                FlippingProbe.calls += 1
                if FlippingProbe.calls == 2:
                    metrics_server.status = 200
                super().ready(runnable)

        runnable = env.runnable("web").with_ports({"http": 80}).init(
            StartOptions(image="web", readiness=FlippingProbe("http", "/"))
        )
        runnable.start()
        runnable.wait_ready()
        assert FlippingProbe.calls == 2

    def test_probe_failure(self, env, backend, metrics_server):
        backend.host_ports["http"] = metrics_server.port
        metrics_server.status = 500
        runnable = env.runnable("web").with_ports({"http": 80}).init(
            StartOptions(image="web", readiness=HTTPReadinessProbe("http", "/"))
        )
        runnable.start()
        with pytest.raises(ProbeFailure) as exc:
            runnable.wait_ready()
        assert exc.value.attempts == 3
        assert isinstance(exc.value.last_error, ProbeError)

    def test_undeclared_port_is_not_retried(self, env, metrics_server):
        probe_calls = []

        class CountingProbe(HTTPReadinessProbe):
            def ready(self, runnable):
                probe_calls.append(1)
                super().ready(runnable)

        runnable = env.runnable("web").init(
            StartOptions(image="web", readiness=CountingProbe("missing", "/"))
        )
        runnable.start()
        with pytest.raises(ConfigurationError):
            runnable.wait_ready()
        assert len(probe_calls) == 1
