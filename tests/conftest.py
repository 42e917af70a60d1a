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
Shared fixtures: a recording process runner, an in-memory backend and a
local metrics endpoint.
"""
import re
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from e2ekit.BACKENDS.base import Backend
from e2ekit.errors import BackendError, ExecError
from e2ekit.MANAGERS.environment import Environment
from e2ekit.MODELS.backoff import Backoff
from e2ekit.MODELS.environment_config import EnvironmentConfig

FAST_BACKOFF = Backoff(min_delay=0.01, max_delay=0.02, max_retries=3)


class FakeRunner:
    """
    Records commands instead of executing them.

    ``responses`` maps a command prefix to a string (the output), an
    exception instance (raised), an int (exit code of ``stream``) or a
    callable receiving the command.
    """

    def __init__(self, responses=None):
        self.commands = []
        self.inputs = []
        self.responses = dict(responses or {})

    def _respond(self, command):
        for prefix in sorted(self.responses, key=len, reverse=True):
            if tuple(command[:len(prefix)]) == tuple(prefix):
                response = self.responses[prefix]
                if callable(response) and not isinstance(response, BaseException):
                    response = response(command)
                if isinstance(response, BaseException):
                    raise response
                return response
        return ""

    def run(self, command, input=None, timeout=None):
        self.commands.append(list(command))
        self.inputs.append(input)
        response = self._respond(command)
        return response if isinstance(response, str) else ""

    def spawn(self, command, output):
        self.commands.append(list(command))
        self.inputs.append(None)
        return None

    def stream(self, command, stdout, stderr):
        self.commands.append(list(command))
        self.inputs.append(None)
        response = self._respond(command)
        return response if isinstance(response, int) else 0

    def ran(self, *prefix):
        return [c for c in self.commands if tuple(c[:len(prefix)]) == prefix]


class FakeBackend(Backend):
    """
    Keeps runnables in memory and records every lifecycle call.
    """
    kind = "fake"
    name_pattern = re.compile(r"[-a-zA-Z0-9]{1,16}")
    runnable_name_pattern = re.compile(r"[a-zA-Z0-9][a-zA-Z0-9_.-]*")

    def __init__(self, runner=None):
        super().__init__(runner or FakeRunner())
        self.events = []
        self.fail_start = set()
        self.fail_exec = set()
        self.host_ports = {}
        self.fail_setup = False

    def setup(self):
        self.events.append(("setup", self.environment.name))
        if self.fail_setup:
            raise BackendError("setup failed")
        return "10.0.0.1"

    def teardown(self, name):
        self.events.append(("teardown", name))

    def start(self, runnable):
        self.events.append(("start", runnable.name))
        if runnable.name in self.fail_start:
            raise BackendError(f"cannot start {runnable.name}")

    def wait_running(self, runnable):
        self.events.append(("wait_running", runnable.name))

    def discover_ports(self, runnable):
        return {
            name: self.host_ports.get(name, 30000 + port % 1000)
            for name, port in runnable.ports.items()
        }

    def remove(self, runnable):
        self.events.append(("remove", runnable.name))

    def stop(self, runnable):
        self.events.append(("stop", runnable.name))

    def kill(self, runnable):
        self.events.append(("kill", runnable.name))

    def exec(self, runnable, command, stdout, stderr):
        self.events.append(("exec", runnable.name, command.to_list()))
        if runnable.name in self.fail_exec:
            raise ExecError(f"{command} failed", exit_code=1)
        stdout.write(f"ran {command}\n")

    def endpoint_host(self):
        return "127.0.0.1"

    def internal_endpoint(self, runnable, port):
        return f"{self.environment.name}-{runnable.name}:{port}"

    def calls(self, event):
        return [e[1] for e in self.events if e[0] == event]


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def env(backend, tmp_path):
    environment = Environment(
        backend,
        EnvironmentConfig(name="test-env", temp_dir=str(tmp_path), default_backoff=FAST_BACKOFF),
    )
    yield environment
    environment.close()


class MetricsServer:
    """Serves a mutable metrics page on a random local port."""

    def __init__(self):
        self.body = ""
        self.status = 200
        self.requests = 0
        server = self

        class Handler(BaseHTTPRequestHandler):
            def do_GET(self):
                server.requests += 1
                payload = server.body.encode("utf-8")
                self.send_response(server.status)
                self.send_header("Content-Type", "text/plain; version=0.0.4")
                self.send_header("Content-Length", str(len(payload)))
                self.end_headers()
                self.wfile.write(payload)

            def log_message(self, format, *args):
                pass

        self.httpd = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
        self.port = self.httpd.server_address[1]
        self.thread = threading.Thread(target=self.httpd.serve_forever, daemon=True)

    @property
    def url(self):
        return f"http://127.0.0.1:{self.port}/metrics"

    def start(self):
        self.thread.start()

    def stop(self):
        self.httpd.shutdown()
        self.httpd.server_close()


@pytest.fixture
def metrics_server():
    server = MetricsServer()
    server.start()
    yield server
    server.stop()


METRICS_DOC = """
# HELP metric_c cheescake
# TYPE metric_c gauge
metric_c 20
# HELP metric_a cheescake
# TYPE metric_a gauge
metric_a 1
metric_a{first="value1"} 10
metric_a{first="value1", something="x"} 4
metric_a{first="value1", something2="a"} 203
metric_a{first="value2"} 2
metric_a{second="value1"} 1
# HELP metric_b cheescake
# TYPE metric_b gauge
metric_b 1000
# HELP metric_b_counter cheescake
# TYPE metric_b_counter counter
metric_b_counter 1020
# HELP metric_b_hist cheescake
# TYPE metric_b_hist histogram
metric_b_hist_count 5
metric_b_hist_sum 124
metric_b_hist_bucket{le="5.36870912e+08"} 1
metric_b_hist_bucket{le="+Inf"} 5
# HELP metric_b_summary cheescake
# TYPE metric_b_summary summary
metric_b_summary_sum 22
metric_b_summary_count 1
"""


@pytest.fixture
def metrics_doc():
    return METRICS_DOC


@pytest.fixture
def fast_backoff():
    return FAST_BACKOFF


@pytest.fixture
def runner_factory():
    return FakeRunner
