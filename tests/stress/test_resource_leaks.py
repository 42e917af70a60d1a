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

import gc
import os
import shutil
import sys
import time

import pytest

try:
    import tracemalloc
except ImportError:
    tracemalloc = None

from e2ekit.MANAGERS.environment import Environment
from e2ekit.MODELS.environment_config import EnvironmentConfig
from e2ekit.MODELS.start_options import StartOptions
from e2ekit.RUNNERS.process_runner import ProcessRunner
from e2ekit.UTILS.line_writer import LinePrefixWriter


@pytest.mark.skipif(tracemalloc is None, reason="tracemalloc not available")
def test_environment_memory_leak(backend, tmp_path):
    """
    Checks for memory leaks when repeatedly creating and closing environments.
    """
    tracemalloc.start()

    # Baseline
    gc.collect()
    snapshot1 = tracemalloc.take_snapshot()

    for i in range(50):
        env = Environment(backend, EnvironmentConfig(name=f"leak-{i}", temp_dir=str(tmp_path)))
        for name in ("a", "b"):
            runnable = env.runnable(name).with_ports({"http": 80}).init(StartOptions(image="img"))
            runnable.start()
        env.close()
        del env
    backend.events.clear()

    gc.collect()
    snapshot2 = tracemalloc.take_snapshot()

    top_stats = snapshot2.compare_to(snapshot1, "lineno")

    # Total memory growth should be minimal
    total_diff = sum(stat.size_diff for stat in top_stats)
    assert total_diff < 1024 * 1024
    assert os.listdir(tmp_path) == []

    tracemalloc.stop()


@pytest.mark.skipif(sys.platform == "win32" or shutil.which("sh") is None, reason="requires a POSIX shell")
def test_process_runner_fd_leak(caplog):
    """
    Checks that ProcessRunner closes pipes of finished commands.
    """
    import psutil

    process = psutil.Process(os.getpid())
    initial_fds = process.num_fds()

    runner = ProcessRunner()
    writer = LinePrefixWriter(runner.logger, "leak: ")
    for _ in range(50):
        assert runner.run(["sh", "-c", "echo out; echo err >&2"]) == "out\nerr\n"
        assert runner.stream(["sh", "-c", "echo out; exit 3"], writer, writer) == 3
        spawned = runner.spawn(["sh", "-c", "echo bg"], writer)
        ProcessRunner.terminate(spawned, timeout=5)
        spawned.wait()

    # Output pumps close their pipes on their own threads.
    time.sleep(0.5)
    gc.collect()
    final_fds = process.num_fds()

    # Allow for some internal fluctuations
    assert final_fds <= initial_fds + 5
