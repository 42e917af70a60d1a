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

import threading
import time

from e2ekit.MODELS.start_options import StartOptions


def test_concurrent_runnables(env, backend):
    """
    Registers, starts and stops runnables from many threads at once.
    """
    errors = []
    barrier = threading.Barrier(20)

    def worker(i):
        try:
            barrier.wait()
            runnable = env.runnable(f"svc-{i}").with_ports({"http": 8000 + i}).init(StartOptions(image="img"))
            runnable.start()
            assert runnable.endpoint("http") == f"127.0.0.1:{30000 + (8000 + i) % 1000}"
            if i % 2:
                runnable.stop()
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(20)]
    start_time = time.time()
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    print(f"Handled 20 runnables in {time.time() - start_time:.2f}s")

    assert errors == []
    assert sorted(r.name for r in env.started()) == sorted(f"svc-{i}" for i in range(0, 20, 2))

    env.close()
    assert sorted(backend.calls("kill")) == sorted(f"svc-{i}" for i in range(0, 20, 2))


def test_concurrent_name_conflicts(env):
    """
    Only one of many threads registering the same name wins.
    """
    won = []
    lost = []
    barrier = threading.Barrier(10)

    def worker():
        barrier.wait()
        try:
            won.append(env.runnable("shared"))
        except Exception as e:
            lost.append(e)

    threads = [threading.Thread(target=worker) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert len(won) == 1
    assert len(lost) == 9
