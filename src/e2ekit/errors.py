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
Error taxonomy shared by environments, runnables, probes and metric waits.
"""
from typing import List, Optional, Sequence


class E2EError(Exception):
    """Base exception for all e2ekit errors."""


class ConfigurationError(E2EError):
    """Invalid declaration; surfaced immediately and never retried."""


class NameConflictError(ConfigurationError):
    """A runnable with the same name is already registered in the environment."""

    def __init__(self, name: str, environment: str):
        super().__init__(
            f"there is already one runnable created with the same name {name!r} "
            f"in environment {environment!r}"
        )
        self.name = name
        self.environment = environment


class EnvironmentClosedError(ConfigurationError):
    """The environment was already closed."""


class NotRunningError(E2EError):
    """Operation requires a running runnable."""

    def __init__(self, name: str):
        super().__init__(f"service {name} is stopped")
        self.name = name


class AlreadyRunningError(E2EError):
    """Start was called on a runnable that is already running."""

    def __init__(self, name: str):
        super().__init__(f"{name} is running; stop or kill it first to restart")
        self.name = name


class BackendError(E2EError):
    """An external backend tool failed or produced unparseable output."""

    def __init__(
        self,
        message: str,
        command: Optional[Sequence[str]] = None,
        output: str = "",
        exit_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.command = list(command) if command else None
        self.output = output
        self.exit_code = exit_code


class ExecError(BackendError):
    """A command executed inside a workload exited with a non-zero code."""


class ProbeFailure(E2EError):
    """Readiness probe kept failing until the backoff was exhausted."""

    def __init__(self, name: str, attempts: int, last_error: Optional[BaseException]):
        super().__init__(
            f"the service {name} is not ready after {attempts} attempts: {last_error}"
        )
        self.name = name
        self.attempts = attempts
        self.last_error = last_error


class ScrapeError(E2EError):
    """Metrics endpoint could not be fetched or parsed."""


class MissingMetricError(E2EError):
    """A requested metric (or any series matching the filters) is absent."""

    def __init__(self, metric: str, service: str = ""):
        super().__init__(f"metric not found: metric={metric} service={service}")
        self.metric = metric
        self.service = service


class MetricWaitError(E2EError):
    """Metric values did not satisfy the expectation within the retry budget."""

    def __init__(
        self,
        metric_names: Sequence[str],
        attempts: int,
        last_error: Optional[BaseException],
        last_values: Optional[List[float]],
    ):
        super().__init__(
            f"unable to find metrics {list(metric_names)} with expected values after "
            f"{attempts} retries. Last error: {last_error}. Last values: {last_values}"
        )
        self.metric_names = list(metric_names)
        self.attempts = attempts
        self.last_error = last_error
        self.last_values = last_values
