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
Metric-aware wrapper for runnables exposing a Prometheus endpoint.
"""
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict

from ..errors import ConfigurationError, MetricWaitError, MissingMetricError, NotRunningError
from ..MANAGERS.extensions import ExtensionKey
from ..MANAGERS.runnable import Runnable
from ..MODELS.backoff import Backoff
from ..MODELS.metrics_options import (
    MetricsOption,
    MetricsOptions,
    MissingMetricsPolicy,
    build_metrics_options,
)
from ..UTILS.retry import BackoffExhausted, call_with_backoff
from .metrics import MetricValueExpectation, fetch_metrics, has_series, sum_metrics_from_text

# Timeout of a single scrape.
SCRAPE_TIMEOUT = 5.0


class MetricTarget(BaseModel):
    """Where a scraper inside the environment finds the metrics."""
    model_config = ConfigDict(frozen=True)

    internal_endpoint: str
    metric_path: str = "/metrics"
    scheme: str = "http"


class UnexpectedValues(Exception):
    """Sums were read but did not satisfy the expectation yet."""

    def __init__(self, values: List[float]):
        super().__init__(f"unexpected values {values}")
        self.values = values


class StillExported(Exception):
    """The metric still has matching series."""


class Instrumented(ABC):
    """
    Anything whose metrics can be summed and waited on.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @property
    @abstractmethod
    def wait_backoff(self) -> Backoff:
        """Backoff of wait calls that don't override it."""

    @abstractmethod
    def metric_targets(self) -> List[MetricTarget]:
        pass

    @abstractmethod
    def sum_metrics(self, names: Sequence[str], *opts: MetricsOption) -> List[float]:
        """
        Returns one sum per metric name, in order.

        :raises MissingMetricError: A metric is missing and not skipped.
        """

    @abstractmethod
    def exports_metric(self, name: str, options: MetricsOptions) -> bool:
        """Whether ``name`` has series matching the option filters."""

    def build_options(self, opts: Sequence[MetricsOption]) -> MetricsOptions:
        return build_metrics_options(*opts, base=MetricsOptions(wait_backoff=self.wait_backoff))

    def wait_sum_metrics(self, expected: MetricValueExpectation, *names: str) -> None:
        """Waits until ``expected(*sums)`` holds for the given metrics."""
        self.wait_sum_metrics_with_options(expected, names)

    def wait_sum_metrics_with_options(self,
                                      expected: MetricValueExpectation,
                                      names: Sequence[str],
                                      *opts: MetricsOption) -> None:
        """
        Polls ``sum_metrics`` until ``expected(*sums)`` holds.

        A missing metric is retried only under ``wait_missing_metrics()``;
        any other error aborts the wait.

        :raises MetricWaitError: The backoff was exhausted.
        """
        options = self.build_options(opts)
        retry_on = (UnexpectedValues,)
        if options.missing_metrics == MissingMetricsPolicy.WAIT:
            retry_on += (MissingMetricError,)

        last: Dict[str, Optional[List[float]]] = {"values": None}

        def attempt() -> None:
            last["values"] = None
            sums = self.sum_metrics(names, *opts)
            last["values"] = sums
            if not expected(*sums):
                raise UnexpectedValues(sums)

        try:
            call_with_backoff(options.wait_backoff, attempt, retry_on=retry_on)
        except BackoffExhausted as e:
            last_error = None if isinstance(e.last_error, UnexpectedValues) else e.last_error
            raise MetricWaitError(names, e.attempts, last_error, last["values"]) from e.last_error

    def wait_removed_metric(self, name: str, *opts: MetricsOption) -> None:
        """
        Waits until ``name`` has no series matching the option filters.

        :raises MetricWaitError: The metric was still exported after the backoff.
        """
        options = self.build_options(opts)

        def attempt() -> None:
            if self.exports_metric(name, options):
                raise StillExported(f"the metric {name} is still exported by {self.name}")

        try:
            call_with_backoff(options.wait_backoff, attempt, retry_on=(StillExported,))
        except BackoffExhausted as e:
            raise MetricWaitError([name], e.attempts, e.last_error, None) from e.last_error


class InstrumentedRunnable(Instrumented):
    """
    A runnable with a metrics port. Every other attribute is the runnable's.
    """

    def __init__(self,
                 runnable: Runnable,
                 port_name: str,
                 metric_path: str = "/metrics",
                 scheme: str = "http",
                 wait_backoff: Optional[Backoff] = None):
        self.runnable = runnable
        self.port_name = port_name
        self.metric_path = metric_path
        self.scheme = scheme
        self._wait_backoff = wait_backoff

    def __getattr__(self, item):
        return getattr(self.runnable, item)

    def __repr__(self) -> str:
        return f"InstrumentedRunnable({self.runnable.name!r}, port={self.port_name!r})"

    @property
    def name(self) -> str:
        return self.runnable.name

    @property
    def wait_backoff(self) -> Backoff:
        return self._wait_backoff or self.runnable.wait_backoff

    def metric_targets(self) -> List[MetricTarget]:
        return [MetricTarget(
            internal_endpoint=self.runnable.internal_endpoint(self.port_name),
            metric_path=self.metric_path,
            scheme=self.scheme,
        )]

    def metrics_url(self) -> str:
        return f"{self.scheme}://{self.runnable.endpoint(self.port_name)}{self.metric_path}"

    def metrics(self) -> str:
        """
        Fetches the current metrics page from the host.

        :raises NotRunningError: The runnable is not running.
        :raises ScrapeError: The page could not be fetched.
        """
        if not self.runnable.is_running():
            raise NotRunningError(self.runnable.name)
        return fetch_metrics(self.metrics_url(), SCRAPE_TIMEOUT)

    def sum_metrics(self, names: Sequence[str], *opts: MetricsOption) -> List[float]:
        return sum_metrics_from_text(
            self.metrics(), names, build_metrics_options(*opts), service=self.runnable.name
        )

    def exports_metric(self, name: str, options: MetricsOptions) -> bool:
        return has_series(self.metrics(), name, options)


INSTRUMENTED: ExtensionKey[Instrumented] = ExtensionKey("instrumented")


def as_instrumented(runnable: Runnable,
                    port_name: str,
                    metric_path: str = "/metrics",
                    scheme: str = "http",
                    wait_backoff: Optional[Backoff] = None) -> InstrumentedRunnable:
    """
    Wraps a not yet started runnable and registers the wrapper on it.

    :raises ConfigurationError: The runnable is running or ``port_name`` is
        not declared.
    """
    if runnable.is_running():
        raise ConfigurationError(f"can't instrument running runnable {runnable.name}")
    if runnable.internal_endpoint(port_name) == "":
        raise ConfigurationError(
            f"metric port name {port_name} does not exist in {runnable.name} ports"
        )

    instrumented = InstrumentedRunnable(runnable, port_name, metric_path, scheme, wait_backoff)
    runnable.set_extension(INSTRUMENTED, instrumented)
    return instrumented


def instrumented_of(runnable: Runnable) -> Optional[Instrumented]:
    """Returns the instrumented wrapper registered on ``runnable``, if any."""
    return runnable.extension(INSTRUMENTED)
