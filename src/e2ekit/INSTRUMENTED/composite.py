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
Aggregation of several instrumented runnables, e.g. the replicas of a service.
"""
from typing import List, Optional, Sequence

from ..errors import E2EError
from ..MODELS.backoff import Backoff
from ..MODELS.metrics_options import MetricsOption, MetricsOptions
from .instrumented import Instrumented, InstrumentedRunnable, MetricTarget


class CompositeInstrumentedRunnable(Instrumented):
    """
    Sums metrics across all instances; waits have the same contract as a
    single instrumented runnable.
    """

    def __init__(self, *instances: InstrumentedRunnable, wait_backoff: Optional[Backoff] = None):
        self._instances = list(instances)
        self._wait_backoff = wait_backoff or Backoff()

    @property
    def name(self) -> str:
        return ",".join(i.name for i in self._instances)

    @property
    def wait_backoff(self) -> Backoff:
        return self._wait_backoff

    def instances(self) -> List[InstrumentedRunnable]:
        return list(self._instances)

    def metric_targets(self) -> List[MetricTarget]:
        targets = []
        for instance in self._instances:
            targets.extend(instance.metric_targets())
        return targets

    def sum_metrics(self, names: Sequence[str], *opts: MetricsOption) -> List[float]:
        sums = [0.0] * len(names)
        for instance in self._instances:
            partials = instance.sum_metrics(names, *opts)
            if len(partials) != len(sums):
                raise E2EError(
                    f"unexpected mismatching sum metrics results (got {len(partials)}, expected {len(sums)})"
                )
            sums = [total + partial for total, partial in zip(sums, partials)]
        return sums

    def exports_metric(self, name: str, options: MetricsOptions) -> bool:
        return any(instance.exports_metric(name, options) for instance in self._instances)
