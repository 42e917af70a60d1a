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
Options controlling how metrics are filtered, extracted and waited on.
"""
import re
from enum import Enum
from typing import Callable, List, Optional
from pydantic import BaseModel, ConfigDict

from .backoff import Backoff


class MatchType(str, Enum):
    """Label matcher operators, as in PromQL selectors."""

    EQUAL = "="
    NOT_EQUAL = "!="
    REGEXP = "=~"
    NOT_REGEXP = "!~"


class LabelMatcher:
    """
    Matches a single label value. A label absent from a series matches as "".
    """

    def __init__(self, match_type: MatchType, name: str, value: str):
        self.type = MatchType(match_type)
        self.name = name
        self.value = value
        self._regex = None
        if self.type in (MatchType.REGEXP, MatchType.NOT_REGEXP):
            try:
                self._regex = re.compile(value)
            except re.error as e:
                raise ValueError(f"invalid regular expression {value!r} for label {name}: {e}") from e

    @classmethod
    def parse(cls, expression: str) -> "LabelMatcher":
        """
        Parses ``name=value``, ``name!=value``, ``name=~re`` or ``name!~re``.
        """
        match = re.match(r"^\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*(=~|!~|!=|=)(.*)$", expression)
        if not match:
            raise ValueError(f"invalid label matcher: {expression!r}")
        name, op, value = match.groups()
        return cls(MatchType(op), name, value.strip().strip('"'))

    def matches(self, value: str) -> bool:
        if self.type == MatchType.EQUAL:
            return value == self.value
        if self.type == MatchType.NOT_EQUAL:
            return value != self.value
        matched = self._regex.fullmatch(value) is not None
        return matched if self.type == MatchType.REGEXP else not matched

    def __repr__(self) -> str:
        return f'{self.name}{self.type.value}"{self.value}"'


class ValueMode(str, Enum):
    """Which number is extracted from each series."""

    VALUE = "value"  # gauge/counter/untyped value, histogram/summary sum
    COUNT = "count"  # histogram/summary sample count


class MissingMetricsPolicy(str, Enum):
    """What happens when a requested metric is absent."""

    ERROR = "error"
    SKIP = "skip"
    WAIT = "wait"


class MetricsOptions(BaseModel):
    """
    Resolved metric options; build them with the ``with_*`` helpers below.
    """
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    label_matchers: List[LabelMatcher] = []
    value_mode: ValueMode = ValueMode.VALUE
    missing_metrics: MissingMetricsPolicy = MissingMetricsPolicy.ERROR
    wait_backoff: Optional[Backoff] = None


MetricsOption = Callable[[MetricsOptions], MetricsOptions]


def with_label_matchers(*matchers: LabelMatcher) -> MetricsOption:
    """Only series matching every matcher are taken into account."""
    return lambda o: o.model_copy(update={"label_matchers": list(matchers)})


def with_metric_count() -> MetricsOption:
    """Use the histogram/summary sample count as the metric value."""
    return lambda o: o.model_copy(update={"value_mode": ValueMode.COUNT})


def wait_missing_metrics() -> MetricsOption:
    """Treat a missing metric as "not yet" while waiting instead of failing."""
    return lambda o: o.model_copy(update={"missing_metrics": MissingMetricsPolicy.WAIT})


def skip_missing_metrics() -> MetricsOption:
    """Count a missing metric as zero."""
    return lambda o: o.model_copy(update={"missing_metrics": MissingMetricsPolicy.SKIP})


def with_wait_backoff(backoff: Backoff) -> MetricsOption:
    """Overrides the backoff used by a single wait call."""
    return lambda o: o.model_copy(update={"wait_backoff": backoff})


def build_metrics_options(*opts: MetricsOption, base: Optional[MetricsOptions] = None) -> MetricsOptions:
    options = base or MetricsOptions()
    for opt in opts:
        options = opt(options)
    return options
