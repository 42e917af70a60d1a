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
Parsing, filtering and summing of Prometheus text exposition metrics, plus
the predicates used to wait on the sums.
"""
import math
from http.client import HTTPException
from typing import Callable, Dict, List, Optional, Sequence, Tuple
from urllib.error import URLError

from prometheus_client.metrics_core import Metric
from prometheus_client.parser import text_string_to_metric_families

from ..errors import MissingMetricError, ScrapeError
from ..MODELS.metrics_options import (
    LabelMatcher,
    MetricsOptions,
    MissingMetricsPolicy,
    ValueMode,
)
from ..PROBES.readiness import http_get

MetricValueExpectation = Callable[..., bool]

# Types whose buckets are split by an "le" label.
_HISTOGRAM_TYPES = ("histogram", "gaugehistogram")

Series = Tuple[Dict[str, str], float]


def fetch_metrics(url: str, timeout: float = 5.0) -> str:
    """
    Fetches a metrics page.

    :raises ScrapeError: Transport failure or a non-2xx status code.
    """
    try:
        status, body = http_get(url, timeout)
    except (URLError, HTTPException, OSError) as e:
        raise ScrapeError(f"unable to fetch metrics from {url}: {e}") from e
    if status < 200 or status >= 300:
        raise ScrapeError(f"unexpected status code {status} while fetching metrics from {url}")
    return body


def parse_families(text: str) -> Dict[str, Metric]:
    """
    Parses exposition text into metric families keyed by name.

    Counter families are reachable both with and without the ``_total`` suffix.
    """
    families: Dict[str, Metric] = {}
    try:
        for family in text_string_to_metric_families(text):
            families[family.name] = family
            if family.type == "counter":
                families.setdefault(family.name + "_total", family)
    # Malformed input surfaces as assorted exception types.
    except (ValueError, IndexError, KeyError, TypeError) as e:
        raise ScrapeError(f"unable to parse metrics: {e}") from e
    return families


def _value_samples(family: Metric, mode: ValueMode) -> Tuple[str, ...]:
    name = family.name
    if family.type in ("histogram", "gaugehistogram", "summary"):
        if mode == ValueMode.COUNT:
            return name + "_count", name + "_gcount"
        return name + "_sum", name + "_gsum"
    if mode == ValueMode.COUNT:
        return ()
    if family.type == "counter":
        return name, name + "_total"
    return (name,)


def family_series(family: Metric, mode: ValueMode = ValueMode.VALUE) -> List[Series]:
    """
    Groups the samples of a family into series and extracts one value each.

    Gauges, counters and untyped metrics give their value; histograms and
    summaries give their sum, or their count in ``COUNT`` mode. Other types
    count as zero in ``COUNT`` mode.
    """
    value_samples = _value_samples(family, mode)
    series: Dict[Tuple[Tuple[str, str], ...], List] = {}
    for sample in family.samples:
        if sample.name == family.name + "_created":
            continue
        labels = dict(sample.labels)
        if family.type in _HISTOGRAM_TYPES and sample.name == family.name + "_bucket":
            labels.pop("le", None)
        elif family.type == "summary" and sample.name == family.name:
            labels.pop("quantile", None)
        entry = series.setdefault(tuple(sorted(labels.items())), [labels, 0.0])
        if sample.name in value_samples:
            entry[1] = float(sample.value)
    return [(labels, value) for labels, value in series.values()]


def filter_series(series: List[Series], matchers: Sequence[LabelMatcher]) -> List[Series]:
    """Keeps the series matching every matcher; a missing label matches as ""."""
    if not matchers:
        return series
    return [
        (labels, value) for labels, value in series
        if all(m.matches(labels.get(m.name, "")) for m in matchers)
    ]


def sum_families(families: Dict[str, Metric],
                 names: Sequence[str],
                 options: MetricsOptions,
                 service: str = "") -> List[float]:
    """
    Sums every requested metric over its (filtered) series.

    :raises MissingMetricError: A metric, or every series of it, is missing,
        unless missing metrics are skipped.
    """
    sums = []
    for name in names:
        family = families.get(name)
        values = None
        if family is not None:
            series = family_series(family, options.value_mode)
            filtered = filter_series(series, options.label_matchers)
            # A family declared by HELP/TYPE lines alone is missing.
            if filtered:
                values = [value for _, value in filtered]

        if values is None:
            if options.missing_metrics == MissingMetricsPolicy.SKIP:
                sums.append(0.0)
                continue
            raise MissingMetricError(name, service)
        # NaN propagates through the builtin sum.
        sums.append(sum(values, 0.0))
    return sums


def sum_metrics_from_text(text: str,
                          names: Sequence[str],
                          options: Optional[MetricsOptions] = None,
                          service: str = "") -> List[float]:
    """
    Parses ``text`` and sums ``names``, one result per name, in order.
    """
    return sum_families(parse_families(text), names, options or MetricsOptions(), service)


def has_series(text: str, name: str, options: Optional[MetricsOptions] = None) -> bool:
    """Whether ``name`` has at least one series matching the option filters."""
    options = options or MetricsOptions()
    family = parse_families(text).get(name)
    if family is None:
        return False
    return bool(filter_series(family_series(family), options.label_matchers))


# Expectations


def _check_arity(name: str, sums: Sequence[float], expected: int) -> None:
    if len(sums) != expected:
        raise ValueError(f"{name}: expected {expected} value(s), got {len(sums)}")


def equals(value: float) -> MetricValueExpectation:
    """Single sum equal to ``value``; NaN equals NaN."""
    def expectation(*sums: float) -> bool:
        _check_arity("equals", sums, 1)
        return sums[0] == value or (math.isnan(sums[0]) and math.isnan(value))
    return expectation


def greater(value: float) -> MetricValueExpectation:
    def expectation(*sums: float) -> bool:
        _check_arity("greater", sums, 1)
        return sums[0] > value
    return expectation


def greater_or_equal(value: float) -> MetricValueExpectation:
    def expectation(*sums: float) -> bool:
        _check_arity("greater_or_equal", sums, 1)
        return sums[0] >= value
    return expectation


def less(value: float) -> MetricValueExpectation:
    def expectation(*sums: float) -> bool:
        _check_arity("less", sums, 1)
        return sums[0] < value
    return expectation


def between(lower: float, upper: float) -> MetricValueExpectation:
    """Single sum strictly between ``lower`` and ``upper``."""
    def expectation(*sums: float) -> bool:
        _check_arity("between", sums, 1)
        return lower < sums[0] < upper
    return expectation


def equals_among_two(*sums: float) -> bool:
    _check_arity("equals_among_two", sums, 2)
    return sums[0] == sums[1]


def greater_among_two(*sums: float) -> bool:
    """First sum greater than the second."""
    _check_arity("greater_among_two", sums, 2)
    return sums[0] > sums[1]


def less_among_two(*sums: float) -> bool:
    _check_arity("less_among_two", sums, 2)
    return sums[0] < sums[1]
