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
Bounded retry loop built on tenacity.
"""
from typing import Callable, Optional, Tuple, Type, TypeVar

from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..MODELS.backoff import Backoff

T = TypeVar("T")


class BackoffExhausted(Exception):
    """
    Raised by :func:`call_with_backoff` when every attempt failed.

    Attributes:
        attempts: Number of attempts performed.
        last_error: Exception raised by the last attempt.
    """

    def __init__(self, attempts: int, last_error: Optional[BaseException]):
        super().__init__(f"gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


def retrying(
    backoff: Backoff,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    give_up_on: Tuple[Type[BaseException], ...] = (),
) -> Retrying:
    """
    Builds a tenacity controller for ``backoff``.

    Exceptions in ``give_up_on`` are propagated immediately even when they
    also match ``retry_on``.
    """
    retry = retry_if_exception_type(retry_on)
    if give_up_on:
        retry = retry & retry_if_not_exception_type(give_up_on)
    return Retrying(
        stop=stop_after_attempt(backoff.max_retries),
        wait=wait_exponential(
            multiplier=backoff.min_delay or backoff.max_delay,
            min=backoff.min_delay,
            max=backoff.max_delay,
        ),
        retry=retry,
        reraise=False,
    )


def call_with_backoff(
    backoff: Backoff,
    fn: Callable[[], T],
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    give_up_on: Tuple[Type[BaseException], ...] = (),
) -> T:
    """
    Calls ``fn`` until it returns, retrying exceptions in ``retry_on``.

    Args:
        backoff: Delay bounds and the attempt budget.
        fn: Zero-argument callable.
        retry_on: Exceptions that mean "not yet".
        give_up_on: Exceptions that abort the loop at once.

    Returns:
        Whatever ``fn`` returned on its first successful attempt.

    Raises:
        BackoffExhausted: The attempt budget was used up.
    """
    try:
        return retrying(backoff, retry_on, give_up_on)(fn)
    except RetryError as e:
        last = e.last_attempt
        raise BackoffExhausted(last.attempt_number, last.exception()) from last.exception()
