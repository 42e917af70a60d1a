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
Bounded retry policy shared by readiness and metric waits.
"""
from pydantic import BaseModel, ConfigDict, Field, model_validator


class Backoff(BaseModel):
    """
    Exponential backoff between ``min_delay`` and ``max_delay`` seconds.

    ``max_retries`` is the total number of attempts and must be at least one,
    so every wait built on a Backoff terminates.
    """
    model_config = ConfigDict(frozen=True)

    min_delay: float = Field(default=0.3, ge=0)
    max_delay: float = Field(default=0.6, ge=0)
    # Sometimes the CI is slow.
    max_retries: int = Field(default=50, ge=1)

    @model_validator(mode="after")
    def _check_bounds(self) -> "Backoff":
        if self.max_delay < self.min_delay:
            raise ValueError(
                f"max_delay ({self.max_delay}) must not be smaller than min_delay ({self.min_delay})"
            )
        return self

    @classmethod
    def no_retry(cls) -> "Backoff":
        """A single attempt without any delay."""
        return cls(min_delay=0, max_delay=0, max_retries=1)
