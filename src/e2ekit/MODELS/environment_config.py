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
Configuration for an isolated environment.
"""
import os
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field

from .backoff import Backoff

TEMP_DIR_ENV = "E2E_TEMP_DIR"


def _default_temp_dir() -> Optional[str]:
    return os.environ.get(TEMP_DIR_ENV) or None


class EnvironmentConfig(BaseModel):
    """
    Explicit settings for an environment.

    :param name: Scope name; generated when omitted.
    :param volumes: Extra volumes mounted into every runnable.
    :param verbose: Log every backend command at INFO level.
    :param temp_dir: Parent of the shared directory; ``$E2E_TEMP_DIR`` or the
        current working directory by default.
    :param default_backoff: Wait-ready backoff for runnables that do not set one.
    """
    model_config = ConfigDict(frozen=True)

    name: Optional[str] = None
    volumes: List[str] = []
    verbose: bool = False
    temp_dir: Optional[str] = Field(default_factory=_default_temp_dir)
    default_backoff: Backoff = Field(default_factory=Backoff)
