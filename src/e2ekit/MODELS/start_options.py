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
Models for the start-up definition of a single runnable.
"""
from typing import Dict, List, Optional
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field

from .backoff import Backoff
from .command import Command
from ..PROBES.readiness import ReadinessProbe


class RunnableCapability(str, Enum):
    """
    Linux capabilities that can be added to a workload.
    """
    SYS_ADMIN = "SYS_ADMIN"
    NET_ADMIN = "NET_ADMIN"
    SYS_PTRACE = "SYS_PTRACE"


class StartOptions(BaseModel):
    """
    Everything a backend needs to start one workload. Immutable once created.
    """
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    image: str
    env_vars: Dict[str, str] = {}
    user: str = ""
    command: Command = Field(default_factory=Command)
    readiness: Optional[ReadinessProbe] = None
    # Falls back to the environment default when not set.
    wait_ready_backoff: Optional[Backoff] = None
    volumes: List[str] = []
    user_ns: str = ""
    privileged: bool = False
    capabilities: List[RunnableCapability] = []

    limit_memory_bytes: int = Field(default=0, ge=0)
    limit_cpus: float = Field(default=0.0, ge=0)
