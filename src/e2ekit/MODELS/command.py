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
Models describing an executable invocation inside or outside a workload.
"""
from typing import List
from pydantic import BaseModel, ConfigDict


class Command(BaseModel):
    """
    A single executable invocation.

    ``entrypoint_disabled`` tells the container backend to override the image
    ENTRYPOINT so that ``cmd`` is executed directly.
    """
    model_config = ConfigDict(frozen=True)

    cmd: str = ""
    args: List[str] = []
    entrypoint_disabled: bool = False

    @classmethod
    def new(cls, cmd: str, *args: str) -> "Command":
        return cls(cmd=cmd, args=list(args))

    @classmethod
    def without_entrypoint(cls, cmd: str, *args: str) -> "Command":
        return cls(cmd=cmd, args=list(args), entrypoint_disabled=True)

    @classmethod
    def run_until_stop(cls) -> "Command":
        """Keeps a container alive until it is stopped or killed."""
        return cls.without_entrypoint("tail", "-f", "/dev/null")

    def to_list(self) -> List[str]:
        """
        Returns the command as an argument list, omitting an empty executable.
        """
        parts = [self.cmd] if self.cmd else []
        return parts + list(self.args)

    def __str__(self) -> str:
        return " ".join(self.to_list())
