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
Generation and validation of environment and runnable names.
"""
import re
import uuid

from ..errors import ConfigurationError


def generate_name() -> str:
    """
    Returns a random 16 character name valid for both backends.
    """
    return f"e2e-{uuid.uuid4().hex}"[:16]


def validate_name(name: str, pattern: "re.Pattern[str]", what: str) -> None:
    """
    Raises ConfigurationError unless ``name`` fully matches ``pattern``.

    :param name: The name to check.
    :param pattern: Compiled pattern describing valid names.
    :param what: Human readable origin of the constraint.
    """
    if not name:
        raise ConfigurationError(f"{what} name can't be empty")
    if not pattern.fullmatch(name):
        raise ConfigurationError(
            f"name can have only {pattern.pattern} characters due to {what} constraints, got: {name}"
        )
