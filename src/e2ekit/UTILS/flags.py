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
Helpers for building command-line flags of workloads.
"""
from typing import Dict, List


def empty_flags() -> Dict[str, str]:
    return {}


def merge_flags_without_removing_empty(*inputs: Dict[str, str]) -> Dict[str, str]:
    """
    Merges flag maps; later maps override earlier ones.
    """
    output: Dict[str, str] = {}
    for flags in inputs:
        output.update(flags)
    return output


def merge_flags(*inputs: Dict[str, str]) -> Dict[str, str]:
    """
    Merges flag maps and drops flags whose final value is empty.
    """
    return {
        name: value
        for name, value in merge_flags_without_removing_empty(*inputs).items()
        if value != ""
    }


def build_args(flags: Dict[str, str]) -> List[str]:
    """
    Turns ``{"--a": "1", "--b": ""}`` into ``["--a=1", "--b"]``.
    """
    return [f"{name}={value}" if value != "" else name for name, value in flags.items()]
