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
Typed keys for attaching collaborator capabilities to a runnable.
"""
from typing import Generic, TypeVar

T = TypeVar("T")


class ExtensionKey(Generic[T]):
    """
    Identity token for one capability (e.g. "instrumented").

    Keys compare by identity, so two collaborators can never clash even if
    they pick the same label.
    """

    def __init__(self, label: str):
        self.label = label

    def __repr__(self) -> str:
        return f"ExtensionKey({self.label!r})"
