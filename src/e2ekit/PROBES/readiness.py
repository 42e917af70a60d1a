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
Pluggable readiness checks invoked by ``Runnable.wait_ready``.

Each probe raises when the runnable is not ready yet and returns ``None``
once it is. Probes never run on their own; the runnable calls them under its
backoff.
"""
import socket
import ssl
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Sequence, Tuple
from urllib.error import HTTPError
from urllib.request import Request, urlopen

from ..errors import ConfigurationError, NotRunningError
from ..MODELS.command import Command

if TYPE_CHECKING:
    from ..MANAGERS.runnable import Runnable

STOPPED_ENDPOINT = "stopped"


class ProbeError(Exception):
    """The runnable answered, but not the way the probe expects."""


def resolve_endpoint(runnable: "Runnable", port_name: str) -> str:
    """
    Returns the host endpoint of ``port_name`` or raises when it can't be used.
    """
    endpoint = runnable.endpoint(port_name)
    if endpoint == "":
        raise ConfigurationError(
            f"cannot get service endpoint for port {port_name!r} of {runnable.name}"
        )
    if endpoint == STOPPED_ENDPOINT:
        raise NotRunningError(runnable.name)
    return endpoint


def insecure_ssl_context() -> ssl.SSLContext:
    # Test and benchmark targets use self-signed certificates.
    ctx = ssl.create_default_context()
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    return ctx


def http_get(url: str, timeout: float) -> Tuple[int, str]:
    """
    Performs a GET and returns ``(status, body)`` for any HTTP status code.
    """
    context = insecure_ssl_context() if url.startswith("https://") else None
    try:
        with urlopen(Request(url), timeout=timeout, context=context) as response:
            return response.status, response.read().decode("utf-8", errors="replace")
    except HTTPError as e:
        body = e.read().decode("utf-8", errors="replace") if e.fp else ""
        return e.code, body


class ReadinessProbe(ABC):
    """Base class for readiness checks."""

    @abstractmethod
    def ready(self, runnable: "Runnable") -> None:
        """Raises if ``runnable`` is not ready."""


class HTTPReadinessProbe(ReadinessProbe):
    """
    Ready when a GET returns a status in the inclusive range and the body
    contains every expected substring.
    """
    scheme = "http"

    def __init__(
        self,
        port_name: str,
        path: str,
        expected_status_range_start: int = 200,
        expected_status_range_end: int = 299,
        expected_content: Sequence[str] = (),
        timeout: float = 1.0,
    ):
        self.port_name = port_name
        self.path = path
        self.expected_status_range_start = expected_status_range_start
        self.expected_status_range_end = expected_status_range_end
        self.expected_content = list(expected_content)
        self.timeout = timeout

    def ready(self, runnable: "Runnable") -> None:
        endpoint = resolve_endpoint(runnable, self.port_name)
        status, body = http_get(f"{self.scheme}://{endpoint}{self.path}", self.timeout)

        if status < self.expected_status_range_start or status > self.expected_status_range_end:
            raise ProbeError(
                f"expected code in range: [{self.expected_status_range_start}, "
                f"{self.expected_status_range_end}], got status code: {status} and body: {body}"
            )
        for expected in self.expected_content:
            if expected not in body:
                raise ProbeError(f"expected body containing {expected}, got: {body}")


class HTTPSReadinessProbe(HTTPReadinessProbe):
    """Same as HTTPReadinessProbe over TLS; certificates are not verified."""

    scheme = "https"


class TCPReadinessProbe(ReadinessProbe):
    """Ready when a TCP connection can be established."""

    def __init__(self, port_name: str, timeout: float = 1.0):
        self.port_name = port_name
        self.timeout = timeout

    def ready(self, runnable: "Runnable") -> None:
        host, _, port = resolve_endpoint(runnable, self.port_name).rpartition(":")
        with socket.create_connection((host, int(port)), timeout=self.timeout):
            pass


class CmdReadinessProbe(ReadinessProbe):
    """Ready when the command exits with zero inside the runnable."""

    def __init__(self, command: Command):
        self.command = command

    def ready(self, runnable: "Runnable") -> None:
        runnable.exec(self.command)
