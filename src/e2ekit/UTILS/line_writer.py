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
File-like writer forwarding every complete line to a logger.
"""
import logging
import threading
from typing import IO, Optional


class LinePrefixWriter:
    """
    Buffers written text and logs each non-empty line with a prefix.

    Used as the default sink for workload and exec output.
    """

    def __init__(self, logger: logging.Logger, prefix: str, level: int = logging.INFO):
        self.logger = logger
        self.prefix = prefix
        self.level = level
        self._buffer = ""
        self._lock = threading.Lock()

    def write(self, text: str) -> int:
        with self._lock:
            self._buffer += text
            *lines, self._buffer = self._buffer.split("\n")
        for line in lines:
            self._log(line)
        return len(text)

    def flush(self) -> None:
        with self._lock:
            rest, self._buffer = self._buffer, ""
        self._log(rest)

    def _log(self, line: str) -> None:
        line = line.strip()
        if line:
            self.logger.log(self.level, "%s%s", self.prefix, line)


def pump(source: IO[str], sink, flush_sink: bool = False) -> threading.Thread:
    """
    Copies ``source`` into ``sink`` line by line on a daemon thread.

    Args:
        source: Text stream to read until EOF (e.g. a process pipe).
        sink: Object with ``write`` (and optionally ``flush``).
        flush_sink: Flush the sink once the source is exhausted.
    """

    def _copy() -> None:
        try:
            for line in iter(source.readline, ""):
                sink.write(line)
        finally:
            source.close()
            flush: Optional[object] = getattr(sink, "flush", None)
            if flush_sink and callable(flush):
                flush()

    thread = threading.Thread(target=_copy, daemon=True)
    thread.start()
    return thread
