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
Execution of backend command-line tools with output capture and streaming.
"""
import logging
import subprocess
from typing import List, Optional

from ..errors import BackendError
from ..UTILS.line_writer import pump

logger = logging.getLogger(__name__)


class ProcessRunner:
    """
    Runs external commands (docker, kind, kubectl) on behalf of a backend.
    """
    def __init__(self, log: Optional[logging.Logger] = None, verbose: bool = False):
        """
        Initializes the process runner.

        Args:
            log (Optional[logging.Logger]): Logger receiving command lines.
            verbose (bool): Log every command at INFO instead of DEBUG.
        """
        self.logger = log or logger
        self.verbose = verbose

    def _trace(self, command: List[str]) -> None:
        self.logger.log(
            logging.INFO if self.verbose else logging.DEBUG, "exec: %s", " ".join(command)
        )

    def run(self,
            command: List[str],
            input: Optional[str] = None,
            timeout: Optional[float] = None) -> str:
        """
        Runs a command to completion and returns its combined stdout/stderr.

        Args:
            command (List[str]): Command and arguments to execute.
            input (Optional[str]): Text written to the command's stdin.
            timeout (Optional[float]): Seconds before the command is killed.

        Returns:
            str: Combined output.

        Raises:
            BackendError: The command is missing, timed out or exited non-zero.
        """
        self._trace(command)
        try:
            result = subprocess.run(
                command,
                input=input,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=timeout,
                # Avoid shell=True for security reasons (CWE-78)
                shell=False,
            )
        except FileNotFoundError as e:
            raise BackendError(f"{command[0]} not found: {e}", command=command) from e
        except subprocess.TimeoutExpired as e:
            output = e.output if isinstance(e.output, str) else ""
            raise BackendError(
                f"{command[0]} timed out after {timeout}s", command=command, output=output
            ) from e

        if result.returncode != 0:
            raise BackendError(
                f"{' '.join(command[:3])} exited with code {result.returncode}: {result.stdout.strip()}",
                command=command,
                output=result.stdout,
                exit_code=result.returncode,
            )
        return result.stdout

    def spawn(self, command: List[str], output) -> subprocess.Popen:
        """
        Starts a long-running command in the background.

        Args:
            command (List[str]): Command and arguments to execute.
            output: Writer receiving stdout and stderr line by line.

        Returns:
            subprocess.Popen: Handle of the started process.
        """
        self._trace(command)
        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                shell=False,
            )
        except OSError as e:
            raise BackendError(f"failed to start {command[0]}: {e}", command=command) from e
        pump(process.stdout, output, flush_sink=True)
        return process

    def stream(self, command: List[str], stdout, stderr) -> int:
        """
        Runs a command to completion, copying its output to the given writers
        while it runs.

        Returns:
            int: Exit code of the command.
        """
        self._trace(command)
        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                shell=False,
            )
        except OSError as e:
            raise BackendError(f"failed to start {command[0]}: {e}", command=command) from e

        threads = [
            pump(process.stdout, stdout, flush_sink=True),
            pump(process.stderr, stderr, flush_sink=True),
        ]
        exit_code = process.wait()
        for thread in threads:
            thread.join()
        return exit_code

    @staticmethod
    def terminate(process: Optional[subprocess.Popen], timeout: float = 10) -> None:
        """
        Waits for a spawned process, killing it if it does not exit in time.
        """
        if process is None or process.poll() is not None:
            return
        try:
            process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.debug("process %s did not exit, killing", process.pid)
            process.kill()
            process.wait()
