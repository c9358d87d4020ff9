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
Execution of system processes, either to completion or in the background.
"""
import logging
import os
import shlex
import subprocess
from typing import Dict, List, Optional, Union

logger = logging.getLogger(__name__)


def describe(command: Union[str, List[str]]) -> str:
    if isinstance(command, str):
        return command
    return shlex.join(command)


class ProcessRunner:
    """
    Runs commands to completion, or keeps one long-running process in the
    background. A string command goes through the shell, a list is executed
    directly.
    """
    def __init__(self, name: str = "layerup", log_file: Optional[str] = None):
        """
        Initializes the process runner.

        Args:
            name (str): Prefix used when logging commands.
            log_file (Optional[str]): Where a background process writes its output.
        """
        self.name = name
        self.log_file = log_file
        self.process: Optional[subprocess.Popen] = None
        self._log_handle = None

    def run(self,
            command: Union[str, List[str]],
            env: Optional[Dict[str, str]] = None,
            timeout: Optional[float] = None,
            working_dir: Optional[str] = None) -> subprocess.CompletedProcess:
        """
        Runs the command and waits for it.

        Args:
            command: Command line, as a shell string or argument list.
            env: Environment for the process; inherits ours when None.
            timeout: Seconds before the process is killed.
            working_dir: Directory to run the command in.

        Returns:
            subprocess.CompletedProcess: Exit code and captured output.

        Raises:
            subprocess.TimeoutExpired: If the timeout elapses.
            OSError: If the executable cannot be launched.
        """
        use_shell = isinstance(command, str)
        logger.debug("[%s] Running command: %s", self.name, describe(command))
        return subprocess.run(
            command,
            shell=use_shell,
            env=env,
            cwd=working_dir,
            capture_output=True,
            timeout=timeout,
            text=True,
        )

    def exit_code(self,
                  command: Union[str, List[str]],
                  timeout: float,
                  env: Optional[Dict[str, str]] = None) -> int:
        """
        Command-execution primitive for readiness probes.

        Args:
            env: Environment for the command; inherits ours when None.

        Returns:
            int: The exit code of the command.
        """
        return self.run(command, env=env, timeout=timeout).returncode

    def start(self,
              command: List[str],
              env: Dict[str, str],
              working_dir: Optional[str] = None):
        """
        Starts a long-running process in the background.

        Args:
            command (List[str]): Command and arguments to execute.
            env (Dict[str, str]): Environment variables for the process.
            working_dir (Optional[str]): Directory to start the process in.
        """
        if working_dir and not os.path.exists(working_dir):
            os.makedirs(working_dir, exist_ok=True)

        stdout = subprocess.DEVNULL
        if self.log_file:
            log_dir = os.path.dirname(self.log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            self._log_handle = open(self.log_file, 'a')
            stdout = self._log_handle

        logger.info("[%s] Starting command: %s", self.name, describe(command))
        try:
            self.process = subprocess.Popen(
                command,
                env=env,
                cwd=working_dir,
                stdout=stdout,
                stderr=subprocess.STDOUT,
                text=True,
                shell=False
            )
        except OSError:
            self._close_log()
            raise

    def stop(self, timeout: float = 10):
        """
        Stops the background process with SIGTERM, then SIGKILL if it lingers.

        Args:
            timeout (float): Seconds to wait for termination before killing.
        """
        if self.process and self.process.poll() is None:
            logger.info("[%s] Stopping process...", self.name)
            self.process.terminate()
            try:
                self.process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                logger.warning("[%s] Process did not terminate, killing...", self.name)
                self.process.kill()
                self.process.wait()
        self._close_log()

    def is_running(self) -> bool:
        return self.process is not None and self.process.poll() is None

    def _close_log(self):
        if self._log_handle is not None:
            self._log_handle.close()
            self._log_handle = None
