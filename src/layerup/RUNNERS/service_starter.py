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
Start collaborators: the pieces that actually bring a service up or down.

The orchestrator only sees the ServiceStarter protocol; which runtime sits
behind it (plain commands, background processes, Docker Compose) is chosen
by the caller.
"""
import logging
import os
import shlex
import shutil
import subprocess
from typing import Callable, Dict, List, Optional, Protocol, Union

from ..MODELS.orchestration_config import DeploymentConfig, DeploymentContext, Runtime
from ..MODELS.service_definition import Service
from ..exceptions import ConfigError, LayerupError, PrepareError, StartError
from .process_runner import ProcessRunner, describe

logger = logging.getLogger(__name__)

CommandLine = Union[str, List[str]]


class ServiceStarter(Protocol):
    """
    What the orchestrator needs from a runtime.
    """

    def start(self, service: Service) -> None:
        """Launches the service; raises StartError on failure."""

    def stop(self, service: Service) -> None:
        """Brings the service down; raises on failure."""

    def cleanup_registered(self, service: Service) -> bool:
        """Whether stop() should run when a later layer fails."""


class CommandStarter:
    """
    Starts and stops services by running their configured commands to
    completion, e.g. `systemctl start db` or `docker compose up -d db`.
    """
    def __init__(self,
                 context: Optional[DeploymentContext] = None,
                 project_dir: str = ".",
                 runner: Optional[ProcessRunner] = None,
                 timeout: Optional[float] = 300):
        """
        Initializes the starter.

        :param context: Resolved deployment environment and variant.
        :param project_dir: Working directory for every command.
        :param runner: Command runner, replaceable in tests.
        :param timeout: Seconds a single start/stop command may take.
        """
        self.context = context or DeploymentContext()
        self.project_dir = project_dir
        self.runner = runner or ProcessRunner("starter")
        self.timeout = timeout

    def environment(self) -> Dict[str, str]:
        """
        Process environment overlaid with the deployment environment.
        """
        env = os.environ.copy()
        env.update(self.context.environment)
        if self.context.variant:
            env.setdefault("LAYERUP_VARIANT", self.context.variant)
        return env

    def start_command(self, service: Service) -> Optional[CommandLine]:
        return service.start

    def stop_command(self, service: Service) -> Optional[CommandLine]:
        return service.cleanup

    def cleanup_registered(self, service: Service) -> bool:
        return service.has_cleanup

    def start(self, service: Service) -> None:
        command = self.start_command(service)
        if not command:
            logger.info("[%s] No start command, nothing to run.", service.name)
            return
        try:
            result = self._execute(command)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise StartError(service.name, e) from e
        if result.returncode != 0:
            raise StartError(service.name, RuntimeError(self._failure(command, result)))

    def stop(self, service: Service) -> None:
        command = self.stop_command(service)
        if not command:
            return
        try:
            result = self._execute(command)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise LayerupError(f"Failed to stop service '{service.name}': {e}") from e
        if result.returncode != 0:
            raise LayerupError(
                f"Failed to stop service '{service.name}': {self._failure(command, result)}"
            )

    def prepare(self, steps: List[CommandLine]) -> None:
        """
        Runs preparation steps (directory setup, image builds) in order.

        :raises PrepareError: On the first step that fails.
        """
        for step in steps:
            logger.info("Prepare: %s", describe(step))
            argv = shlex.split(step) if isinstance(step, str) else list(step)
            try:
                result = self._execute(step)
            except (OSError, subprocess.TimeoutExpired) as e:
                logger.error("Prepare step failed: %s", e)
                raise PrepareError(argv, -1) from e
            if result.returncode != 0:
                logger.error(self._failure(step, result))
                raise PrepareError(argv, result.returncode)

    def _execute(self, command: CommandLine) -> subprocess.CompletedProcess:
        return self.runner.run(
            command,
            env=self.environment(),
            timeout=self.timeout,
            working_dir=self.project_dir,
        )

    @staticmethod
    def _failure(command: CommandLine, result: subprocess.CompletedProcess) -> str:
        message = f"'{describe(command)}' exited {result.returncode}"
        stderr = (result.stderr or "").strip()
        if stderr:
            message += f": {stderr[-500:]}"
        return message


class ProcessStarter(CommandStarter):
    """
    Keeps each service's start command running as a background process,
    with its output in <project_dir>/.layerup/logs/<name>.log.

    Unlike the other starters, a string start command is split with shlex
    and executed directly, not through a shell, so that stop() signals the
    service itself rather than a wrapping shell. Shell syntax such as pipes,
    redirections or `&&` is not available here; wrap it in
    `["sh", "-c", "..."]` if it is needed. Cleanup commands still follow the
    usual rule and a string runs through the shell.
    """
    def __init__(self,
                 context: Optional[DeploymentContext] = None,
                 project_dir: str = ".",
                 runner: Optional[ProcessRunner] = None,
                 timeout: Optional[float] = 300):
        super().__init__(context, project_dir, runner, timeout)
        self.processes: Dict[str, ProcessRunner] = {}

    def cleanup_registered(self, service: Service) -> bool:
        # every process started here can be terminated again
        return True

    def start(self, service: Service) -> None:
        if not service.start:
            raise StartError(service.name, ValueError("no start command configured"))
        argv = shlex.split(service.start) if isinstance(service.start, str) else list(service.start)
        log_path = os.path.join(self.project_dir, ".layerup", "logs", f"{service.name}.log")
        runner = ProcessRunner(service.name, log_file=log_path)
        try:
            runner.start(argv, env=self.environment(), working_dir=self.project_dir)
        except OSError as e:
            raise StartError(service.name, e) from e
        self.processes[service.name] = runner

    def stop(self, service: Service) -> None:
        """
        Runs the cleanup command, if any, then terminates the process.
        The process is terminated even when the cleanup command fails.
        """
        try:
            if service.cleanup:
                super().stop(service)
        finally:
            runner = self.processes.pop(service.name, None)
            if runner is not None:
                runner.stop()

    def status(self, name: str) -> str:
        runner = self.processes.get(name)
        if runner is None:
            return "stopped"
        if runner.is_running():
            return "running"
        return f"exited({runner.process.returncode})"


def detect_compose_command(which: Callable[[str], Optional[str]] = shutil.which,
                           runner: Optional[ProcessRunner] = None) -> List[str]:
    """
    Picks `docker-compose` if installed, else the `docker compose` plugin.

    :raises ConfigError: If neither is available.
    """
    if which("docker-compose"):
        return ["docker-compose"]
    if which("docker"):
        runner = runner or ProcessRunner("compose")
        try:
            if runner.run(["docker", "compose", "version"], timeout=30).returncode == 0:
                return ["docker", "compose"]
        except (OSError, subprocess.TimeoutExpired):
            pass
    raise ConfigError("Docker Compose is not available. Please install Docker Compose.")


class ComposeStarter(CommandStarter):
    """
    Starts services as Docker Compose services of the same name, unless a
    service configures its own start or cleanup command.
    """
    def __init__(self,
                 context: Optional[DeploymentContext] = None,
                 project_dir: str = ".",
                 compose_file: Optional[str] = None,
                 compose_command: Optional[List[str]] = None,
                 runner: Optional[ProcessRunner] = None,
                 timeout: Optional[float] = 300):
        super().__init__(context, project_dir, runner, timeout)
        self.compose_file = compose_file
        self._compose_command = compose_command

    @property
    def compose_command(self) -> List[str]:
        if self._compose_command is None:
            self._compose_command = detect_compose_command(runner=self.runner)
            logger.info("Using Docker Compose: %s", " ".join(self._compose_command))
        command = list(self._compose_command)
        if self.compose_file:
            command += ["-f", self.compose_file]
        return command

    def start_command(self, service: Service) -> Optional[CommandLine]:
        if service.start:
            return service.start
        return self.compose_command + ["up", "-d", service.name]

    def stop_command(self, service: Service) -> Optional[CommandLine]:
        if service.cleanup:
            return service.cleanup
        return self.compose_command + ["stop", service.name]


def build_starter(config: DeploymentConfig, context: DeploymentContext) -> CommandStarter:
    """
    Returns the start collaborator for the configured runtime.
    """
    if config.runtime == Runtime.COMPOSE:
        return ComposeStarter(context, config.project_dir, compose_file=config.compose_file)
    if config.runtime == Runtime.PROCESS:
        return ProcessStarter(context, config.project_dir)
    return CommandStarter(context, config.project_dir)
