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
Error taxonomy for configuration, graph validation and service startup.
"""
from typing import List, Optional


class LayerupError(Exception):
    """Base class for every error raised by layerup."""


class ConfigError(LayerupError):
    """The deployment configuration could not be loaded or resolved."""


class PrepareError(LayerupError):
    """A preparation step exited non-zero before any service was started."""

    def __init__(self, command: List[str], exit_code: int):
        self.command = command
        self.exit_code = exit_code
        super().__init__(
            f"Prepare step '{' '.join(command)}' failed with exit code {exit_code}"
        )


class GraphError(LayerupError):
    """
    The service graph is malformed. Always raised before any service starts.
    """


class DuplicateServiceError(GraphError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Service '{name}' is defined more than once")


class UnknownDependencyError(GraphError):
    def __init__(self, service: str, missing: str):
        self.service = service
        self.missing = missing
        super().__init__(
            f"Service '{service}' depends on '{missing}', which is not defined"
        )


class CycleError(GraphError):
    def __init__(self, path: List[str]):
        self.path = list(path)
        super().__init__(f"Circular dependency detected: {' -> '.join(self.path)}")


class StartError(LayerupError):
    """The start collaborator failed to launch a service. Never retried."""

    def __init__(self, service: str, cause: Optional[BaseException] = None):
        self.service = service
        self.cause = cause
        message = f"Failed to start service '{service}'"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class ProbeConfigError(LayerupError):
    """A readiness check is malformed (bad URL, empty command, ...)."""


class ProbeTimeoutError(LayerupError):
    """Probing exhausted its attempts without the service becoming ready."""

    def __init__(self, service: str, attempts: int, reason: str = ""):
        self.service = service
        self.attempts = attempts
        self.reason = reason
        message = f"Service '{service}' not ready after {attempts} attempt(s)"
        if reason:
            message += f"; last probe: {reason}"
        super().__init__(message)


class CancelledError(LayerupError):
    """The orchestration was cancelled while the service was still probing."""

    def __init__(self, service: str):
        self.service = service
        super().__init__(f"Startup of '{service}' was cancelled")
