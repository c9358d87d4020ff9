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
Readiness probes: TCP connect, HTTP status and command exit code.

A probe that cannot reach its target is a normal "not ready yet" answer.
Only a malformed check raises.
"""
import functools
import logging
import subprocess
from dataclasses import dataclass
from http.client import HTTPException, InvalidURL
from typing import Callable, Dict, List, Optional, Union
from urllib.parse import urlparse

from ..MODELS.service_definition import CommandCheck, HttpCheck, NoCheck, TcpCheck
from ..RUNNERS.process_runner import ProcessRunner, describe
from ..UTILS import net
from ..exceptions import ProbeConfigError

logger = logging.getLogger(__name__)

DialFn = Callable[[str, int, float], None]
HttpGetFn = Callable[[str, float], int]
RunCommandFn = Callable[[Union[str, List[str]], float], int]


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of one probe."""

    ready: bool
    detail: str = ""


class ReadinessProber:
    """
    Checks whether a started service can accept work.
    Never touches graph or service state; the network and process
    primitives are injected so fakes can stand in for them.
    """

    def __init__(
        self,
        timeout: float = 2.0,
        dial: Optional[DialFn] = None,
        http_get: Optional[HttpGetFn] = None,
        run_command: Optional[RunCommandFn] = None,
        environment: Optional[Dict[str, str]] = None,
    ):
        """
        Initializes the prober.

        :param timeout: Per-attempt timeout in seconds for every probe kind.
        :param dial: TCP connect primitive, raises OSError on failure.
        :param http_get: Returns the status code of a GET.
        :param run_command: Returns the exit code of a command.
        :param environment: Complete environment for command probes, usually
                            the start collaborator's; ours when None.
        """
        self.timeout = timeout
        self._dial = dial or net.dial
        self._http_get = http_get or net.http_get
        self._run_command = run_command or functools.partial(
            ProcessRunner("probe").exit_code, env=environment
        )

    def probe(self, check, attempt: int = 1) -> ProbeResult:
        """
        Runs one probe.

        Args:
            check: The readiness check descriptor.
            attempt: 1-based attempt number, for logging.

        Returns:
            ProbeResult: ready flag and a short reason.

        Raises:
            ProbeConfigError: If the check itself is malformed.
        """
        if isinstance(check, NoCheck):
            result = ProbeResult(True, "no readiness check")
        elif isinstance(check, TcpCheck):
            result = self._probe_tcp(check)
        elif isinstance(check, HttpCheck):
            result = self._probe_http(check)
        elif isinstance(check, CommandCheck):
            result = self._probe_command(check)
        else:
            raise ProbeConfigError(f"Unsupported readiness check: {check!r}")

        logger.debug(
            "Probe %s attempt %d: %s (%s)",
            check.kind, attempt, "ready" if result.ready else "not ready", result.detail,
        )
        return result

    def _probe_tcp(self, check: TcpCheck) -> ProbeResult:
        target = f"{check.host}:{check.port}"
        try:
            self._dial(check.host, check.port, self.timeout)
        except OSError as e:
            return ProbeResult(False, f"connect to {target} failed: {e}")
        return ProbeResult(True, f"connected to {target}")

    def _probe_http(self, check: HttpCheck) -> ProbeResult:
        try:
            parsed = urlparse(check.url)
            parsed.port  # raises ValueError on a bad port
        except ValueError as e:
            raise ProbeConfigError(f"Invalid readiness URL {check.url!r}: {e}") from e
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise ProbeConfigError(f"Invalid readiness URL: {check.url!r}")

        try:
            status = self._http_get(check.url, self.timeout)
        except (ValueError, InvalidURL) as e:
            raise ProbeConfigError(f"Invalid readiness URL {check.url!r}: {e}") from e
        except (OSError, HTTPException) as e:
            return ProbeResult(False, f"GET {check.url} failed: {e}")

        if 200 <= status <= 399:
            return ProbeResult(True, f"GET {check.url} -> {status}")
        return ProbeResult(False, f"GET {check.url} -> {status}")

    def _probe_command(self, check: CommandCheck) -> ProbeResult:
        command = check.command
        if not command or (isinstance(command, str) and not command.strip()):
            raise ProbeConfigError("Readiness command is empty")

        try:
            exit_code = self._run_command(command, self.timeout)
        except subprocess.TimeoutExpired:
            return ProbeResult(False, f"'{describe(command)}' timed out after {self.timeout}s")
        except OSError as e:
            return ProbeResult(False, f"cannot run '{describe(command)}': {e}")

        if exit_code == 0:
            return ProbeResult(True, f"'{describe(command)}' exited 0")
        return ProbeResult(False, f"'{describe(command)}' exited {exit_code}")
