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
Models for defining services and their readiness checks.
"""
import math
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

Command = Union[str, List[str]]


class TcpCheck(BaseModel):
    """
    Ready once a TCP connection to host:port succeeds.
    """
    model_config = ConfigDict(frozen=True)

    kind: Literal["tcp"] = "tcp"
    host: str = "127.0.0.1"
    port: int = Field(ge=1, le=65535)


class HttpCheck(BaseModel):
    """
    Ready once a GET on the url answers with a 2xx or 3xx status.
    """
    model_config = ConfigDict(frozen=True)

    kind: Literal["http"] = "http"
    url: str


class CommandCheck(BaseModel):
    """
    Ready once the command exits with code 0.
    A string runs through the shell, a list runs as-is.
    """
    model_config = ConfigDict(frozen=True)

    kind: Literal["command"] = "command"
    command: Command


class NoCheck(BaseModel):
    """
    No readiness signal; the service counts as ready on its first probe.
    """
    model_config = ConfigDict(frozen=True)

    kind: Literal["none"] = "none"


ReadinessCheck = Annotated[
    Union[TcpCheck, HttpCheck, CommandCheck, NoCheck],
    Field(discriminator="kind"),
]


class Service(BaseModel):
    """
    A deployable unit: how to start it, what it waits for, and how long.
    """
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    depends_on: List[str] = []

    # Lifecycle
    start: Optional[Command] = None
    cleanup: Optional[Command] = None

    # Readiness
    readiness: ReadinessCheck = Field(default_factory=NoCheck)
    max_wait_seconds: float = Field(default=60.0, ge=0)
    retry_interval_seconds: float = Field(default=1.0, gt=0)

    @field_validator("readiness", mode="before")
    @classmethod
    def _flatten_params(cls, value: Any) -> Any:
        # {kind: tcp, params: {host, port}} is accepted as well as the flat form
        if value is None:
            return {"kind": "none"}
        if isinstance(value, dict) and "params" in value:
            params = value.get("params") or {}
            if not isinstance(params, dict):
                return value
            flat = {k: v for k, v in value.items() if k != "params"}
            flat.update(params)
            return flat
        return value

    @field_validator("depends_on", mode="before")
    @classmethod
    def _coerce_depends_on(cls, value: Any) -> Any:
        # compose style: depends_on: {db: {condition: ...}}
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        if isinstance(value, dict):
            return list(value.keys())
        return value

    @property
    def max_attempts(self) -> int:
        """
        Number of probe attempts that fit in max_wait_seconds.

        :return: At least 1.
        """
        ratio = self.max_wait_seconds / self.retry_interval_seconds
        # tolerate float noise such as 0.3 / 0.1 == 2.9999999999999996
        return max(1, math.floor(ratio + 1e-9))

    @property
    def has_cleanup(self) -> bool:
        return self.cleanup is not None
