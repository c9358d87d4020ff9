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
Models for the overall deployment configuration.
"""
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .service_definition import Command, Service


def _env_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class BackoffStrategy(str, Enum):
    """
    Spacing between readiness probes.
    """
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class StartFailurePolicy(str, Enum):
    """
    What to do when the start collaborator reports an error.
    """
    FAIL_FAST = "fail-fast"
    PROBE_ONCE = "probe-once"


class Runtime(str, Enum):
    """
    How services are brought up.
    """
    COMMAND = "command"
    PROCESS = "process"
    COMPOSE = "compose"


class OrchestrationPolicy(BaseModel):
    """
    Tunables of the orchestrator that apply to every service.
    """
    backoff: BackoffStrategy = BackoffStrategy.FIXED
    on_start_failure: StartFailurePolicy = StartFailurePolicy.FAIL_FAST
    max_workers: Optional[int] = Field(default=None, ge=1)
    probe_timeout: float = Field(default=2.0, gt=0)


class Variant(BaseModel):
    """
    A named flavour of the deployment, e.g. which application fork to build.
    """
    description: str = ""
    environment: Dict[str, str] = {}

    @field_validator("environment", mode="before")
    @classmethod
    def _stringify_environment(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(k): _env_value(v) for k, v in value.items()}
        return value


class DeploymentContext(BaseModel):
    """
    Immutable configuration handed to the start collaborator.
    Resolved once before a run; the orchestrator never reads it back.
    """
    model_config = ConfigDict(frozen=True)

    variant: Optional[str] = None
    environment: Dict[str, str] = {}


class DeploymentConfig(BaseModel):
    """
    Complete configuration for a layered deployment.
    """
    services: List[Service]
    policy: OrchestrationPolicy = Field(default_factory=OrchestrationPolicy)

    # How services are started
    runtime: Runtime = Runtime.COMMAND
    compose_file: Optional[str] = None
    project_dir: str = "."

    # Environment handed to every service
    environment: Dict[str, str] = {}
    secrets: Dict[str, int] = {}
    env_file: Optional[str] = None

    # Variant selection
    variants: Dict[str, Variant] = {}
    variant: Optional[str] = None

    # Steps run once before the first layer starts
    prepare: List[Command] = []

    @field_validator("services", mode="before")
    @classmethod
    def _services_from_mapping(cls, value: Any) -> Any:
        if isinstance(value, dict):
            services = []
            for name, spec in value.items():
                if spec is None:
                    spec = {}
                if isinstance(spec, dict):
                    spec = {"name": name, **spec}
                services.append(spec)
            return services
        return value

    @field_validator("environment", mode="before")
    @classmethod
    def _stringify_environment(cls, value: Any) -> Any:
        # yaml turns 5432 and true into int/bool
        if isinstance(value, dict):
            return {str(k): _env_value(v) for k, v in value.items()}
        return value
