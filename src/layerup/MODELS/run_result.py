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
Per-service outcome records and the aggregate report of one orchestration run.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple


class ServiceState(str, Enum):
    """Lifecycle state of a service within one run."""

    PENDING = "pending"
    STARTING = "starting"
    PROBING = "probing"
    READY = "ready"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (ServiceState.READY, ServiceState.FAILED)


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class ProbeAttempt:
    """One readiness probe and its outcome."""

    number: int
    timestamp: str
    ready: bool
    detail: str = ""


@dataclass(frozen=True)
class RunResult:
    """Terminal outcome of a single service."""

    service_name: str
    state: ServiceState = ServiceState.PENDING
    started: bool = False
    ready: bool = False
    attempts: int = 0
    elapsed: float = 0.0
    last_error: Optional[Exception] = None
    probe_log: Tuple[ProbeAttempt, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service": self.service_name,
            "state": self.state.value,
            "started": self.started,
            "ready": self.ready,
            "attempts": self.attempts,
            "elapsed": round(self.elapsed, 3),
            "error": str(self.last_error) if self.last_error else None,
            "error_type": type(self.last_error).__name__ if self.last_error else None,
            "probes": [
                {
                    "attempt": p.number,
                    "timestamp": p.timestamp,
                    "ready": p.ready,
                    "detail": p.detail,
                }
                for p in self.probe_log
            ],
        }


@dataclass(frozen=True)
class OrchestrationReport:
    """
    Aggregate outcome of one run. Lists every service of the graph, including
    the ones that never left PENDING because an earlier layer failed.
    """

    results: Mapping[str, RunResult]
    overall_ok: bool
    cancelled: bool = False
    cleaned_up: Tuple[str, ...] = ()
    finished_at: str = field(default_factory=utc_timestamp)

    def __post_init__(self):
        object.__setattr__(self, "results", MappingProxyType(dict(self.results)))

    def failed(self) -> List[RunResult]:
        return [r for r in self.results.values() if r.state == ServiceState.FAILED]

    def pending(self) -> List[RunResult]:
        return [r for r in self.results.values() if r.state == ServiceState.PENDING]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall_ok": self.overall_ok,
            "cancelled": self.cancelled,
            "cleaned_up": list(self.cleaned_up),
            "finished_at": self.finished_at,
            "services": {name: r.to_dict() for name, r in self.results.items()},
        }
