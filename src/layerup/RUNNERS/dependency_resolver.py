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
Service graph: dependency validation and layered startup order.
"""
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple

from ..MODELS.service_definition import Service
from ..exceptions import CycleError, DuplicateServiceError, UnknownDependencyError


class ServiceGraph:
    """
    The set of services of a deployment and the "depends on" edges between them.
    Read-only once handed to the orchestrator.
    """
    def __init__(self, services: Optional[Iterable[Service]] = None):
        """
        Initializes the graph.

        :param services: Services to add, in any order.
        :raises DuplicateServiceError: If two services share a name.
        """
        self._services: Dict[str, Service] = {}
        for service in services or []:
            self.add_service(service)

    def add_service(self, service: Service) -> None:
        """
        Adds a service. Dependencies are checked by validate(), not here.

        :param service: The service to add.
        :raises DuplicateServiceError: If the name is already taken.
        """
        if service.name in self._services:
            raise DuplicateServiceError(service.name)
        self._services[service.name] = service

    def get(self, name: str) -> Service:
        return self._services[name]

    def names(self) -> List[str]:
        return sorted(self._services)

    def services(self) -> List[Service]:
        return [self._services[name] for name in self.names()]

    def __len__(self) -> int:
        return len(self._services)

    def __contains__(self, name: object) -> bool:
        return name in self._services

    def validate(self) -> None:
        """
        Checks that every dependency exists and that the graph is acyclic.

        :raises UnknownDependencyError: For the first missing dependency.
        :raises CycleError: With the path of the first cycle found.
        """
        for name in self.names():
            for dep in self._services[name].depends_on:
                if dep not in self._services:
                    raise UnknownDependencyError(name, dep)

        visited: Set[str] = set()
        path: List[str] = []
        on_path: Set[str] = set()

        def visit(name: str) -> None:
            """
            Depth-first walk; on_path holds the services still being visited.
            """
            if name in on_path:
                raise CycleError(path[path.index(name):] + [name])
            if name in visited:
                return
            on_path.add(name)
            path.append(name)
            for dep in sorted(set(self._services[name].depends_on)):
                visit(dep)
            path.pop()
            on_path.remove(name)
            visited.add(name)

        for name in self.names():
            visit(name)

    def layers(self) -> Iterator[Tuple[str, ...]]:
        """
        Yields the startup layers. Every service's dependencies lie in a
        strictly earlier layer; names inside a layer are sorted ascending.

        The graph is validated and snapshotted on the first iteration.

        :raises GraphError: If the graph is invalid.
        """
        self.validate()
        remaining = {name: set(svc.depends_on) for name, svc in self._services.items()}
        placed: Set[str] = set()

        while remaining:
            layer = tuple(sorted(n for n, deps in remaining.items() if deps <= placed))
            yield layer
            placed.update(layer)
            for name in layer:
                del remaining[name]

    def shutdown_order(self) -> List[str]:
        """
        Services in reverse startup order, dependents before their dependencies.
        """
        order: List[str] = []
        for layer in self.layers():
            order.extend(layer)
        return list(reversed(order))
