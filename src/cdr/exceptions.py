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
Error taxonomy for descriptor resolution and service startup.

Every error carries the originating file (layer) and service name where
they are known, and the process exit code the CLI reports for it.
"""
from typing import Dict, List, Optional, Sequence


class ResolverError(Exception):
    """
    Base class for all resolver errors.
    """
    exit_code = 1

    def __init__(self, message: str, origin: Optional[str] = None, service: Optional[str] = None):
        """
        :param message: Human readable description of the problem.
        :param origin: File or layer the problem originates from.
        :param service: Name of the service involved, if any.
        """
        super().__init__(message)
        self.message = message
        self.origin = origin
        self.service = service

    def __str__(self) -> str:
        location = []
        if self.origin:
            location.append(self.origin)
        if self.service:
            location.append(f"service '{self.service}'")
        if location:
            return f"{': '.join(location)}: {self.message}"
        return self.message


class NotFoundError(ResolverError):
    """A descriptor or environment file does not exist."""


class ParseError(ResolverError):
    """A file is malformed or a field has an unusable shape."""


class MergeConflictError(ResolverError):
    """
    Two layers assign structurally incompatible values to the same field.
    """

    def __init__(self, service: Optional[str], field: str, first_origin: str, second_origin: str,
                 detail: str = ""):
        self.field = field
        self.origins = (first_origin, second_origin)
        message = (f"field '{field}' is defined incompatibly in {first_origin} "
                   f"and {second_origin}")
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message, origin=second_origin, service=service)


class MissingVariableError(ResolverError):
    """
    A required ${NAME} marker has no value and no default.
    """

    def __init__(self, variable: str, field: Optional[str] = None, service: Optional[str] = None,
                 origin: Optional[str] = None, hint: Optional[str] = None):
        self.variable = variable
        self.field = field
        self.hint = hint
        message = f"required variable '{variable}' is not set"
        if field:
            message = f"{message} (field '{field}')"
        if hint:
            message = f"{message}: {hint}"
        super().__init__(message, origin=origin, service=service)


class UnknownServiceError(ResolverError):
    """
    A service depends on a service that is not defined in the stack.
    """

    def __init__(self, service: str, dependency: str, origin: Optional[str] = None):
        self.dependency = dependency
        super().__init__(f"depends on undefined service '{dependency}'", origin=origin, service=service)


class CyclicDependencyError(ResolverError):
    """
    The dependency graph contains a cycle. ``cycle`` lists the full path,
    starting and ending with the same service.
    """
    exit_code = 2

    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__(f"circular dependency detected: {' -> '.join(self.cycle)}",
                         service=self.cycle[0] if self.cycle else None)


class HealthCheckTimeoutError(ResolverError):
    """A single health probe did not finish within its timeout."""
    exit_code = 3

    def __init__(self, service: str, timeout: float):
        self.timeout = timeout
        super().__init__(f"health check timed out after {timeout:g}s", service=service)


class StartupTimeoutError(ResolverError):
    """
    One or more services never reached their required state in time.

    ``blocked`` maps each unready service to the dependencies it was still
    waiting on (empty when the service itself failed to become healthy).
    """
    exit_code = 3

    def __init__(self, timeout: Optional[float], blocked: Dict[str, List[str]],
                 states: Optional[Dict[str, str]] = None):
        self.timeout = timeout
        self.blocked = blocked
        self.states = states or {}
        parts = []
        for name in sorted(blocked):
            state = self.states.get(name)
            desc = f"{name} ({state})" if state else name
            if blocked[name]:
                desc = f"{desc} waiting for {', '.join(blocked[name])}"
            parts.append(desc)
        after = f" after {timeout:g}s" if timeout is not None else ""
        super().__init__(f"services did not become ready{after}: {'; '.join(parts)}")

    @property
    def services(self) -> List[str]:
        """All services named by this error, unready ones and their blockers."""
        names = set(self.blocked)
        for deps in self.blocked.values():
            names.update(deps)
        return sorted(names)
