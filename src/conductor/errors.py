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
Exception taxonomy shared by the loader, scheduler and runtime adapters.

Load-time errors (ValidationError, MissingVariableError, CycleError) are raised
before any resource is touched. Run-time errors are contained to one service
and its dependents.
"""
from typing import List, Optional


class ConductorError(Exception):
    """Base class for every error raised by conductor."""


class ValidationError(ConductorError):
    """
    The configuration is malformed or contradictory.

    :param errors: Every problem found, so they can be reported together.
    """
    def __init__(self, errors, source: Optional[str] = None):
        if isinstance(errors, str):
            errors = [errors]
        self.errors: List[str] = list(errors)
        self.source = source
        prefix = f"{source}: " if source else ""
        if len(self.errors) == 1:
            message = prefix + self.errors[0]
        else:
            message = prefix + "invalid configuration:\n" + "\n".join(f"  - {e}" for e in self.errors)
        super().__init__(message)


class MissingVariableError(ValidationError):
    """An interpolated variable is unset and has no default."""
    def __init__(self, variable: str, message: Optional[str] = None, source: Optional[str] = None):
        self.variable = variable
        text = message or f"required variable {variable} is missing a value"
        super().__init__([text], source=source)


class CycleError(ConductorError):
    """The dependency graph contains a cycle."""
    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__(f"Circular dependency detected: {' -> '.join(self.cycle)}")


class HealthTimeoutError(ConductorError):
    """A service exhausted its health probe retries."""
    def __init__(self, service: str, attempts: int, last_output: str = ""):
        self.service = service
        self.attempts = attempts
        self.last_output = last_output
        detail = f": {last_output}" if last_output else ""
        super().__init__(f"Service {service} did not become healthy after {attempts} probes{detail}")


class ContainerRuntimeError(ConductorError):
    """The container runtime rejected or failed an operation."""
    def __init__(self, message: str, service: Optional[str] = None):
        self.service = service
        super().__init__(message)


class ResourceConflictError(ConductorError):
    """A named network or volume exists with incompatible parameters."""
    def __init__(self, resource: str, message: str):
        self.resource = resource
        super().__init__(message)
