"""Error kinds.

Device and build failures are returned as values so the caller decides how
to report them. Configuration, transfer and dispatch failures are raised;
none of them is retried.
"""

from dataclasses import dataclass, field
from typing import Dict


@dataclass
class DeviceError:
    """No matching platform/device, or the adapter refused a device."""

    message: str
    platform_index: int = 0
    device_index: int = 0

    def __str__(self) -> str:
        return self.message


@dataclass
class BuildDiagnostic:
    """
    Kernel source failed to build.

    Attributes:
        status: Build status ("error", "unresolved-placeholder")
        options: Options the build was attempted with
        log: Compiler output, verbatim
    """

    status: str
    options: Dict[str, str] = field(default_factory=dict)
    log: str = ""

    def __str__(self) -> str:
        return (
            f"Build Status: {self.status}\n"
            f"Build Options: {self.options}\n"
            f"Build Log:\n{self.log}"
        )


class ConfigurationError(ValueError):
    """Invalid geometry, unbound or mismatched argument, capacity mismatch."""


class TransferError(RuntimeError):
    """Device failure during upload, fill or download."""

    def __init__(self, operation: str, cause: Exception):
        super().__init__(f"{operation} failed: {cause}")
        self.operation = operation
        self.cause = cause


class DispatchError(RuntimeError):
    """Device failure while specializing, binding or running a kernel."""

    def __init__(self, kernel_name: str, operation: str, cause: Exception):
        super().__init__(f"{operation} of kernel '{kernel_name}' failed: {cause}")
        self.kernel_name = kernel_name
        self.operation = operation
        self.cause = cause
