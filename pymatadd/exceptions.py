"""
PyMatAdd exception hierarchy.

This module defines the exception hierarchy for PyMatAdd, providing
specific exception types for each failure category of the addition
pipeline:

- BackendError: Device acquisition and mapping failures
- BufferError: Buffer capability and state violations
- PipelineError: Binding layout mismatches
- CompilationError: Kernel compilation failures
- ValidationError: Input shape and configuration errors

All exceptions inherit from PyMatAddError for easy catching.
"""

from __future__ import annotations


class PyMatAddError(Exception):
    """Base exception for all PyMatAdd errors."""

    pass


class BackendError(PyMatAddError):
    """Base exception for backend-related errors."""

    pass


class DeviceUnavailableError(BackendError):
    """Raised when no compute backend, adapter or device can be obtained."""

    def __init__(self, backend_name: str, reason: str) -> None:
        self.backend_name = backend_name
        self.reason = reason
        super().__init__(f"Backend '{backend_name}' is not available: {reason}")


class AdapterRejectedError(DeviceUnavailableError):
    """Raised when the backend refuses to hand out an adapter."""

    def __init__(self, backend_name: str, power_preference: str) -> None:
        self.power_preference = power_preference
        super().__init__(
            backend_name,
            f"no adapter returned for power_preference={power_preference!r}",
        )


class DeviceRejectedError(DeviceUnavailableError):
    """Raised when the adapter refuses to create a device."""

    def __init__(self, backend_name: str, cause: Exception | str) -> None:
        self.cause = cause
        super().__init__(backend_name, f"device request rejected: {cause}")


class MapFailedError(BackendError):
    """Raised when the device cannot satisfy a mapping request.

    Safe to retry the whole addition from scratch on a fresh device.
    """

    def __init__(self, buffer_label: str, cause: Exception | str) -> None:
        self.buffer_label = buffer_label
        self.cause = cause
        super().__init__(f"Failed to map buffer '{buffer_label}' for reading: {cause}")


class BufferError(PyMatAddError):
    """Base exception for buffer-related errors."""

    pass


class CapabilityViolationError(BufferError):
    """Raised when a buffer is used for an operation its usage flags forbid."""

    def __init__(self, buffer_label: str, operation: str, required: object, actual: object) -> None:
        self.buffer_label = buffer_label
        self.operation = operation
        self.required = required
        self.actual = actual
        super().__init__(
            f"Cannot {operation} buffer '{buffer_label}': requires {required}, has {actual}"
        )


class BufferStateError(BufferError):
    """Raised when a buffer operation is invalid for the buffer's current state."""

    def __init__(self, buffer_label: str, current_state: str, operation: str) -> None:
        self.buffer_label = buffer_label
        self.current_state = current_state
        self.operation = operation
        super().__init__(
            f"Cannot {operation} buffer '{buffer_label}' in state '{current_state}'"
        )


class PipelineError(PyMatAddError):
    """Base exception for pipeline construction errors."""

    pass


class LayoutMismatchError(PipelineError):
    """Raised when bindings do not satisfy the declared binding layout."""

    def __init__(self, slot: int | None, reason: str) -> None:
        self.slot = slot
        self.reason = reason
        where = f"binding {slot}" if slot is not None else "binding layout"
        super().__init__(f"Layout mismatch at {where}: {reason}")


class CompilationError(PyMatAddError):
    """Base exception for compilation-related errors."""

    pass


class KernelCompilationError(CompilationError):
    """Raised when kernel compilation fails."""

    def __init__(self, kernel_name: str, cause: Exception | str) -> None:
        self.kernel_name = kernel_name
        self.cause = cause
        super().__init__(f"Failed to compile kernel '{kernel_name}': {cause}")


class ValidationError(PyMatAddError):
    """Base exception for validation-related errors."""

    pass


class DimensionMismatchError(ValidationError):
    """Raised when a host matrix does not have rows * cols elements."""

    def __init__(self, name: str, expected: int, actual: int | None = None) -> None:
        self.name = name
        self.expected = expected
        self.actual = actual
        if actual is None:
            message = (
                f"Matrix '{name}' is not a rectangular array of numbers, "
                f"expected rows*cols = {expected}"
            )
        else:
            message = f"Matrix '{name}' has {actual} elements, expected rows*cols = {expected}"
        super().__init__(message)


class InvalidConfigurationError(ValidationError):
    """Raised when configuration is invalid."""

    def __init__(self, parameter: str, value: object, reason: str) -> None:
        self.parameter = parameter
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid configuration: {parameter}={value!r} - {reason}")
