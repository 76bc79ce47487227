"""
Backend implementations for PyMatAdd.
"""

from __future__ import annotations

from pymatadd.backends.base import (
    AdapterInfo,
    Backend,
    BackendType,
    BindingKind,
    BindingLayout,
    BindingSlot,
    BufferUsage,
    DeviceHandle,
    DeviceLimits,
)
from pymatadd.backends.cpu import CPUBackend
from pymatadd.backends.webgpu import WgpuBackend
from pymatadd.exceptions import InvalidConfigurationError

__all__ = [
    "AdapterInfo",
    "Backend",
    "BackendType",
    "BindingKind",
    "BindingLayout",
    "BindingSlot",
    "BufferUsage",
    "CPUBackend",
    "DeviceHandle",
    "DeviceLimits",
    "WgpuBackend",
    "get_backend",
]


def get_backend(backend_type: BackendType | str) -> Backend:
    """
    Create a backend by type.

    Args:
        backend_type: BackendType or its name ("cpu", "wgpu").

    Returns:
        A new backend instance.

    Raises:
        InvalidConfigurationError: If the name is unknown.
    """
    if isinstance(backend_type, str):
        try:
            backend_type = BackendType[backend_type.upper()]
        except KeyError:
            raise InvalidConfigurationError(
                "backend", backend_type, f"must be one of {[t.name.lower() for t in BackendType]}"
            ) from None

    if backend_type is BackendType.CPU:
        return CPUBackend()
    return WgpuBackend()
