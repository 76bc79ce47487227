"""
PyMatAdd - element-wise float32 matrix addition on WebGPU compute devices.

Offloads the addition of two large dense matrices to a GPU through
wgpu-py and returns the sum as a NumPy array.

Core Features:
    - Device Negotiation: Adapter and device acquisition with raised limits
    - Buffer Management: Capability-checked allocation, upload and readback
    - Kernel Compilation: WGSL kernel with an override element count
    - Full-Coverage Dispatch: Grids sized to cover every element
    - CPU Fallback: NumPy emulation of the backend for GPU-less hosts

Quick Start:
    >>> import numpy as np
    >>> from pymatadd import add_matrices
    >>>
    >>> a = np.ones((5000, 5000), dtype=np.float32)
    >>> b = np.full((5000, 5000), 2.0, dtype=np.float32)
    >>> result = add_matrices(a, b, 5000, 5000)
"""

from pymatadd.backends import CPUBackend, WgpuBackend, get_backend
from pymatadd.backends.base import BackendType, BufferUsage
from pymatadd.compilation.compiler import ELEMENTWISE_ADD_SOURCE, KernelConfig
from pymatadd.core.device import DeviceContext
from pymatadd.core.orchestrator import (
    AdditionConfig,
    AdditionRecord,
    MatrixAddOrchestrator,
    add_matrices,
)
from pymatadd.exceptions import (
    AdapterRejectedError,
    CapabilityViolationError,
    DeviceRejectedError,
    DeviceUnavailableError,
    DimensionMismatchError,
    LayoutMismatchError,
    MapFailedError,
    PyMatAddError,
)

__version__ = "0.1.0"

__all__ = [
    # Version
    "__version__",
    # Operation
    "add_matrices",
    "MatrixAddOrchestrator",
    "AdditionConfig",
    "AdditionRecord",
    # Building blocks
    "DeviceContext",
    "KernelConfig",
    "ELEMENTWISE_ADD_SOURCE",
    "BufferUsage",
    # Backends
    "BackendType",
    "CPUBackend",
    "WgpuBackend",
    "get_backend",
    # Errors
    "PyMatAddError",
    "DeviceUnavailableError",
    "AdapterRejectedError",
    "DeviceRejectedError",
    "DimensionMismatchError",
    "CapabilityViolationError",
    "LayoutMismatchError",
    "MapFailedError",
]
