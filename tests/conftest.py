"""
Pytest configuration and shared fixtures.
"""

from __future__ import annotations

from collections.abc import Callable, Generator
from typing import Any

import numpy as np
import pytest

from pymatadd.backends.base import BackendType, DeviceHandle
from pymatadd.backends.cpu import CPUBackend
from pymatadd.backends.webgpu import WgpuBackend
from pymatadd.compilation.compiler import (
    ELEMENTWISE_ADD_LAYOUT,
    ELEMENTWISE_ADD_SOURCE,
    KernelCompiler,
    KernelConfig,
    KernelModule,
)
from pymatadd.core.buffers import BufferManager, DeviceBuffer
from pymatadd.core.orchestrator import INPUT_USAGE, OUTPUT_USAGE, STAGING_USAGE
from pymatadd.core.pipeline import BoundBuffers, ComputePipeline, PipelineBuilder

# Configure pytest-asyncio
pytest_plugins = ["pytest_asyncio"]


@pytest.fixture
def cpu_backend() -> CPUBackend:
    """Provide a fresh CPU backend."""
    return CPUBackend()


@pytest.fixture
def device(cpu_backend: CPUBackend) -> DeviceHandle:
    """Provide an emulated device."""
    return cpu_backend.acquire_device("high-performance")


@pytest.fixture
def buffer_manager(device: DeviceHandle) -> Generator[BufferManager, None, None]:
    """Provide a buffer manager that releases its buffers afterwards."""
    with BufferManager(device) as buffers:
        yield buffers


def _compile_add_kernel(device: DeviceHandle, total_elements: int) -> KernelModule:
    return KernelCompiler(device).compile(
        ELEMENTWISE_ADD_SOURCE, "main", KernelConfig(total_elements)
    )


def _bound_add_pipeline(
    buffers: BufferManager,
    total_elements: int,
    a: Any = None,
    b: Any = None,
) -> tuple[ComputePipeline, BoundBuffers, dict[str, DeviceBuffer]]:
    """Allocate, upload and bind the add pipeline's buffers."""
    byte_length = total_elements * 4
    named = {
        "input1": buffers.allocate(byte_length, INPUT_USAGE, "input1"),
        "input2": buffers.allocate(byte_length, INPUT_USAGE, "input2"),
        "output": buffers.allocate(byte_length, OUTPUT_USAGE, "output"),
        "staging": buffers.allocate(byte_length, STAGING_USAGE, "staging"),
    }
    if a is not None:
        buffers.upload(named["input1"], np.asarray(a, dtype=np.float32))
    if b is not None:
        buffers.upload(named["input2"], np.asarray(b, dtype=np.float32))

    kernel = _compile_add_kernel(buffers.device, total_elements)
    builder = PipelineBuilder(buffers.device)
    pipeline = builder.build(kernel, ELEMENTWISE_ADD_LAYOUT)
    bindings = builder.bind(pipeline, [named["input1"], named["input2"], named["output"]])
    return pipeline, bindings, named


@pytest.fixture
def add_kernel() -> Callable[..., KernelModule]:
    """Provide a factory compiling the add kernel for a device and element count."""
    return _compile_add_kernel


@pytest.fixture
def add_pipeline() -> Callable[..., tuple[ComputePipeline, BoundBuffers, dict[str, DeviceBuffer]]]:
    """Provide a factory allocating, uploading and binding the add pipeline."""
    return _bound_add_pipeline


def _wgpu_available() -> bool:
    try:
        return WgpuBackend().is_available
    except Exception:
        return False


@pytest.fixture(params=[BackendType.CPU, pytest.param(BackendType.WGPU, marks=pytest.mark.gpu)])
def any_backend(request: pytest.FixtureRequest) -> Any:
    """Provide each backend in turn; WebGPU only where an adapter exists."""
    if request.param is BackendType.CPU:
        return CPUBackend()
    return WgpuBackend()


# Markers for GPU tests
def pytest_configure(config: pytest.Config) -> None:
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "gpu: mark test as requiring a WebGPU adapter"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


def pytest_collection_modifyitems(
    config: pytest.Config,
    items: list[pytest.Item],
) -> None:
    """Skip GPU tests if no WebGPU adapter is available."""
    if not any("gpu" in item.keywords for item in items):
        return

    if not _wgpu_available():
        skip_gpu = pytest.mark.skip(reason="WebGPU adapter not available")
        for item in items:
            if "gpu" in item.keywords:
                item.add_marker(skip_gpu)
