"""
Matrix addition orchestrator.

Wires the device, buffer, kernel, pipeline, dispatch and readback stages
into the single public operation, and keeps a history of invocations.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

import numpy as np

from pymatadd.backends import get_backend
from pymatadd.backends.base import BackendType, BufferUsage
from pymatadd.compilation.compiler import (
    ELEMENTWISE_ADD_LAYOUT,
    ELEMENTWISE_ADD_SOURCE,
    ENTRY_POINT,
    KernelCompiler,
    KernelConfig,
)
from pymatadd.core.buffers import BufferManager
from pymatadd.core.device import POWER_PREFERENCES, DeviceContext
from pymatadd.core.dispatch import DispatchGrid, DispatchScheduler
from pymatadd.core.pipeline import FLOAT32_BYTES, PipelineBuilder
from pymatadd.core.readback import ReadbackSynchronizer
from pymatadd.exceptions import (
    DeviceUnavailableError,
    DimensionMismatchError,
    InvalidConfigurationError,
)

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from pymatadd.backends.base import AdapterInfo, Backend


logger = logging.getLogger(__name__)

INPUT_USAGE = BufferUsage.STORAGE_READ | BufferUsage.COPY_DST
OUTPUT_USAGE = BufferUsage.STORAGE_WRITE | BufferUsage.COPY_SRC
STAGING_USAGE = BufferUsage.MAP_READ | BufferUsage.COPY_DST


@dataclass
class AdditionConfig:
    """Configuration for matrix addition."""

    power_preference: str = "high-performance"
    backend: BackendType | str = BackendType.WGPU

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.power_preference not in POWER_PREFERENCES:
            raise InvalidConfigurationError(
                "power_preference",
                self.power_preference,
                f"must be one of {POWER_PREFERENCES}",
            )
        if isinstance(self.backend, str):
            try:
                self.backend = BackendType[self.backend.upper()]
            except KeyError:
                raise InvalidConfigurationError(
                    "backend",
                    self.backend,
                    f"must be one of {[t.name.lower() for t in BackendType]}",
                ) from None


@dataclass
class AdditionRecord:
    """Record of one matrix addition."""

    execution_id: UUID = field(default_factory=uuid4)
    rows: int = 0
    cols: int = 0
    grid: DispatchGrid | None = None
    start_time: float = 0.0
    end_time: float = 0.0
    success: bool = False
    error: Exception | None = None

    @property
    def duration_ms(self) -> float:
        """Get execution duration in milliseconds."""
        return (self.end_time - self.start_time) * 1000


def _element_count(rows: int, cols: int) -> int:
    for name, value in (("rows", rows), ("cols", cols)):
        if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value < 1:
            raise InvalidConfigurationError(name, value, "must be a positive integer")
    return int(rows) * int(cols)


def _detached(error: Exception) -> Exception:
    """Copy ``error`` without its traceback, which pins the input arrays."""
    detached = type(error).__new__(type(error), *error.args)
    detached.__dict__.update(error.__dict__)
    return detached


def _as_matrix(name: str, data: Any, total_elements: int) -> NDArray[np.float32]:
    """Flatten host data row-major into a contiguous float32 array."""
    try:
        array = np.asarray(data, dtype=np.float32)
    except ValueError as e:
        raise DimensionMismatchError(name, total_elements) from e
    array = np.ascontiguousarray(array.reshape(-1))
    if array.size != total_elements:
        raise DimensionMismatchError(name, total_elements, array.size)
    return array


class MatrixAddOrchestrator:
    """
    Runs element-wise float32 matrix additions on a compute device.

    Every invocation acquires its own device and releases every buffer
    it allocated before returning, including on error paths. The async
    surface runs the blocking pipeline in a worker thread, one
    invocation at a time.

    Example:
        >>> orchestrator = MatrixAddOrchestrator(AdditionConfig(backend="cpu"))
        >>> orchestrator.add([1.0, 2.0], [3.0, 4.0], rows=1, cols=2)
        array([4., 6.], dtype=float32)

        >>> async with MatrixAddOrchestrator() as orchestrator:
        ...     result = await orchestrator.add_async(a, b, 5000, 5000)
    """

    def __init__(
        self,
        config: AdditionConfig | None = None,
        *,
        backend: Backend | None = None,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            config: Addition configuration.
            backend: Backend instance; overrides ``config.backend``.
        """
        self._config = config or AdditionConfig()
        self._backend = backend if backend is not None else get_backend(self._config.backend)
        self._lock = asyncio.Lock()
        self._history: list[AdditionRecord] = []
        self._adapter_info: AdapterInfo | None = None
        self._active = False

    async def __aenter__(self) -> MatrixAddOrchestrator:
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Async context manager exit."""
        await self.shutdown()

    async def initialize(self) -> None:
        """
        Initialize the orchestrator.

        Raises:
            DeviceUnavailableError: If the backend cannot provide a device.
        """
        if self._active:
            return

        available = await asyncio.to_thread(lambda: self._backend.is_available)
        if not available:
            raise DeviceUnavailableError(
                self._backend.backend_type.name.lower(), "no compute adapter found"
            )
        self._active = True

    async def shutdown(self) -> None:
        """Shutdown the orchestrator, waiting for a running addition."""
        if not self._active:
            return

        async with self._lock:
            self._active = False

    @property
    def is_active(self) -> bool:
        """Check if the orchestrator is active."""
        return self._active

    @property
    def config(self) -> AdditionConfig:
        """Get the configuration."""
        return self._config

    @property
    def backend(self) -> Backend:
        """Get the backend."""
        return self._backend

    @property
    def last_adapter_info(self) -> AdapterInfo | None:
        """Get the adapter metadata of the most recent invocation."""
        return self._adapter_info

    def add(self, a: Any, b: Any, rows: int, cols: int) -> NDArray[np.float32]:
        """
        Add two matrices element-wise.

        Args:
            a: First matrix, ``rows * cols`` values in row-major order.
            b: Second matrix, same size.
            rows: Row count.
            cols: Column count.

        Returns:
            Flat float32 array of ``rows * cols`` sums.

        Raises:
            InvalidConfigurationError: If rows or cols is not positive.
            DimensionMismatchError: If a matrix size differs from
                ``rows * cols``. Raised before any device work.
            DeviceUnavailableError: If no device can be acquired.
            MapFailedError: If the result cannot be read back.
        """
        total_elements = _element_count(rows, cols)
        first = _as_matrix("a", a, total_elements)
        second = _as_matrix("b", b, total_elements)

        record = AdditionRecord(rows=int(rows), cols=int(cols), start_time=time.perf_counter())
        try:
            result = self._run(first, second, total_elements, record)
            record.success = True
        except Exception as e:
            record.error = _detached(e)
            raise
        finally:
            record.end_time = time.perf_counter()
            self._history.append(record)

        logger.info(
            f"Added {rows}x{cols} matrices on {self._backend.backend_type.name} "
            f"in {record.duration_ms:.2f} ms"
        )
        return result

    async def add_async(self, a: Any, b: Any, rows: int, cols: int) -> NDArray[np.float32]:
        """
        Add two matrices without blocking the event loop.

        Invocations are serialised; see ``add`` for arguments and errors.
        """
        async with self._lock:
            return await asyncio.to_thread(self.add, a, b, rows, cols)

    def _run(
        self,
        first: NDArray[np.float32],
        second: NDArray[np.float32],
        total_elements: int,
        record: AdditionRecord,
    ) -> NDArray[np.float32]:
        byte_length = total_elements * FLOAT32_BYTES

        context = DeviceContext(self._backend, power_preference=self._config.power_preference)
        device = context.acquire(byte_length)
        self._adapter_info = context.adapter_info

        with BufferManager(device) as buffers:
            input1 = buffers.allocate(byte_length, INPUT_USAGE, "input1")
            input2 = buffers.allocate(byte_length, INPUT_USAGE, "input2")
            buffers.upload(input1, first, byte_length)
            buffers.upload(input2, second, byte_length)
            output = buffers.allocate(byte_length, OUTPUT_USAGE, "output")
            staging = buffers.allocate(byte_length, STAGING_USAGE, "staging")

            kernel = KernelCompiler(device).compile(
                ELEMENTWISE_ADD_SOURCE, ENTRY_POINT, KernelConfig(total_elements)
            )
            builder = PipelineBuilder(device)
            pipeline = builder.build(kernel, ELEMENTWISE_ADD_LAYOUT)
            bindings = builder.bind(pipeline, [input1, input2, output])

            scheduler = DispatchScheduler(device)
            sequence = scheduler.dispatch(pipeline, bindings, total_elements, kernel.workgroup_size)
            record.grid = scheduler.last_grid
            buffers.copy_device_to_device(sequence, output, staging, byte_length)

            return ReadbackSynchronizer(buffers).read(sequence, staging, byte_length)

    def get_execution_history(self, limit: int | None = None) -> list[AdditionRecord]:
        """
        Get addition history.

        Args:
            limit: Maximum number of most recent records to return.

        Returns:
            List of AdditionRecord records.
        """
        history = self._history
        if limit:
            history = history[-limit:]
        return list(history)

    def clear_execution_history(self) -> None:
        """Clear the execution history."""
        self._history.clear()

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"MatrixAddOrchestrator(backend={self._backend.backend_type.name}, "
            f"active={self._active}, executions={len(self._history)})"
        )


def add_matrices(
    a: Any,
    b: Any,
    rows: int,
    cols: int,
    *,
    config: AdditionConfig | None = None,
    backend: Backend | None = None,
) -> NDArray[np.float32]:
    """
    Add two float32 matrices element-wise on a compute device.

    Args:
        a: First matrix, ``rows * cols`` values in row-major order.
        b: Second matrix, same size.
        rows: Row count.
        cols: Column count.
        config: Addition configuration (WebGPU, high-performance if None).
        backend: Backend instance overriding ``config.backend``.

    Returns:
        Flat float32 array with ``result[i] == a[i] + b[i]``.

    Example:
        >>> add_matrices(np.ones(4), np.full(4, 2.0), 2, 2, config=AdditionConfig(backend="cpu"))
        array([3., 3., 3., 3.], dtype=float32)
    """
    return MatrixAddOrchestrator(config, backend=backend).add(a, b, rows, cols)
