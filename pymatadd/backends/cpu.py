"""
CPU backend for PyMatAdd.

Provides a host-side emulation of the backend contract. Useful for
testing and development without a GPU: dispatches run lane by lane in
the grid's linear order (vectorised per chunk with NumPy), read-only
bindings are exposed as read-only arrays and any out-of-bounds storage
access fails the submission.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np

from pymatadd.backends.base import (
    AdapterInfo,
    Backend,
    BackendType,
    DeviceHandle,
    DeviceLimits,
)
from pymatadd.commands import CopyBufferToBuffer, DispatchWorkgroups, SetBindGroup, SetPipeline
from pymatadd.exceptions import (
    BackendError,
    DeviceRejectedError,
    KernelCompilationError,
    MapFailedError,
)

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from pymatadd.backends.base import BindingLayout, BufferUsage
    from pymatadd.commands import CommandSequence
    from pymatadd.compilation.compiler import KernelModule
    from pymatadd.core.buffers import DeviceBuffer
    from pymatadd.core.pipeline import BoundBuffers, ComputePipeline


logger = logging.getLogger(__name__)

LaneProgram = Callable[
    ["NDArray[np.int64]", "dict[int, NDArray[np.float32]]", "dict[str, float]"],
    None,
]


def elementwise_add_program(
    index: NDArray[np.int64],
    bindings: dict[int, NDArray[np.float32]],
    constants: dict[str, float],
) -> None:
    """
    Host counterpart of the WGSL element-wise add entry point.

    Args:
        index: Linear global indices of the lanes in this chunk.
        bindings: Slot index to float32 view of the bound buffer.
        constants: Pipeline-overridable constants.
    """
    count = int(constants["element_count"])
    active = index[index < count]
    bindings[2][active] = bindings[0][active] + bindings[1][active]


@dataclass
class _CPUDevice:
    lost_reason: str | None = None


@dataclass
class _CPUBuffer:
    label: str
    data: bytearray
    mapped: bool = False
    destroyed: bool = False


@dataclass(frozen=True)
class _CPUPipeline:
    entry_point: str
    program: LaneProgram
    constants: dict[str, float]
    layout: BindingLayout
    workgroup_size: int


class CPUBackend(Backend):
    """
    CPU backend implementation.

    Emulates the device with NumPy. Lane programs are looked up by the
    kernel's entry point; the element-wise add program is registered for
    ``main``.

    Example:
        >>> backend = CPUBackend()
        >>> device = backend.acquire_device("high-performance")
        >>> backend.register_lane_program("double", my_program)
    """

    lane_chunk = 1 << 20

    def __init__(self, limits: DeviceLimits | None = None) -> None:
        """
        Initialize the CPU backend.

        Args:
            limits: Device limits to emulate (WebGPU defaults if None).
        """
        self._limits = limits or DeviceLimits()
        self._programs: dict[str, LaneProgram] = {"main": elementwise_add_program}
        self._submission_count = 0

    @property
    def backend_type(self) -> BackendType:
        """Get the backend type."""
        return BackendType.CPU

    @property
    def is_available(self) -> bool:
        """Check if this backend is available."""
        return True  # CPU is always available

    @property
    def submission_count(self) -> int:
        """Get the number of sequences executed."""
        return self._submission_count

    def register_lane_program(self, entry_point: str, program: LaneProgram) -> None:
        """
        Register the host implementation of a kernel entry point.

        Args:
            entry_point: WGSL entry point name.
            program: Callable run once per chunk of lanes.
        """
        self._programs[entry_point] = program

    def lose_device(self, device: DeviceHandle, reason: str = "device lost") -> None:
        """Mark a device lost; later submissions are dropped and maps fail."""
        device.native.lost_reason = reason
        logger.warning(f"CPU device lost: {reason}")

    def acquire_device(
        self,
        power_preference: str,
        required_buffer_size: int = 0,
    ) -> DeviceHandle:
        """Create an emulated device."""
        if required_buffer_size > self._limits.max_buffer_size:
            raise DeviceRejectedError(
                "cpu",
                f"buffer of {required_buffer_size} bytes exceeds "
                f"max_buffer_size={self._limits.max_buffer_size}",
            )
        info = AdapterInfo(
            vendor="pymatadd",
            architecture="cpu",
            device="CPU emulation",
            description=f"NumPy {np.__version__} lane emulator",
            backend_type="CPU",
        )
        return DeviceHandle(backend=self, native=_CPUDevice(), adapter_info=info, limits=self._limits)

    def allocate_buffer(
        self,
        device: DeviceHandle,
        size: int,
        usage: BufferUsage,
        label: str,
    ) -> _CPUBuffer:
        """Allocate a zero-filled host byte array."""
        return _CPUBuffer(label=label, data=bytearray(size))

    def write_buffer(self, device: DeviceHandle, native_buffer: Any, data: memoryview) -> None:
        """Copy bytes into the buffer at offset 0."""
        native_buffer.data[: data.nbytes] = data

    def compile_kernel(self, device: DeviceHandle, kernel: KernelModule) -> LaneProgram:
        """Resolve the lane program registered for the kernel's entry point."""
        program = self._programs.get(kernel.entry_point)
        if program is None:
            raise KernelCompilationError(
                kernel.entry_point,
                f"no lane program registered; available: {sorted(self._programs)}",
            )
        return program

    def build_pipeline(
        self,
        device: DeviceHandle,
        kernel: KernelModule,
        layout: BindingLayout,
    ) -> _CPUPipeline:
        """Capture the program, constants and layout."""
        return _CPUPipeline(
            entry_point=kernel.entry_point,
            program=kernel.native,
            constants=dict(kernel.constants),
            layout=layout,
            workgroup_size=kernel.workgroup_size,
        )

    def bind_buffers(
        self,
        device: DeviceHandle,
        pipeline: ComputePipeline,
        buffers: Sequence[DeviceBuffer],
    ) -> tuple[_CPUBuffer, ...]:
        """Bind native buffers in slot order."""
        return tuple(buffer.native for buffer in buffers)

    def submit(self, device: DeviceHandle, sequence: CommandSequence) -> None:
        """Execute recorded commands in order."""
        if device.native.lost_reason is not None:
            logger.warning(
                f"Dropping submission of {sequence.label!r}: {device.native.lost_reason}"
            )
            return

        pipeline: _CPUPipeline | None = None
        bindings: BoundBuffers | None = None
        for command in sequence.commands:
            if isinstance(command, SetPipeline):
                pipeline = command.pipeline.native
            elif isinstance(command, SetBindGroup):
                bindings = command.bindings
            elif isinstance(command, DispatchWorkgroups):
                if pipeline is None or bindings is None:
                    raise BackendError("dispatch recorded without pipeline or bind group")
                self._run_dispatch(pipeline, bindings, command)
            elif isinstance(command, CopyBufferToBuffer):
                self._run_copy(command)
        self._submission_count += 1

    def map_for_read(
        self,
        device: DeviceHandle,
        buffer: DeviceBuffer,
        offset: int,
        size: int,
    ) -> None:
        """Map immediately; submissions complete synchronously."""
        if device.native.lost_reason is not None:
            raise MapFailedError(buffer.label, device.native.lost_reason)
        if buffer.native.destroyed:
            raise MapFailedError(buffer.label, "buffer destroyed")
        buffer.native.mapped = True

    def read_mapped(self, buffer: DeviceBuffer, offset: int, size: int) -> memoryview:
        """Return a read-only view of the mapped bytes."""
        return memoryview(buffer.native.data)[offset : offset + size].toreadonly()

    def unmap(self, buffer: DeviceBuffer) -> None:
        """Release the mapping."""
        buffer.native.mapped = False

    def destroy_buffer(self, buffer: DeviceBuffer) -> None:
        """Drop the buffer's storage."""
        buffer.native.mapped = False
        buffer.native.destroyed = True
        buffer.native.data = bytearray()

    def _run_dispatch(
        self,
        pipeline: _CPUPipeline,
        bindings: BoundBuffers,
        command: DispatchWorkgroups,
    ) -> None:
        views: dict[int, NDArray[np.float32]] = {}
        for slot, buffer in zip(pipeline.layout, bindings.buffers):
            native = buffer.native
            if native.mapped or native.destroyed:
                raise BackendError(f"buffer '{native.label}' is not usable by a dispatch")
            view = np.frombuffer(native.data, dtype=np.float32, count=len(native.data) // 4)
            if not slot.kind.is_writable:
                view.flags.writeable = False
            views[slot.index] = view

        total_lanes = command.x * command.y * command.z * pipeline.workgroup_size
        for start in range(0, total_lanes, self.lane_chunk):
            index = np.arange(start, min(start + self.lane_chunk, total_lanes), dtype=np.int64)
            try:
                pipeline.program(index, views, pipeline.constants)
            except IndexError as e:
                raise BackendError(
                    f"out-of-bounds storage access in '{pipeline.entry_point}': {e}"
                ) from e
            except ValueError as e:
                raise BackendError(
                    f"invalid storage access in '{pipeline.entry_point}': {e}"
                ) from e

        logger.debug(
            f"Executed '{pipeline.entry_point}' over {total_lanes} lanes "
            f"({command.x}, {command.y}, {command.z})"
        )

    def _run_copy(self, command: CopyBufferToBuffer) -> None:
        source, destination = command.source.native, command.destination.native
        for native in (source, destination):
            if native.mapped or native.destroyed:
                raise BackendError(f"buffer '{native.label}' is not usable by a copy")
        src_end = command.source_offset + command.size
        dst_end = command.destination_offset + command.size
        if src_end > len(source.data) or dst_end > len(destination.data):
            raise BackendError(
                f"copy of {command.size} bytes from '{source.label}' to "
                f"'{destination.label}' is out of range"
            )
        destination.data[command.destination_offset : dst_end] = source.data[
            command.source_offset : src_end
        ]

    def __repr__(self) -> str:
        """String representation."""
        return f"CPUBackend(available=True, programs={sorted(self._programs)})"
