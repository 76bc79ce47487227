"""
WebGPU backend for PyMatAdd.

Provides the native implementation using wgpu-py (wgpu-native). All
device calls use the blocking ``*_sync`` variants, so callers never see
the underlying asynchronous adapter, device and mapping requests.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import wgpu

from pymatadd.backends.base import (
    AdapterInfo,
    Backend,
    BackendType,
    BufferUsage,
    DeviceHandle,
    DeviceLimits,
)
from pymatadd.commands import (
    BeginComputePass,
    CopyBufferToBuffer,
    DispatchWorkgroups,
    EndComputePass,
    SetBindGroup,
    SetPipeline,
)
from pymatadd.exceptions import (
    AdapterRejectedError,
    BackendError,
    DeviceRejectedError,
    DeviceUnavailableError,
    KernelCompilationError,
    MapFailedError,
)

if TYPE_CHECKING:
    from pymatadd.backends.base import BindingLayout
    from pymatadd.commands import CommandSequence
    from pymatadd.compilation.compiler import KernelModule
    from pymatadd.core.buffers import DeviceBuffer
    from pymatadd.core.pipeline import ComputePipeline


logger = logging.getLogger(__name__)

_USAGE_MAP = {
    BufferUsage.MAP_READ: wgpu.BufferUsage.MAP_READ,
    BufferUsage.COPY_SRC: wgpu.BufferUsage.COPY_SRC,
    BufferUsage.COPY_DST: wgpu.BufferUsage.COPY_DST,
    BufferUsage.STORAGE_READ: wgpu.BufferUsage.STORAGE,
    BufferUsage.STORAGE_WRITE: wgpu.BufferUsage.STORAGE,
}

_DEFAULT_LIMITS = DeviceLimits()


def _check_wgpu_available(power_preference: str = "high-performance") -> bool:
    """Check if wgpu can hand out an adapter."""
    try:
        return wgpu.gpu.request_adapter_sync(power_preference=power_preference) is not None
    except Exception:
        return False


def to_wgpu_usage(usage: BufferUsage) -> int:
    """Translate buffer capabilities to wgpu usage flags."""
    flags = 0
    for flag, native in _USAGE_MAP.items():
        if flag in usage:
            flags |= native
    return flags


def _limits_from(native_limits: Any) -> DeviceLimits:
    return DeviceLimits(
        max_workgroups_per_dimension=native_limits["max-compute-workgroups-per-dimension"],
        max_workgroup_size_x=native_limits["max-compute-workgroup-size-x"],
        max_invocations_per_workgroup=native_limits["max-compute-invocations-per-workgroup"],
        max_buffer_size=native_limits["max-buffer-size"],
        max_storage_buffer_binding_size=native_limits["max-storage-buffer-binding-size"],
    )


@dataclass(frozen=True)
class _WgpuPipeline:
    pipeline: Any
    bind_group_layout: Any


class WgpuBackend(Backend):
    """
    WebGPU backend implementation using wgpu-py.

    Example:
        >>> backend = WgpuBackend()
        >>> if backend.is_available:
        ...     device = backend.acquire_device("high-performance")
        ...     device.adapter_info.vendor
    """

    def __init__(self) -> None:
        """Initialize the WebGPU backend."""
        self._available: bool | None = None

    @property
    def backend_type(self) -> BackendType:
        """Get the backend type."""
        return BackendType.WGPU

    @property
    def is_available(self) -> bool:
        """Check if a WebGPU adapter can be obtained."""
        if self._available is None:
            self._available = _check_wgpu_available()
        return self._available

    def acquire_device(
        self,
        power_preference: str,
        required_buffer_size: int = 0,
    ) -> DeviceHandle:
        """
        Request an adapter and a device.

        Raised buffer limits are requested only when ``required_buffer_size``
        exceeds the WebGPU defaults.
        """
        try:
            adapter = wgpu.gpu.request_adapter_sync(power_preference=power_preference)
        except OSError as e:
            raise DeviceUnavailableError("wgpu", str(e)) from e
        except (wgpu.GPUError, RuntimeError) as e:
            logger.debug(f"Adapter request failed: {e}")
            raise AdapterRejectedError("wgpu", power_preference) from e
        if adapter is None:
            raise AdapterRejectedError("wgpu", power_preference)

        required_limits = self._required_limits(adapter, required_buffer_size)
        try:
            native = adapter.request_device_sync(
                label="pymatadd-device", required_limits=required_limits
            )
        except (wgpu.GPUError, RuntimeError) as e:
            raise DeviceRejectedError("wgpu", e) from e
        if native is None:
            raise DeviceRejectedError("wgpu", "adapter returned no device")

        info = adapter.info
        adapter_info = AdapterInfo(
            vendor=str(info.get("vendor", "")),
            architecture=str(info.get("architecture", "")),
            device=str(info.get("device", "")),
            description=str(info.get("description", "")),
            backend_type=str(info.get("backend_type", "")),
        )
        return DeviceHandle(
            backend=self,
            native=native,
            adapter_info=adapter_info,
            limits=_limits_from(native.limits),
        )

    def _required_limits(self, adapter: Any, required_buffer_size: int) -> dict[str, int]:
        if required_buffer_size <= _DEFAULT_LIMITS.max_storage_buffer_binding_size:
            return {}

        available = adapter.limits
        for key in ("max-buffer-size", "max-storage-buffer-binding-size"):
            if available[key] < required_buffer_size:
                raise DeviceRejectedError(
                    "wgpu",
                    f"{key}={available[key]} cannot hold a {required_buffer_size}-byte buffer",
                )
        logger.debug(f"Requesting raised buffer limits for {required_buffer_size} bytes")
        return {
            "max-buffer-size": max(required_buffer_size, _DEFAULT_LIMITS.max_buffer_size),
            "max-storage-buffer-binding-size": required_buffer_size,
        }

    def allocate_buffer(
        self,
        device: DeviceHandle,
        size: int,
        usage: BufferUsage,
        label: str,
    ) -> Any:
        """Create a wgpu buffer."""
        try:
            return device.native.create_buffer(size=size, usage=to_wgpu_usage(usage), label=label)
        except wgpu.GPUError as e:
            raise BackendError(f"Failed to allocate buffer '{label}': {e}") from e

    def write_buffer(self, device: DeviceHandle, native_buffer: Any, data: memoryview) -> None:
        """Queue a write of ``data`` at offset 0."""
        device.native.queue.write_buffer(native_buffer, 0, data)

    def compile_kernel(self, device: DeviceHandle, kernel: KernelModule) -> Any:
        """Create a shader module from WGSL source."""
        try:
            return device.native.create_shader_module(
                label=kernel.entry_point, code=kernel.source
            )
        except wgpu.GPUError as e:
            raise KernelCompilationError(kernel.entry_point, e) from e

    def build_pipeline(
        self,
        device: DeviceHandle,
        kernel: KernelModule,
        layout: BindingLayout,
    ) -> _WgpuPipeline:
        """Create the bind group layout, pipeline layout and compute pipeline."""
        native = device.native
        entries = [
            {
                "binding": slot.index,
                "visibility": wgpu.ShaderStage.COMPUTE,
                "buffer": {"type": slot.kind.value},
            }
            for slot in layout
        ]
        try:
            bind_group_layout = native.create_bind_group_layout(entries=entries)
            pipeline_layout = native.create_pipeline_layout(
                bind_group_layouts=[bind_group_layout]
            )
            pipeline = native.create_compute_pipeline(
                layout=pipeline_layout,
                compute={
                    "module": kernel.native,
                    "entry_point": kernel.entry_point,
                    "constants": kernel.constants,
                },
            )
        except wgpu.GPUError as e:
            raise KernelCompilationError(kernel.entry_point, e) from e
        return _WgpuPipeline(pipeline=pipeline, bind_group_layout=bind_group_layout)

    def bind_buffers(
        self,
        device: DeviceHandle,
        pipeline: ComputePipeline,
        buffers: Sequence[DeviceBuffer],
    ) -> Any:
        """Create the bind group for ``buffers`` in slot order."""
        entries = [
            {
                "binding": slot.index,
                "resource": {"buffer": buffer.native, "offset": 0, "size": buffer.size},
            }
            for slot, buffer in zip(pipeline.layout, buffers)
        ]
        try:
            return device.native.create_bind_group(
                layout=pipeline.native.bind_group_layout, entries=entries
            )
        except wgpu.GPUError as e:
            raise BackendError(f"Failed to create bind group: {e}") from e

    def submit(self, device: DeviceHandle, sequence: CommandSequence) -> None:
        """Replay the sequence onto a command encoder and submit it."""
        native = device.native
        try:
            encoder = native.create_command_encoder(label=sequence.label)
            compute_pass = None
            for command in sequence.commands:
                if isinstance(command, BeginComputePass):
                    compute_pass = encoder.begin_compute_pass()
                elif isinstance(command, SetPipeline):
                    compute_pass.set_pipeline(command.pipeline.native.pipeline)
                elif isinstance(command, SetBindGroup):
                    compute_pass.set_bind_group(command.index, command.bindings.native)
                elif isinstance(command, DispatchWorkgroups):
                    compute_pass.dispatch_workgroups(command.x, command.y, command.z)
                elif isinstance(command, EndComputePass):
                    compute_pass.end()
                    compute_pass = None
                elif isinstance(command, CopyBufferToBuffer):
                    encoder.copy_buffer_to_buffer(
                        command.source.native,
                        command.source_offset,
                        command.destination.native,
                        command.destination_offset,
                        command.size,
                    )
            native.queue.submit([encoder.finish()])
        except wgpu.GPUError as e:
            raise BackendError(f"Failed to submit {sequence.label!r}: {e}") from e

    def map_for_read(
        self,
        device: DeviceHandle,
        buffer: DeviceBuffer,
        offset: int,
        size: int,
    ) -> None:
        """Map for reading, blocking until prior submitted work completes."""
        try:
            buffer.native.map_sync(wgpu.MapMode.READ, offset, size)
        except (wgpu.GPUError, RuntimeError) as e:
            raise MapFailedError(buffer.label, e) from e

    def read_mapped(self, buffer: DeviceBuffer, offset: int, size: int) -> memoryview:
        """Copy the mapped range out of the device mapping."""
        return buffer.native.read_mapped(offset, size).toreadonly()

    def unmap(self, buffer: DeviceBuffer) -> None:
        """Release the mapping."""
        buffer.native.unmap()

    def destroy_buffer(self, buffer: DeviceBuffer) -> None:
        """Destroy the wgpu buffer."""
        buffer.native.destroy()

    def __repr__(self) -> str:
        """String representation."""
        return f"WgpuBackend(available={self._available})"
