"""
Backend base classes and interfaces.

Defines the capability interface every compute backend implements
(acquire a device, allocate and write buffers, compile a kernel, build a
pipeline, bind buffers, submit recorded commands, map for read) plus the
plain data types shared between backends and the orchestration layer.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum, IntFlag, auto
from typing import TYPE_CHECKING, Any

from pymatadd.exceptions import InvalidConfigurationError

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from pymatadd.commands import CommandSequence
    from pymatadd.compilation.compiler import KernelModule
    from pymatadd.core.buffers import DeviceBuffer
    from pymatadd.core.pipeline import ComputePipeline


class BackendType(Enum):
    """Type of compute backend."""

    CPU = auto()
    WGPU = auto()


class BufferUsage(IntFlag):
    """
    Capabilities a device buffer is created with.

    Buffers carry exactly the capabilities their role needs: inputs are
    ``STORAGE_READ | COPY_DST``, the output is ``STORAGE_WRITE | COPY_SRC``
    and the staging buffer is ``MAP_READ | COPY_DST``.
    """

    NONE = 0
    MAP_READ = 1
    COPY_SRC = 2
    COPY_DST = 4
    STORAGE_READ = 8
    STORAGE_WRITE = 16

    def describe(self) -> str:
        """Readable ``A|B`` form used in error messages."""
        names = [flag.name for flag in BufferUsage if flag and flag in self]
        return "|".join(names) if names else "NONE"


class BindingKind(Enum):
    """Resource kind of a binding slot, as seen by the compute stage."""

    READ_ONLY_STORAGE = "read-only-storage"
    STORAGE = "storage"

    @property
    def required_usage(self) -> BufferUsage:
        """Buffer capability a buffer bound to this kind must carry."""
        if self is BindingKind.READ_ONLY_STORAGE:
            return BufferUsage.STORAGE_READ
        return BufferUsage.STORAGE_WRITE

    @property
    def is_writable(self) -> bool:
        """Whether the kernel may write through this binding."""
        return self is BindingKind.STORAGE


@dataclass(frozen=True)
class BindingSlot:
    """One compute-visible binding in bind group 0."""

    index: int
    kind: BindingKind


@dataclass(frozen=True)
class BindingLayout:
    """
    Ordered list of binding slots.

    Must match the kernel's declared bindings slot-for-slot and the
    buffers supplied when binding.
    """

    slots: tuple[BindingSlot, ...]

    def __post_init__(self) -> None:
        """Validate slot ordering."""
        indices = [slot.index for slot in self.slots]
        if indices != sorted(set(indices)):
            raise InvalidConfigurationError(
                "slots", indices, "binding indices must be unique and ascending"
            )

    @classmethod
    def of(cls, *kinds: BindingKind) -> BindingLayout:
        """Build a layout with slots numbered 0..n-1."""
        return cls(tuple(BindingSlot(i, kind) for i, kind in enumerate(kinds)))

    def __iter__(self) -> Iterator[BindingSlot]:
        return iter(self.slots)

    def __len__(self) -> int:
        return len(self.slots)


@dataclass(frozen=True)
class AdapterInfo:
    """Descriptive adapter metadata, for diagnostics only."""

    vendor: str = ""
    architecture: str = ""
    device: str = ""
    description: str = ""
    backend_type: str = ""


@dataclass(frozen=True)
class DeviceLimits:
    """Device limits the orchestration layer sizes work against."""

    max_workgroups_per_dimension: int = 65535
    max_workgroup_size_x: int = 256
    max_invocations_per_workgroup: int = 256
    max_buffer_size: int = 256 * 1024 * 1024
    max_storage_buffer_binding_size: int = 128 * 1024 * 1024


@dataclass(frozen=True)
class DeviceHandle:
    """An acquired device together with the backend that produced it."""

    backend: Backend
    native: Any
    adapter_info: AdapterInfo
    limits: DeviceLimits


class Backend(ABC):
    """
    Abstract base class for compute backends.

    The orchestration layer (buffers, pipeline, dispatch, readback) only
    talks to this interface, so an alternate native compute backend can
    be substituted without touching the pipeline logic.
    """

    @property
    @abstractmethod
    def backend_type(self) -> BackendType:
        """Get the backend type."""
        ...

    @property
    @abstractmethod
    def is_available(self) -> bool:
        """Check if this backend can hand out a device."""
        ...

    @abstractmethod
    def acquire_device(
        self,
        power_preference: str,
        required_buffer_size: int = 0,
    ) -> DeviceHandle:
        """
        Request an adapter and a device.

        Blocks until the backend answers.

        Args:
            power_preference: "high-performance" or "low-power".
            required_buffer_size: Largest buffer the caller will allocate.

        Returns:
            Device handle.

        Raises:
            DeviceUnavailableError: If no backend is present.
            AdapterRejectedError: If no adapter is returned.
            DeviceRejectedError: If device creation fails.
        """
        ...

    @abstractmethod
    def allocate_buffer(
        self,
        device: DeviceHandle,
        size: int,
        usage: BufferUsage,
        label: str,
    ) -> Any:
        """
        Allocate a native device buffer.

        Args:
            device: Owning device.
            size: Size in bytes.
            usage: Buffer capabilities.
            label: Debug label.

        Returns:
            Native buffer object.
        """
        ...

    @abstractmethod
    def write_buffer(self, device: DeviceHandle, native_buffer: Any, data: memoryview) -> None:
        """Queue a host-to-device write at offset 0."""
        ...

    @abstractmethod
    def compile_kernel(self, device: DeviceHandle, kernel: KernelModule) -> Any:
        """
        Compile kernel source into a native shader module.

        Raises:
            KernelCompilationError: If the backend rejects the source.
        """
        ...

    @abstractmethod
    def build_pipeline(
        self,
        device: DeviceHandle,
        kernel: KernelModule,
        layout: BindingLayout,
    ) -> Any:
        """Create a native compute pipeline for a compiled kernel and layout."""
        ...

    @abstractmethod
    def bind_buffers(
        self,
        device: DeviceHandle,
        pipeline: ComputePipeline,
        buffers: Sequence[DeviceBuffer],
    ) -> Any:
        """Create the native bind group tying buffers to pipeline slots."""
        ...

    @abstractmethod
    def submit(self, device: DeviceHandle, sequence: CommandSequence) -> None:
        """
        Encode and submit a recorded command sequence.

        Commands execute in recorded order relative to each other.
        """
        ...

    @abstractmethod
    def map_for_read(
        self,
        device: DeviceHandle,
        buffer: DeviceBuffer,
        offset: int,
        size: int,
    ) -> None:
        """
        Map a buffer for host reading, blocking until it is ready.

        Raises:
            MapFailedError: If the mapping cannot be satisfied.
        """
        ...

    @abstractmethod
    def read_mapped(self, buffer: DeviceBuffer, offset: int, size: int) -> memoryview:
        """Return a read-only view of a mapped range."""
        ...

    @abstractmethod
    def unmap(self, buffer: DeviceBuffer) -> None:
        """Release a mapped buffer."""
        ...

    @abstractmethod
    def destroy_buffer(self, buffer: DeviceBuffer) -> None:
        """Destroy a native buffer."""
        ...
