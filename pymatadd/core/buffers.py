"""
Device buffer management.

Owns allocation, host-to-device upload, recorded device-to-device
copies and the map/read/unmap protocol for host-mappable buffers.
Every operation checks the buffer's capabilities and state before the
backend is touched.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING, Any

import numpy as np

from pymatadd.backends.base import BufferUsage
from pymatadd.exceptions import (
    BufferStateError,
    CapabilityViolationError,
    InvalidConfigurationError,
)

if TYPE_CHECKING:
    from numpy.typing import DTypeLike, NDArray

    from pymatadd.backends.base import DeviceHandle
    from pymatadd.commands import CommandSequence


logger = logging.getLogger(__name__)


class BufferState(Enum):
    """Host-visibility state of a device buffer."""

    UNMAPPED = auto()
    MAPPED = auto()
    DESTROYED = auto()


@dataclass(eq=False)
class DeviceBuffer:
    """
    A device-owned memory region with a fixed size and capability set.

    ``pending_sequence`` is the command sequence holding the most recent
    recorded write to this buffer, until a completed mapping proves the
    write has landed.
    """

    label: str
    size: int
    usage: BufferUsage
    native: Any
    state: BufferState = BufferState.UNMAPPED
    pending_sequence: CommandSequence | None = None

    def has_usage(self, usage: BufferUsage) -> bool:
        """Check if the buffer carries every flag in ``usage``."""
        return (self.usage & usage) == usage

    @property
    def is_mapped(self) -> bool:
        """Check if the buffer is currently mapped."""
        return self.state is BufferState.MAPPED

    @property
    def has_unsubmitted_write(self) -> bool:
        """Check if a recorded write has not been submitted yet."""
        return self.pending_sequence is not None and not self.pending_sequence.is_submitted

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"DeviceBuffer(label={self.label!r}, size={self.size}, "
            f"usage={self.usage.describe()}, state={self.state.name})"
        )


class MappedView:
    """
    Read-only view of a mapped buffer range.

    The view dies when its buffer is unmapped; any later access raises
    BufferStateError.
    """

    def __init__(self, buffer: DeviceBuffer, offset: int, size: int, data: memoryview) -> None:
        self._buffer = buffer
        self._offset = offset
        self._size = size
        self._data: memoryview | None = data

    @property
    def buffer(self) -> DeviceBuffer:
        """Get the mapped buffer."""
        return self._buffer

    @property
    def offset(self) -> int:
        """Get the mapped range offset in bytes."""
        return self._offset

    @property
    def size(self) -> int:
        """Get the mapped range size in bytes."""
        return self._size

    @property
    def is_valid(self) -> bool:
        """Check if the view can still be read."""
        return self._data is not None

    def tobytes(self) -> bytes:
        """Copy the mapped range into a new bytes object."""
        return bytes(self._checked())

    def to_array(self, dtype: DTypeLike = np.float32) -> NDArray[Any]:
        """
        Copy the mapped range into a newly owned host array.

        Args:
            dtype: Element type of the range.

        Returns:
            Flat array that outlives the mapping.
        """
        return np.frombuffer(self._checked(), dtype=dtype).copy()

    def _checked(self) -> memoryview:
        if self._data is None:
            raise BufferStateError(self._buffer.label, self._buffer.state.name, "read a view of")
        return self._data

    def _invalidate(self) -> None:
        if self._data is not None:
            self._data.release()
        self._data = None

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"MappedView(buffer={self._buffer.label!r}, offset={self._offset}, "
            f"size={self._size}, valid={self.is_valid})"
        )


class BufferManager:
    """
    Allocates device buffers and moves bytes across the host/device boundary.

    Usable as a context manager; on exit every buffer it allocated is
    unmapped (if needed) and destroyed, including on error paths.

    Example:
        >>> with BufferManager(device) as buffers:
        ...     staging = buffers.allocate(16, BufferUsage.MAP_READ | BufferUsage.COPY_DST)
        ...     with buffers.mapped(staging) as view:
        ...         data = view.to_array()
    """

    def __init__(self, device: DeviceHandle) -> None:
        """
        Initialize the buffer manager.

        Args:
            device: Device that owns the buffers.
        """
        self._device = device
        self._buffers: list[DeviceBuffer] = []
        self._views: dict[int, MappedView] = {}

    def __enter__(self) -> BufferManager:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.release_all()

    @property
    def device(self) -> DeviceHandle:
        """Get the owning device."""
        return self._device

    @property
    def buffers(self) -> list[DeviceBuffer]:
        """Get the live buffers."""
        return [b for b in self._buffers if b.state is not BufferState.DESTROYED]

    def allocate(self, byte_length: int, usage: BufferUsage, label: str = "") -> DeviceBuffer:
        """
        Allocate a device buffer.

        Args:
            byte_length: Size in bytes.
            usage: Minimal capability set for the buffer's role.
            label: Debug label.

        Returns:
            The new buffer.

        Raises:
            InvalidConfigurationError: If the size is not positive or
                exceeds the device's maximum buffer size, or no
                capability is requested.
        """
        max_size = self._device.limits.max_buffer_size
        if not 0 < byte_length <= max_size:
            raise InvalidConfigurationError(
                "byte_length", byte_length, f"must be in (0, {max_size}]"
            )
        if usage == BufferUsage.NONE:
            raise InvalidConfigurationError("usage", usage, "at least one capability is required")

        label = label or f"buffer-{len(self._buffers)}"
        native = self._device.backend.allocate_buffer(self._device, byte_length, usage, label)
        buffer = DeviceBuffer(label=label, size=byte_length, usage=usage, native=native)
        self._buffers.append(buffer)
        logger.debug(f"Allocated {buffer!r}")
        return buffer

    def upload(
        self,
        buffer: DeviceBuffer,
        host_data: Any,
        byte_length: int | None = None,
    ) -> None:
        """
        Copy host memory into a device buffer at offset 0.

        Args:
            buffer: Destination; must carry COPY_DST.
            host_data: Any C-contiguous buffer-protocol object.
            byte_length: Number of bytes to copy (defaults to all of it).

        Raises:
            CapabilityViolationError: If the buffer lacks COPY_DST.
            BufferStateError: If the buffer is mapped or destroyed.
        """
        self._require(buffer, BufferUsage.COPY_DST, "upload to")
        self._require_unmapped(buffer, "upload to")

        data = memoryview(host_data).cast("B")
        length = data.nbytes if byte_length is None else byte_length
        if not 0 < length <= min(data.nbytes, buffer.size):
            raise InvalidConfigurationError(
                "byte_length",
                length,
                f"must be in (0, min(host bytes={data.nbytes}, buffer size={buffer.size})]",
            )

        self._device.backend.write_buffer(self._device, buffer.native, data[:length])
        logger.debug(f"Uploaded {length} bytes to '{buffer.label}'")

    def copy_device_to_device(
        self,
        sequence: CommandSequence,
        source: DeviceBuffer,
        destination: DeviceBuffer,
        byte_length: int,
    ) -> None:
        """
        Record a buffer-to-buffer copy into a command sequence.

        Args:
            sequence: Sequence the copy is recorded into.
            source: Buffer carrying COPY_SRC.
            destination: Buffer carrying COPY_DST.
            byte_length: Bytes to copy from offset 0.

        Raises:
            CapabilityViolationError: If either end lacks its copy flag.
            BufferStateError: If either end is mapped or destroyed.
        """
        self._require(source, BufferUsage.COPY_SRC, "copy from")
        self._require(destination, BufferUsage.COPY_DST, "copy to")
        self._require_unmapped(source, "copy from")
        self._require_unmapped(destination, "copy to")
        if not 0 < byte_length <= min(source.size, destination.size):
            raise InvalidConfigurationError(
                "byte_length",
                byte_length,
                f"must be in (0, {min(source.size, destination.size)}]",
            )

        sequence.copy_buffer_to_buffer(source, 0, destination, 0, byte_length)
        destination.pending_sequence = sequence

    def map_for_read(
        self,
        buffer: DeviceBuffer,
        offset: int = 0,
        byte_length: int | None = None,
    ) -> MappedView:
        """
        Map a host-mappable buffer, blocking until the device is ready.

        Args:
            buffer: Buffer carrying MAP_READ.
            offset: Start of the range in bytes.
            byte_length: Length of the range (defaults to the rest).

        Returns:
            Read-only view valid until ``unmap``.

        Raises:
            CapabilityViolationError: If the buffer lacks MAP_READ.
            BufferStateError: If already mapped, destroyed, or a write to
                it is recorded in a sequence not yet submitted.
            MapFailedError: If the device cannot satisfy the request.
        """
        self._require(buffer, BufferUsage.MAP_READ, "map")
        self._require_unmapped(buffer, "map")
        if buffer.has_unsubmitted_write:
            raise BufferStateError(buffer.label, "PENDING_WRITE", "map")

        length = buffer.size - offset if byte_length is None else byte_length
        if offset < 0 or length <= 0 or offset + length > buffer.size:
            raise InvalidConfigurationError(
                "range", (offset, length), f"must lie within buffer of {buffer.size} bytes"
            )

        self._device.backend.map_for_read(self._device, buffer, offset, length)
        buffer.state = BufferState.MAPPED
        buffer.pending_sequence = None
        logger.debug(f"Mapped '{buffer.label}' [{offset}, {offset + length})")

        data = self._device.backend.read_mapped(buffer, offset, length)
        view = MappedView(buffer, offset, length, data)
        self._views[id(buffer)] = view
        return view

    def unmap(self, buffer: DeviceBuffer) -> None:
        """
        Release a mapped buffer and invalidate its view.

        Raises:
            BufferStateError: If the buffer is not mapped.
        """
        if not buffer.is_mapped:
            raise BufferStateError(buffer.label, buffer.state.name, "unmap")

        view = self._views.pop(id(buffer), None)
        if view is not None:
            view._invalidate()
        self._device.backend.unmap(buffer)
        buffer.state = BufferState.UNMAPPED
        logger.debug(f"Unmapped '{buffer.label}'")

    @contextmanager
    def mapped(
        self,
        buffer: DeviceBuffer,
        offset: int = 0,
        byte_length: int | None = None,
    ) -> Iterator[MappedView]:
        """
        Map a buffer for the duration of a ``with`` block.

        The buffer is unmapped on exit, including when the block raises.
        """
        view = self.map_for_read(buffer, offset, byte_length)
        try:
            yield view
        finally:
            self.unmap(buffer)

    def destroy(self, buffer: DeviceBuffer) -> None:
        """Unmap (if needed) and destroy a buffer."""
        if buffer.state is BufferState.DESTROYED:
            return
        if buffer.is_mapped:
            self.unmap(buffer)
        self._device.backend.destroy_buffer(buffer)
        buffer.state = BufferState.DESTROYED
        logger.debug(f"Destroyed '{buffer.label}'")

    def release_all(self) -> None:
        """
        Destroy every buffer this manager allocated.

        A failing buffer does not stop the others from being destroyed;
        the first failure is re-raised once all have been attempted.
        """
        first_error: Exception | None = None
        for buffer in self._buffers:
            try:
                self.destroy(buffer)
            except Exception as e:
                logger.debug(f"Failed to destroy '{buffer.label}': {e}")
                if first_error is None:
                    first_error = e
        self._buffers.clear()
        if first_error is not None:
            raise first_error

    def _require(self, buffer: DeviceBuffer, usage: BufferUsage, operation: str) -> None:
        if not buffer.has_usage(usage):
            raise CapabilityViolationError(
                buffer.label, operation, usage.describe(), buffer.usage.describe()
            )

    def _require_unmapped(self, buffer: DeviceBuffer, operation: str) -> None:
        if buffer.state is not BufferState.UNMAPPED:
            raise BufferStateError(buffer.label, buffer.state.name, operation)

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"BufferManager(backend={self._device.backend.backend_type.name}, "
            f"buffers={len(self.buffers)})"
        )
