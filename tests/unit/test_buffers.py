"""
Unit tests for device buffer management.
"""

from __future__ import annotations

import numpy as np
import pytest

from pymatadd.backends.base import BufferUsage
from pymatadd.backends.cpu import CPUBackend
from pymatadd.commands import CommandSequence
from pymatadd.core.buffers import BufferManager, BufferState
from pymatadd.core.orchestrator import INPUT_USAGE, OUTPUT_USAGE, STAGING_USAGE
from pymatadd.core.readback import ReadbackSynchronizer
from pymatadd.exceptions import (
    BackendError,
    BufferStateError,
    CapabilityViolationError,
    InvalidConfigurationError,
)

TRANSFER_USAGE = BufferUsage.COPY_SRC | BufferUsage.COPY_DST


class FlakyDestroyBackend(CPUBackend):
    """CPU backend that fails to destroy one labelled buffer."""

    def __init__(self, failing_label: str) -> None:
        super().__init__()
        self.failing_label = failing_label
        self.destroyed: list[str] = []

    def destroy_buffer(self, buffer) -> None:
        if buffer.label == self.failing_label:
            raise BackendError(f"cannot destroy '{buffer.label}'")
        super().destroy_buffer(buffer)
        self.destroyed.append(buffer.label)


def _staged(buffers: BufferManager, values: list[float]):
    """Upload ``values``, copy them into a staging buffer and submit."""
    data = np.asarray(values, dtype=np.float32)
    source = buffers.allocate(data.nbytes, TRANSFER_USAGE, "source")
    staging = buffers.allocate(data.nbytes, STAGING_USAGE, "staging")
    buffers.upload(source, data)
    sequence = CommandSequence()
    buffers.copy_device_to_device(sequence, source, staging, data.nbytes)
    ReadbackSynchronizer(buffers).submit(sequence)
    return staging


class TestAllocate:
    """Tests for BufferManager.allocate."""

    def test_allocate(self, buffer_manager: BufferManager) -> None:
        """Test a fresh buffer is unmapped with the requested usage."""
        buffer = buffer_manager.allocate(64, INPUT_USAGE, "input1")

        assert buffer.size == 64
        assert buffer.usage == INPUT_USAGE
        assert buffer.label == "input1"
        assert buffer.state is BufferState.UNMAPPED
        assert buffer in buffer_manager.buffers

    def test_default_label(self, buffer_manager: BufferManager) -> None:
        """Test buffers get a label when none is given."""
        assert buffer_manager.allocate(4, INPUT_USAGE).label == "buffer-0"

    @pytest.mark.parametrize("byte_length", [0, -4, 256 * 1024 * 1024 + 4])
    def test_invalid_size(self, buffer_manager: BufferManager, byte_length: int) -> None:
        """Test sizes outside (0, max_buffer_size] are rejected."""
        with pytest.raises(InvalidConfigurationError):
            buffer_manager.allocate(byte_length, INPUT_USAGE)

    def test_no_usage(self, buffer_manager: BufferManager) -> None:
        """Test a buffer needs at least one capability."""
        with pytest.raises(InvalidConfigurationError):
            buffer_manager.allocate(4, BufferUsage.NONE)


class TestUpload:
    """Tests for BufferManager.upload."""

    def test_requires_copy_dst(self, buffer_manager: BufferManager) -> None:
        """Test uploading into a buffer without COPY_DST."""
        output = buffer_manager.allocate(16, OUTPUT_USAGE, "output")

        with pytest.raises(CapabilityViolationError) as exc_info:
            buffer_manager.upload(output, np.zeros(4, dtype=np.float32))

        assert exc_info.value.buffer_label == "output"
        assert exc_info.value.required == "COPY_DST"

    def test_host_data_too_short(self, buffer_manager: BufferManager) -> None:
        """Test byte_length beyond the host data is rejected."""
        buffer = buffer_manager.allocate(16, INPUT_USAGE)

        with pytest.raises(InvalidConfigurationError):
            buffer_manager.upload(buffer, np.zeros(2, dtype=np.float32), byte_length=16)

    def test_refused_while_mapped(self, buffer_manager: BufferManager) -> None:
        """Test a mapped buffer refuses uploads."""
        staging = buffer_manager.allocate(16, STAGING_USAGE)
        buffer_manager.map_for_read(staging)

        with pytest.raises(BufferStateError):
            buffer_manager.upload(staging, np.zeros(4, dtype=np.float32))


class TestCopyAndMap:
    """Tests for recorded copies and the map/read/unmap protocol."""

    def test_round_trip(self, buffer_manager: BufferManager) -> None:
        """Test bytes uploaded and copied are read back."""
        staging = _staged(buffer_manager, [1.0, 2.0, 3.0, 4.0])

        with buffer_manager.mapped(staging) as view:
            np.testing.assert_array_equal(view.to_array(), [1.0, 2.0, 3.0, 4.0])

        assert staging.state is BufferState.UNMAPPED

    def test_copy_marks_pending_write(self, buffer_manager: BufferManager) -> None:
        """Test a recorded copy blocks mapping until submission."""
        source = buffer_manager.allocate(16, TRANSFER_USAGE)
        staging = buffer_manager.allocate(16, STAGING_USAGE, "staging")
        sequence = CommandSequence()
        buffer_manager.copy_device_to_device(sequence, source, staging, 16)

        assert staging.has_unsubmitted_write
        with pytest.raises(BufferStateError) as exc_info:
            buffer_manager.map_for_read(staging)
        assert exc_info.value.current_state == "PENDING_WRITE"

    def test_copy_requires_capabilities(self, buffer_manager: BufferManager) -> None:
        """Test copy endpoints need COPY_SRC and COPY_DST."""
        input1 = buffer_manager.allocate(16, INPUT_USAGE)
        output = buffer_manager.allocate(16, OUTPUT_USAGE)

        with pytest.raises(CapabilityViolationError):
            buffer_manager.copy_device_to_device(CommandSequence(), input1, output, 16)

    def test_map_requires_map_read(self, buffer_manager: BufferManager) -> None:
        """Test mapping a buffer without MAP_READ."""
        output = buffer_manager.allocate(16, OUTPUT_USAGE)

        with pytest.raises(CapabilityViolationError):
            buffer_manager.map_for_read(output)

    def test_double_map(self, buffer_manager: BufferManager) -> None:
        """Test a mapped buffer cannot be mapped again."""
        staging = buffer_manager.allocate(16, STAGING_USAGE)
        buffer_manager.map_for_read(staging)

        with pytest.raises(BufferStateError):
            buffer_manager.map_for_read(staging)

    def test_range_outside_buffer(self, buffer_manager: BufferManager) -> None:
        """Test ranges past the end are rejected."""
        staging = buffer_manager.allocate(16, STAGING_USAGE)

        with pytest.raises(InvalidConfigurationError):
            buffer_manager.map_for_read(staging, offset=8, byte_length=16)

    def test_partial_range(self, buffer_manager: BufferManager) -> None:
        """Test mapping a sub-range."""
        staging = _staged(buffer_manager, [1.0, 2.0, 3.0, 4.0])

        with buffer_manager.mapped(staging, offset=8, byte_length=8) as view:
            assert view.offset == 8
            np.testing.assert_array_equal(view.to_array(), [3.0, 4.0])

    def test_view_dies_on_unmap(self, buffer_manager: BufferManager) -> None:
        """Test a view cannot be read after unmap."""
        staging = _staged(buffer_manager, [5.0, 6.0])
        view = buffer_manager.map_for_read(staging)
        result = view.to_array()
        buffer_manager.unmap(staging)

        assert not view.is_valid
        with pytest.raises(BufferStateError):
            view.to_array()
        np.testing.assert_array_equal(result, [5.0, 6.0])

    def test_result_outlives_mapping(self, buffer_manager: BufferManager) -> None:
        """Test copied-out arrays own their memory."""
        staging = _staged(buffer_manager, [7.0])

        with buffer_manager.mapped(staging) as view:
            result = view.to_array()
        buffer_manager.destroy(staging)

        assert result.flags.owndata
        assert result[0] == 7.0

    def test_unmap_unmapped(self, buffer_manager: BufferManager) -> None:
        """Test unmapping a buffer that is not mapped."""
        staging = buffer_manager.allocate(16, STAGING_USAGE)

        with pytest.raises(BufferStateError):
            buffer_manager.unmap(staging)

    def test_mapped_unmaps_on_error(self, buffer_manager: BufferManager) -> None:
        """Test the context manager unmaps when the block raises."""
        staging = buffer_manager.allocate(16, STAGING_USAGE)

        with pytest.raises(RuntimeError):
            with buffer_manager.mapped(staging):
                raise RuntimeError("boom")

        assert staging.state is BufferState.UNMAPPED


class TestRelease:
    """Tests for destroy and release_all."""

    def test_destroy_mapped_buffer(self, buffer_manager: BufferManager) -> None:
        """Test destroying a mapped buffer unmaps it first."""
        staging = buffer_manager.allocate(16, STAGING_USAGE)
        view = buffer_manager.map_for_read(staging)

        buffer_manager.destroy(staging)

        assert staging.state is BufferState.DESTROYED
        assert not view.is_valid

    def test_release_all(self, device) -> None:
        """Test leaving the context destroys every buffer."""
        with BufferManager(device) as buffers:
            allocated = [buffers.allocate(16, INPUT_USAGE) for _ in range(3)]

        assert all(b.state is BufferState.DESTROYED for b in allocated)
        assert buffers.buffers == []

    def test_release_all_continues_past_failure(self) -> None:
        """Test one failing destroy does not leak the remaining buffers."""
        backend = FlakyDestroyBackend("second")
        buffers = BufferManager(backend.acquire_device("high-performance"))
        for label in ("first", "second", "third"):
            buffers.allocate(16, INPUT_USAGE, label)

        with pytest.raises(BackendError, match="second"):
            buffers.release_all()

        assert backend.destroyed == ["first", "third"]
        assert buffers.buffers == []

    def test_upload_to_destroyed(self, buffer_manager: BufferManager) -> None:
        """Test a destroyed buffer refuses uploads."""
        buffer = buffer_manager.allocate(16, INPUT_USAGE)
        buffer_manager.destroy(buffer)

        with pytest.raises(BufferStateError):
            buffer_manager.upload(buffer, np.zeros(4, dtype=np.float32))
