"""
Unit tests for submission and readback.
"""

from __future__ import annotations

from collections.abc import Callable

import numpy as np
import pytest

from pymatadd.backends.cpu import CPUBackend
from pymatadd.commands import CommandSequence
from pymatadd.core.buffers import BufferManager, BufferState
from pymatadd.core.dispatch import DispatchScheduler
from pymatadd.core.readback import ReadbackSynchronizer
from pymatadd.exceptions import BufferStateError, InvalidConfigurationError, MapFailedError


def _record_addition(
    buffers: BufferManager,
    add_pipeline: Callable[..., tuple],
    a: list[float],
    b: list[float],
) -> tuple[CommandSequence, dict]:
    pipeline, bindings, named = add_pipeline(buffers, len(a), a, b)
    sequence = DispatchScheduler(buffers.device).dispatch(pipeline, bindings, len(a))
    buffers.copy_device_to_device(sequence, named["output"], named["staging"], len(a) * 4)
    return sequence, named


class TestReadbackSynchronizer:
    """Tests for ReadbackSynchronizer."""

    def test_read(self, buffer_manager: BufferManager, add_pipeline: Callable) -> None:
        """Test submit, map, copy out and unmap."""
        sequence, named = _record_addition(
            buffer_manager, add_pipeline, [1.0, 2.0, 3.0, 4.0], [10.0, 20.0, 30.0, 40.0]
        )

        result = ReadbackSynchronizer(buffer_manager).read(sequence, named["staging"], 16)

        np.testing.assert_array_equal(result, [11.0, 22.0, 33.0, 44.0])
        assert result.dtype == np.float32
        assert sequence.is_submitted
        assert named["staging"].state is BufferState.UNMAPPED

    def test_resubmission(self, buffer_manager: BufferManager, add_pipeline: Callable) -> None:
        """Test a sequence is submitted at most once."""
        sequence, named = _record_addition(buffer_manager, add_pipeline, [1.0], [1.0])
        reader = ReadbackSynchronizer(buffer_manager)
        reader.read(sequence, named["staging"], 4)

        with pytest.raises(InvalidConfigurationError, match="already submitted"):
            reader.submit(sequence)

    def test_open_pass(self, buffer_manager: BufferManager) -> None:
        """Test a sequence with an open pass cannot be submitted."""
        sequence = CommandSequence()
        sequence.begin_compute_pass()

        with pytest.raises(InvalidConfigurationError, match="still open"):
            ReadbackSynchronizer(buffer_manager).submit(sequence)

    def test_mapped_buffer_blocks_submission(
        self,
        buffer_manager: BufferManager,
        add_pipeline: Callable,
    ) -> None:
        """Test work touching a mapped buffer is refused."""
        _, _, named = add_pipeline(buffer_manager, 4)
        buffer_manager.map_for_read(named["staging"])
        sequence = CommandSequence()
        sequence.copy_buffer_to_buffer(named["output"], 0, named["staging"], 0, 16)

        with pytest.raises(BufferStateError):
            ReadbackSynchronizer(buffer_manager).submit(sequence)
        assert not sequence.is_submitted

    def test_map_failure(
        self,
        cpu_backend: CPUBackend,
        buffer_manager: BufferManager,
        add_pipeline: Callable,
    ) -> None:
        """Test a lost device surfaces MapFailedError and leaves staging unmapped."""
        sequence, named = _record_addition(buffer_manager, add_pipeline, [1.0], [2.0])
        cpu_backend.lose_device(buffer_manager.device)

        with pytest.raises(MapFailedError):
            ReadbackSynchronizer(buffer_manager).read(sequence, named["staging"], 4)

        assert named["staging"].state is BufferState.UNMAPPED
