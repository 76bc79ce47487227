"""
Submission and host readback.

Submits the single recorded command sequence, waits for the staging
buffer to become mappable and copies the result into host memory.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import numpy as np

from pymatadd.exceptions import BufferStateError, InvalidConfigurationError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from pymatadd.commands import CommandSequence
    from pymatadd.core.buffers import BufferManager, DeviceBuffer


logger = logging.getLogger(__name__)


class ReadbackSynchronizer:
    """
    Runs the submit / map / read / unmap protocol.

    Example:
        >>> reader = ReadbackSynchronizer(buffers)
        >>> result = reader.read(sequence, staging, staging.size)
    """

    def __init__(self, buffers: BufferManager) -> None:
        """
        Initialize the synchronizer.

        Args:
            buffers: Manager owning the staging buffer.
        """
        self._buffers = buffers

    def submit(self, sequence: CommandSequence) -> None:
        """
        Hand a recorded sequence to the device queue.

        Raises:
            InvalidConfigurationError: If the sequence was already
                submitted or has an open compute pass.
            BufferStateError: If a buffer it touches is mapped.
        """
        if sequence.is_submitted:
            raise InvalidConfigurationError("command_sequence", sequence.label, "already submitted")
        if sequence.pass_open:
            raise InvalidConfigurationError(
                "command_sequence", sequence.label, "compute pass still open"
            )
        for buffer in sequence.referenced_buffers():
            if buffer.is_mapped:
                raise BufferStateError(buffer.label, buffer.state.name, "submit work touching")

        device = self._buffers.device
        device.backend.submit(device, sequence)
        sequence.mark_submitted()
        logger.debug(f"Submitted {sequence!r}")

    def read(
        self,
        sequence: CommandSequence,
        staging: DeviceBuffer,
        byte_length: int,
    ) -> NDArray[np.float32]:
        """
        Submit ``sequence`` and read ``byte_length`` bytes of ``staging``.

        The staging buffer is unmapped before returning, also when the
        copy out fails.

        Returns:
            Newly owned flat float32 array.

        Raises:
            MapFailedError: If the device cannot map the staging buffer.
        """
        self.submit(sequence)
        with self._buffers.mapped(staging, 0, byte_length) as view:
            result = view.to_array(np.float32)
        logger.debug(f"Read back {result.size} floats from '{staging.label}'")
        return result

    def __repr__(self) -> str:
        """String representation."""
        return f"ReadbackSynchronizer(buffers={self._buffers!r})"
