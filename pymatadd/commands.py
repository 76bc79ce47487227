"""
Backend-neutral command recording.

A CommandSequence records compute-pass and copy commands in order; a
backend replays them onto its native command encoder when the sequence
is submitted. Ordering between commands is established purely by their
position in the sequence.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Union

from pymatadd.exceptions import InvalidConfigurationError

if TYPE_CHECKING:
    from pymatadd.core.buffers import DeviceBuffer
    from pymatadd.core.pipeline import BoundBuffers, ComputePipeline


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BeginComputePass:
    """Open a compute pass."""


@dataclass(frozen=True)
class SetPipeline:
    """Select the compute pipeline for subsequent dispatches."""

    pipeline: ComputePipeline


@dataclass(frozen=True)
class SetBindGroup:
    """Attach bound buffers to a bind group index."""

    index: int
    bindings: BoundBuffers


@dataclass(frozen=True)
class DispatchWorkgroups:
    """Issue a grid of execution groups."""

    x: int
    y: int = 1
    z: int = 1


@dataclass(frozen=True)
class EndComputePass:
    """Close the open compute pass."""


@dataclass(frozen=True)
class CopyBufferToBuffer:
    """Copy a byte range between two device buffers."""

    source: DeviceBuffer
    source_offset: int
    destination: DeviceBuffer
    destination_offset: int
    size: int


Command = Union[
    BeginComputePass,
    SetPipeline,
    SetBindGroup,
    DispatchWorkgroups,
    EndComputePass,
    CopyBufferToBuffer,
]


class CommandSequence:
    """
    Ordered, single-submission list of recorded device commands.

    Enforces the encoder rules shared by all backends: pipeline and
    dispatch commands only inside an open compute pass, copies only
    outside it, nothing recorded after submission.

    Example:
        >>> sequence = CommandSequence()
        >>> sequence.begin_compute_pass()
        >>> sequence.set_pipeline(pipeline)
        >>> sequence.set_bind_group(0, bindings)
        >>> sequence.dispatch_workgroups(4)
        >>> sequence.end_compute_pass()
    """

    def __init__(self, label: str = "pymatadd-commands") -> None:
        self._label = label
        self._commands: list[Command] = []
        self._pass_open = False
        self._pipeline_set = False
        self._bind_group_set = False
        self._submitted = False

    @property
    def label(self) -> str:
        """Get the sequence label."""
        return self._label

    @property
    def commands(self) -> tuple[Command, ...]:
        """Get the recorded commands in order."""
        return tuple(self._commands)

    @property
    def is_submitted(self) -> bool:
        """Check if the sequence has been handed to a backend."""
        return self._submitted

    @property
    def pass_open(self) -> bool:
        """Check if a compute pass is currently open."""
        return self._pass_open

    def begin_compute_pass(self) -> None:
        """Open a compute pass."""
        self._check_recordable("begin a compute pass")
        if self._pass_open:
            self._invalid("compute pass already open")
        self._pass_open = True
        self._pipeline_set = False
        self._bind_group_set = False
        self._record(BeginComputePass())

    def set_pipeline(self, pipeline: ComputePipeline) -> None:
        """Select the pipeline for the open pass."""
        self._check_in_pass("set a pipeline")
        self._pipeline_set = True
        self._record(SetPipeline(pipeline))

    def set_bind_group(self, index: int, bindings: BoundBuffers) -> None:
        """Attach bound buffers for the open pass."""
        self._check_in_pass("set a bind group")
        self._bind_group_set = True
        self._record(SetBindGroup(index, bindings))

    def dispatch_workgroups(self, x: int, y: int = 1, z: int = 1) -> None:
        """Record a dispatch of ``x * y * z`` execution groups."""
        self._check_in_pass("dispatch")
        if not (self._pipeline_set and self._bind_group_set):
            self._invalid("dispatch requires a pipeline and a bind group")
        if min(x, y, z) < 1:
            self._invalid(f"dispatch dimensions must be positive, got ({x}, {y}, {z})")
        self._record(DispatchWorkgroups(x, y, z))

    def end_compute_pass(self) -> None:
        """Close the open compute pass."""
        self._check_in_pass("end a compute pass")
        self._pass_open = False
        self._record(EndComputePass())

    def copy_buffer_to_buffer(
        self,
        source: DeviceBuffer,
        source_offset: int,
        destination: DeviceBuffer,
        destination_offset: int,
        size: int,
    ) -> None:
        """Record a buffer-to-buffer copy outside any compute pass."""
        self._check_recordable("copy")
        if self._pass_open:
            self._invalid("copies cannot be recorded inside a compute pass")
        self._record(
            CopyBufferToBuffer(source, source_offset, destination, destination_offset, size)
        )

    def referenced_buffers(self) -> list[DeviceBuffer]:
        """Get every buffer the sequence reads or writes, without duplicates."""
        seen: dict[int, DeviceBuffer] = {}
        for command in self._commands:
            if isinstance(command, SetBindGroup):
                for buffer in command.bindings.buffers:
                    seen.setdefault(id(buffer), buffer)
            elif isinstance(command, CopyBufferToBuffer):
                seen.setdefault(id(command.source), command.source)
                seen.setdefault(id(command.destination), command.destination)
        return list(seen.values())

    def mark_submitted(self) -> None:
        """Freeze the sequence after a backend accepted it."""
        if self._submitted:
            self._invalid("sequence already submitted")
        if self._pass_open:
            self._invalid("cannot submit with an open compute pass")
        self._submitted = True

    def _record(self, command: Command) -> None:
        logger.debug(f"[{self._label}] record {command.__class__.__name__}")
        self._commands.append(command)

    def _check_recordable(self, operation: str) -> None:
        if self._submitted:
            self._invalid(f"cannot {operation} after submission")

    def _check_in_pass(self, operation: str) -> None:
        self._check_recordable(operation)
        if not self._pass_open:
            self._invalid(f"cannot {operation} outside a compute pass")

    def _invalid(self, reason: str) -> None:
        raise InvalidConfigurationError("command_sequence", self._label, reason)

    def __len__(self) -> int:
        return len(self._commands)

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"CommandSequence(label={self._label!r}, commands={len(self._commands)}, "
            f"submitted={self._submitted})"
        )
