"""
Dispatch grid sizing and compute-pass recording.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

from pymatadd.commands import CommandSequence
from pymatadd.exceptions import InvalidConfigurationError, LayoutMismatchError

if TYPE_CHECKING:
    from pymatadd.backends.base import DeviceHandle
    from pymatadd.core.pipeline import BoundBuffers, ComputePipeline


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchGrid:
    """Execution groups along x, y and z, each with ``lanes_per_group`` lanes."""

    x: int
    y: int = 1
    z: int = 1
    lanes_per_group: int = 64

    def __post_init__(self) -> None:
        """Validate grid dimensions."""
        if min(self.x, self.y, self.z) < 1:
            raise InvalidConfigurationError(
                "grid", (self.x, self.y, self.z), "group counts must be positive"
            )
        if self.lanes_per_group < 1:
            raise InvalidConfigurationError(
                "lanes_per_group", self.lanes_per_group, "must be positive"
            )

    @property
    def group_count(self) -> int:
        """Get the total number of execution groups."""
        return self.x * self.y * self.z

    @property
    def total_lanes(self) -> int:
        """Get the total number of lanes launched."""
        return self.group_count * self.lanes_per_group

    def covers(self, total_elements: int) -> bool:
        """Check if every element index gets at least one lane."""
        return self.total_lanes >= total_elements

    @property
    def dims(self) -> tuple[int, int, int]:
        """Get ``(x, y, z)``."""
        return (self.x, self.y, self.z)


def plan_grid(
    total_elements: int,
    lanes_per_group: int,
    max_groups_per_dimension: int = 65535,
) -> DispatchGrid:
    """
    Size the smallest grid that covers ``total_elements``.

    Uses ``ceil(total_elements / lanes_per_group)`` groups along x, and
    spreads them over y (then z) when x alone would exceed the per-axis
    maximum.

    Args:
        total_elements: Element count (not bytes).
        lanes_per_group: Kernel workgroup size.
        max_groups_per_dimension: Backend per-axis group limit.

    Returns:
        A grid satisfying ``grid.covers(total_elements)``.

    Raises:
        InvalidConfigurationError: If even a full 3-D grid is too small.
    """
    if total_elements < 1:
        raise InvalidConfigurationError("total_elements", total_elements, "must be positive")
    if lanes_per_group < 1:
        raise InvalidConfigurationError("lanes_per_group", lanes_per_group, "must be positive")

    limit = max_groups_per_dimension
    groups = math.ceil(total_elements / lanes_per_group)
    if groups <= limit:
        return DispatchGrid(groups, 1, 1, lanes_per_group)

    z = math.ceil(groups / (limit * limit))
    if z > limit:
        raise InvalidConfigurationError(
            "total_elements",
            total_elements,
            f"needs {groups} groups, more than {limit}^3",
        )
    per_layer = math.ceil(groups / z)
    y = math.ceil(per_layer / limit)
    x = math.ceil(per_layer / y)

    logger.warning(
        f"{groups} groups exceed the per-axis limit {limit}; "
        f"dispatching a ({x}, {y}, {z}) grid"
    )
    return DispatchGrid(x, y, z, lanes_per_group)


class DispatchScheduler:
    """
    Records the compute pass that runs a pipeline over a problem.

    Example:
        >>> scheduler = DispatchScheduler(device)
        >>> sequence = scheduler.dispatch(pipeline, bindings, total_elements=65,
        ...                               lanes_per_group=64)
        >>> scheduler.last_grid.dims
        (2, 1, 1)
    """

    def __init__(self, device: DeviceHandle) -> None:
        """
        Initialize the dispatch scheduler.

        Args:
            device: Device whose limits bound the grid.
        """
        self._device = device
        self._last_grid: DispatchGrid | None = None

    @property
    def last_grid(self) -> DispatchGrid | None:
        """Get the grid of the most recent dispatch."""
        return self._last_grid

    def dispatch(
        self,
        pipeline: ComputePipeline,
        bindings: BoundBuffers,
        total_elements: int,
        lanes_per_group: int | None = None,
        *,
        sequence: CommandSequence | None = None,
        grid: DispatchGrid | None = None,
    ) -> CommandSequence:
        """
        Record set-pipeline, set-bind-group, dispatch and end-pass.

        Args:
            pipeline: Pipeline to run.
            bindings: Buffers bound against the pipeline's layout.
            total_elements: Element count the kernel was compiled for.
            lanes_per_group: Kernel workgroup size (defaults to the kernel's).
            sequence: Sequence to record into; a new one is created if None.
            grid: Explicit grid; must still cover ``total_elements``.

        Returns:
            The command sequence, ready for further recording.

        Raises:
            InvalidConfigurationError: If the sizes disagree with the
                kernel, or the grid is undersized or exceeds device limits.
            LayoutMismatchError: If ``bindings`` belong to another pipeline.
        """
        kernel = pipeline.kernel
        lanes = kernel.workgroup_size if lanes_per_group is None else lanes_per_group
        if lanes != kernel.workgroup_size:
            raise InvalidConfigurationError(
                "lanes_per_group", lanes, f"kernel declares workgroup size {kernel.workgroup_size}"
            )
        if total_elements != kernel.config.total_elements:
            raise InvalidConfigurationError(
                "total_elements",
                total_elements,
                f"kernel was compiled for {kernel.config.total_elements} elements",
            )
        if bindings.pipeline is not pipeline:
            raise LayoutMismatchError(None, "bindings were created for a different pipeline")

        limit = self._device.limits.max_workgroups_per_dimension
        if grid is None:
            grid = plan_grid(total_elements, lanes, limit)
        elif grid.lanes_per_group != lanes:
            raise InvalidConfigurationError(
                "grid.lanes_per_group", grid.lanes_per_group, f"kernel uses {lanes}"
            )
        if not grid.covers(total_elements):
            raise InvalidConfigurationError(
                "grid",
                grid.dims,
                f"{grid.total_lanes} lanes cannot cover {total_elements} elements",
            )
        if max(grid.dims) > limit:
            raise InvalidConfigurationError(
                "grid", grid.dims, f"exceeds {limit} groups per dimension"
            )

        sequence = sequence if sequence is not None else CommandSequence()
        sequence.begin_compute_pass()
        sequence.set_pipeline(pipeline)
        sequence.set_bind_group(0, bindings)
        sequence.dispatch_workgroups(*grid.dims)
        sequence.end_compute_pass()

        for buffer in bindings.writable_buffers():
            buffer.pending_sequence = sequence

        self._last_grid = grid
        logger.debug(
            f"Recorded dispatch of {grid.dims} x {lanes} lanes "
            f"({grid.total_lanes} lanes for {total_elements} elements)"
        )
        return sequence

    def __repr__(self) -> str:
        """String representation."""
        return f"DispatchScheduler(last_grid={self._last_grid})"
