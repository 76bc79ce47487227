"""
Compute pipeline construction and buffer binding.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pymatadd.core.buffers import BufferState
from pymatadd.exceptions import LayoutMismatchError

if TYPE_CHECKING:
    from pymatadd.backends.base import BindingLayout, DeviceHandle
    from pymatadd.compilation.compiler import KernelModule
    from pymatadd.core.buffers import DeviceBuffer


logger = logging.getLogger(__name__)

FLOAT32_BYTES = 4


@dataclass(frozen=True)
class ComputePipeline:
    """An executable pipeline: compiled kernel plus binding layout."""

    kernel: KernelModule
    layout: BindingLayout
    native: Any


@dataclass(frozen=True)
class BoundBuffers:
    """Concrete buffers attached to a pipeline's binding slots."""

    pipeline: ComputePipeline
    buffers: tuple[DeviceBuffer, ...]
    native: Any

    @property
    def layout(self) -> BindingLayout:
        """Get the layout the buffers were bound against."""
        return self.pipeline.layout

    def writable_buffers(self) -> list[DeviceBuffer]:
        """Get the buffers bound to read-write slots."""
        return [
            buffer
            for slot, buffer in zip(self.layout, self.buffers)
            if slot.kind.is_writable
        ]


class PipelineBuilder:
    """
    Combines a compiled kernel with a binding layout and concrete buffers.

    Example:
        >>> builder = PipelineBuilder(device)
        >>> pipeline = builder.build(kernel, ELEMENTWISE_ADD_LAYOUT)
        >>> bindings = builder.bind(pipeline, [input1, input2, output])
    """

    def __init__(self, device: DeviceHandle) -> None:
        """
        Initialize the pipeline builder.

        Args:
            device: Device the pipeline is built on.
        """
        self._device = device

    def build(self, kernel: KernelModule, layout: BindingLayout | None = None) -> ComputePipeline:
        """
        Build an executable compute pipeline.

        Args:
            kernel: Compiled kernel.
            layout: Binding layout; defaults to the kernel's declared one.

        Returns:
            ComputePipeline.

        Raises:
            LayoutMismatchError: If the layout differs from the kernel's
                declared bindings.
        """
        layout = kernel.bindings if layout is None else layout
        if len(layout) != len(kernel.bindings):
            raise LayoutMismatchError(
                None,
                f"layout has {len(layout)} slots, kernel declares {len(kernel.bindings)}",
            )
        for supplied, declared in zip(layout, kernel.bindings):
            if supplied != declared:
                raise LayoutMismatchError(
                    supplied.index,
                    f"layout declares {supplied.kind.value} at slot {supplied.index}, "
                    f"kernel declares {declared.kind.value} at slot {declared.index}",
                )

        native = self._device.backend.build_pipeline(self._device, kernel, layout)
        logger.debug(f"Built pipeline for '{kernel.entry_point}' with {len(layout)} bindings")
        return ComputePipeline(kernel=kernel, layout=layout, native=native)

    def bind(self, pipeline: ComputePipeline, buffers: Sequence[DeviceBuffer]) -> BoundBuffers:
        """
        Attach buffers to the pipeline's slots, in slot order.

        Raises:
            LayoutMismatchError: If the buffer count differs from the
                layout, a buffer lacks the capability its slot kind needs,
                or a buffer cannot hold ``element_count`` floats.
        """
        if len(buffers) != len(pipeline.layout):
            raise LayoutMismatchError(
                None,
                f"{len(buffers)} buffers supplied for {len(pipeline.layout)} slots",
            )

        min_size = pipeline.kernel.config.total_elements * FLOAT32_BYTES
        for slot, buffer in zip(pipeline.layout, buffers):
            required = slot.kind.required_usage
            if not buffer.has_usage(required):
                raise LayoutMismatchError(
                    slot.index,
                    f"{slot.kind.value} needs {required.describe()}, "
                    f"buffer '{buffer.label}' has {buffer.usage.describe()}",
                )
            if buffer.size < min_size:
                raise LayoutMismatchError(
                    slot.index,
                    f"buffer '{buffer.label}' holds {buffer.size} bytes, needs {min_size}",
                )
            if buffer.state is not BufferState.UNMAPPED:
                raise LayoutMismatchError(
                    slot.index, f"buffer '{buffer.label}' is {buffer.state.name}"
                )

        native = self._device.backend.bind_buffers(self._device, pipeline, buffers)
        return BoundBuffers(pipeline=pipeline, buffers=tuple(buffers), native=native)

    def __repr__(self) -> str:
        """String representation."""
        return f"PipelineBuilder(backend={self._device.backend.backend_type.name})"
