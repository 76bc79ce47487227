"""
Unit tests for pipeline construction and binding.
"""

from __future__ import annotations

from collections.abc import Callable

import pytest

from pymatadd.backends.base import BindingKind, BindingLayout, DeviceHandle
from pymatadd.compilation.compiler import ELEMENTWISE_ADD_LAYOUT
from pymatadd.core.buffers import BufferManager
from pymatadd.core.orchestrator import INPUT_USAGE, OUTPUT_USAGE, STAGING_USAGE
from pymatadd.core.pipeline import PipelineBuilder
from pymatadd.exceptions import LayoutMismatchError


class TestBuild:
    """Tests for PipelineBuilder.build."""

    def test_default_layout(self, device: DeviceHandle, add_kernel: Callable) -> None:
        """Test the kernel's declared layout is used by default."""
        pipeline = PipelineBuilder(device).build(add_kernel(device, 4))

        assert pipeline.layout == ELEMENTWISE_ADD_LAYOUT

    def test_kind_mismatch(self, device: DeviceHandle, add_kernel: Callable) -> None:
        """Test a slot kind differing from the kernel's is rejected."""
        layout = BindingLayout.of(
            BindingKind.STORAGE, BindingKind.READ_ONLY_STORAGE, BindingKind.STORAGE
        )

        with pytest.raises(LayoutMismatchError) as exc_info:
            PipelineBuilder(device).build(add_kernel(device, 4), layout)

        assert exc_info.value.slot == 0

    def test_count_mismatch(self, device: DeviceHandle, add_kernel: Callable) -> None:
        """Test a layout with the wrong number of slots."""
        layout = BindingLayout.of(BindingKind.READ_ONLY_STORAGE, BindingKind.STORAGE)

        with pytest.raises(LayoutMismatchError) as exc_info:
            PipelineBuilder(device).build(add_kernel(device, 4), layout)

        assert exc_info.value.slot is None


class TestBind:
    """Tests for PipelineBuilder.bind."""

    @pytest.fixture
    def builder(self, device: DeviceHandle) -> PipelineBuilder:
        return PipelineBuilder(device)

    def test_bind(
        self,
        buffer_manager: BufferManager,
        builder: PipelineBuilder,
        add_kernel: Callable,
    ) -> None:
        """Test binding correctly typed buffers."""
        pipeline = builder.build(add_kernel(buffer_manager.device, 4))
        buffers = [
            buffer_manager.allocate(16, INPUT_USAGE, "input1"),
            buffer_manager.allocate(16, INPUT_USAGE, "input2"),
            buffer_manager.allocate(16, OUTPUT_USAGE, "output"),
        ]

        bindings = builder.bind(pipeline, buffers)

        assert bindings.pipeline is pipeline
        assert bindings.writable_buffers() == [buffers[2]]

    def test_wrong_buffer_count(
        self,
        buffer_manager: BufferManager,
        builder: PipelineBuilder,
        add_kernel: Callable,
    ) -> None:
        """Test the buffer count must match the layout."""
        pipeline = builder.build(add_kernel(buffer_manager.device, 4))
        buffers = [buffer_manager.allocate(16, INPUT_USAGE) for _ in range(2)]

        with pytest.raises(LayoutMismatchError, match="2 buffers"):
            builder.bind(pipeline, buffers)

    def test_read_slot_needs_storage_read(
        self,
        buffer_manager: BufferManager,
        builder: PipelineBuilder,
        add_kernel: Callable,
    ) -> None:
        """Test a staging buffer cannot be bound as an input."""
        pipeline = builder.build(add_kernel(buffer_manager.device, 4))
        buffers = [
            buffer_manager.allocate(16, STAGING_USAGE, "staging"),
            buffer_manager.allocate(16, INPUT_USAGE),
            buffer_manager.allocate(16, OUTPUT_USAGE),
        ]

        with pytest.raises(LayoutMismatchError) as exc_info:
            builder.bind(pipeline, buffers)

        assert exc_info.value.slot == 0

    def test_write_slot_needs_storage_write(
        self,
        buffer_manager: BufferManager,
        builder: PipelineBuilder,
        add_kernel: Callable,
    ) -> None:
        """Test an input buffer cannot be bound as the output."""
        pipeline = builder.build(add_kernel(buffer_manager.device, 4))
        buffers = [buffer_manager.allocate(16, INPUT_USAGE) for _ in range(3)]

        with pytest.raises(LayoutMismatchError) as exc_info:
            builder.bind(pipeline, buffers)

        assert exc_info.value.slot == 2

    def test_undersized_buffer(
        self,
        buffer_manager: BufferManager,
        builder: PipelineBuilder,
        add_kernel: Callable,
    ) -> None:
        """Test buffers must hold element_count floats."""
        pipeline = builder.build(add_kernel(buffer_manager.device, 16))
        buffers = [
            buffer_manager.allocate(64, INPUT_USAGE),
            buffer_manager.allocate(64, INPUT_USAGE),
            buffer_manager.allocate(32, OUTPUT_USAGE, "short"),
        ]

        with pytest.raises(LayoutMismatchError, match="short"):
            builder.bind(pipeline, buffers)
