"""
Core abstractions for PyMatAdd.
"""

from pymatadd.core.buffers import BufferManager, BufferState, DeviceBuffer, MappedView
from pymatadd.core.device import DeviceContext
from pymatadd.core.dispatch import DispatchGrid, DispatchScheduler, plan_grid
from pymatadd.core.orchestrator import (
    AdditionConfig,
    AdditionRecord,
    MatrixAddOrchestrator,
    add_matrices,
)
from pymatadd.core.pipeline import BoundBuffers, ComputePipeline, PipelineBuilder
from pymatadd.core.readback import ReadbackSynchronizer

__all__ = [
    "DeviceContext",
    "BufferManager",
    "BufferState",
    "DeviceBuffer",
    "MappedView",
    "PipelineBuilder",
    "ComputePipeline",
    "BoundBuffers",
    "DispatchScheduler",
    "DispatchGrid",
    "plan_grid",
    "ReadbackSynchronizer",
    "MatrixAddOrchestrator",
    "AdditionConfig",
    "AdditionRecord",
    "add_matrices",
]
