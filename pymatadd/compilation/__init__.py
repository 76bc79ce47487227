"""
Kernel source, interface parsing and compilation.
"""

from pymatadd.compilation.compiler import (
    ELEMENTWISE_ADD_LAYOUT,
    ELEMENTWISE_ADD_SOURCE,
    ENTRY_POINT,
    KernelCompiler,
    KernelConfig,
    KernelModule,
)

__all__ = [
    "KernelCompiler",
    "KernelConfig",
    "KernelModule",
    "ELEMENTWISE_ADD_SOURCE",
    "ELEMENTWISE_ADD_LAYOUT",
    "ENTRY_POINT",
]
