"""
Kernel compiler for PyMatAdd.

Parses a WGSL compute kernel's interface (bindings, entry point,
workgroup size), checks it against the requested configuration and hands
the source to the backend for compilation.
"""

from __future__ import annotations

import hashlib
import logging
import re
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pymatadd.backends.base import BindingKind, BindingLayout, BindingSlot
from pymatadd.exceptions import (
    InvalidConfigurationError,
    KernelCompilationError,
    PyMatAddError,
)

if TYPE_CHECKING:
    from pymatadd.backends.base import DeviceHandle


logger = logging.getLogger(__name__)

ENTRY_POINT = "main"
DEFAULT_WORKGROUP_SIZE = 64
MAX_WORKGROUP_SIZE = 1024
MAX_ELEMENT_COUNT = 2**32 - 1

# The bound is the element count, supplied as a pipeline-overridable
# constant. The linear lane index folds y and z so grids spread over
# several axes still address every element exactly once.
ELEMENTWISE_ADD_SOURCE = """
const WORKGROUP_SIZE: u32 = 64u;

override element_count: u32;

@group(0) @binding(0)
var<storage, read> input1: array<f32>;
@group(0) @binding(1)
var<storage, read> input2: array<f32>;
@group(0) @binding(2)
var<storage, read_write> output: array<f32>;

@compute @workgroup_size(WORKGROUP_SIZE)
fn main(
    @builtin(global_invocation_id) global_id: vec3<u32>,
    @builtin(num_workgroups) num_groups: vec3<u32>,
) {
    let row_stride = num_groups.x * WORKGROUP_SIZE;
    let index = global_id.x + global_id.y * row_stride + global_id.z * row_stride * num_groups.y;
    if (index >= element_count) {
        return;
    }
    output[index] = input1[index] + input2[index];
}
"""

ELEMENTWISE_ADD_LAYOUT = BindingLayout.of(
    BindingKind.READ_ONLY_STORAGE,
    BindingKind.READ_ONLY_STORAGE,
    BindingKind.STORAGE,
)

_BINDING_RE = re.compile(
    r"@group\(\s*(\d+)\s*\)\s*@binding\(\s*(\d+)\s*\)\s*"
    r"var<\s*storage\s*(?:,\s*(read_write|read)\s*)?>\s*(\w+)\s*:\s*array<\s*f32\s*>"
)
_ENTRY_RE = re.compile(r"((?:@\w+(?:\([^)]*\))?\s*)+)fn\s+(\w+)\s*\(")
_WORKGROUP_SIZE_RE = re.compile(r"@workgroup_size\(([^)]*)\)")
_CONST_RE = re.compile(r"const\s+(\w+)\s*(?::\s*u32\s*)?=\s*(\d+)u?\s*;")


@dataclass(frozen=True)
class KernelConfig:
    """
    Compile-time parameters of the addition kernel.

    ``total_elements`` is an element count (rows * cols), never a byte
    length; it bounds which lanes may touch memory.
    """

    total_elements: int
    workgroup_size: int = DEFAULT_WORKGROUP_SIZE

    def __post_init__(self) -> None:
        """Validate configuration."""
        if not 0 < self.total_elements <= MAX_ELEMENT_COUNT:
            raise InvalidConfigurationError(
                "total_elements",
                self.total_elements,
                f"must be in (0, {MAX_ELEMENT_COUNT}]",
            )
        if not 0 < self.workgroup_size <= MAX_WORKGROUP_SIZE:
            raise InvalidConfigurationError(
                "workgroup_size",
                self.workgroup_size,
                f"must be in (0, {MAX_WORKGROUP_SIZE}]",
            )

    def constants(self) -> dict[str, float]:
        """Pipeline-overridable constants passed at pipeline creation."""
        return {"element_count": self.total_elements}


@dataclass
class KernelModule:
    """A compiled kernel with its declared interface."""

    entry_point: str
    source: str
    config: KernelConfig
    bindings: BindingLayout
    workgroup_size: int
    source_hash: str
    native: Any = None
    compile_time_ms: float = 0.0

    @property
    def constants(self) -> dict[str, float]:
        """Get the override constants for pipeline creation."""
        return self.config.constants()


class KernelCompiler:
    """
    Compiler for WGSL compute kernels.

    Example:
        >>> compiler = KernelCompiler(device)
        >>> kernel = compiler.compile(
        ...     ELEMENTWISE_ADD_SOURCE, "main", KernelConfig(total_elements=4)
        ... )
        >>> kernel.workgroup_size
        64
    """

    def __init__(self, device: DeviceHandle) -> None:
        """
        Initialize the kernel compiler.

        Args:
            device: Device the kernel is compiled for.
        """
        self._device = device

    def compile(
        self,
        source: str,
        entry_point: str = ENTRY_POINT,
        config: KernelConfig | None = None,
    ) -> KernelModule:
        """
        Compile kernel source.

        Args:
            source: WGSL source text.
            entry_point: Name of the compute entry point.
            config: Kernel configuration (element count, workgroup size).

        Returns:
            KernelModule holding the native shader module.

        Raises:
            KernelCompilationError: If the interface is malformed or the
                backend rejects the source.
        """
        if config is None:
            raise KernelCompilationError(entry_point, "a KernelConfig is required")

        bindings = parse_bindings(source, entry_point)
        workgroup_size = parse_workgroup_size(source, entry_point)
        if workgroup_size != config.workgroup_size:
            raise KernelCompilationError(
                entry_point,
                f"declared workgroup size {workgroup_size} does not match "
                f"configured {config.workgroup_size}",
            )

        module = KernelModule(
            entry_point=entry_point,
            source=source,
            config=config,
            bindings=bindings,
            workgroup_size=workgroup_size,
            source_hash=_source_hash(source, entry_point),
        )

        start_time = time.perf_counter()
        try:
            module.native = self._device.backend.compile_kernel(self._device, module)
        except PyMatAddError:
            raise
        except Exception as e:
            raise KernelCompilationError(entry_point, e) from e
        module.compile_time_ms = (time.perf_counter() - start_time) * 1000

        logger.debug(
            f"Compiled kernel '{entry_point}' ({module.source_hash}) in "
            f"{module.compile_time_ms:.2f} ms, bindings={len(bindings)}, "
            f"workgroup_size={workgroup_size}"
        )
        return module

    def __repr__(self) -> str:
        """String representation."""
        return f"KernelCompiler(backend={self._device.backend.backend_type.name})"


def parse_bindings(source: str, entry_point: str = ENTRY_POINT) -> BindingLayout:
    """
    Extract the storage bindings a kernel declares.

    Args:
        source: WGSL source text.
        entry_point: Kernel name used in error messages.

    Returns:
        Binding layout in slot order.

    Raises:
        KernelCompilationError: If no bindings are declared or a binding
            is outside bind group 0.
    """
    slots = []
    for match in _BINDING_RE.finditer(source):
        group, binding, access = int(match.group(1)), int(match.group(2)), match.group(3)
        if group != 0:
            raise KernelCompilationError(
                entry_point, f"binding {binding} is in group {group}, only group 0 is supported"
            )
        kind = BindingKind.STORAGE if access == "read_write" else BindingKind.READ_ONLY_STORAGE
        slots.append(BindingSlot(binding, kind))

    if not slots:
        raise KernelCompilationError(entry_point, "no storage bindings declared")

    slots.sort(key=lambda slot: slot.index)
    try:
        return BindingLayout(tuple(slots))
    except InvalidConfigurationError as e:
        raise KernelCompilationError(entry_point, e.reason) from e


def parse_workgroup_size(source: str, entry_point: str = ENTRY_POINT) -> int:
    """
    Extract the lane count of an entry point's workgroup.

    Only one-dimensional workgroups are accepted; the size may be a
    literal or a ``const`` declared in the same source.

    Raises:
        KernelCompilationError: If the entry point or its workgroup size
            is missing.
    """
    for match in _ENTRY_RE.finditer(source):
        attributes, name = match.group(1), match.group(2)
        if name != entry_point:
            continue
        if "@compute" not in attributes:
            raise KernelCompilationError(entry_point, "entry point is not a compute stage")
        size = _WORKGROUP_SIZE_RE.search(attributes)
        if size is None:
            raise KernelCompilationError(entry_point, "no @workgroup_size declared")
        dims = [dim.strip() for dim in size.group(1).split(",") if dim.strip()]
        if any(_resolve_u32(source, dim, entry_point) != 1 for dim in dims[1:]):
            raise KernelCompilationError(entry_point, "only 1-D workgroups are supported")
        return _resolve_u32(source, dims[0], entry_point)

    raise KernelCompilationError(entry_point, "entry point not found in source")


def _resolve_u32(source: str, token: str, entry_point: str) -> int:
    """Resolve a literal or const identifier to an integer."""
    literal = token.rstrip("u")
    if literal.isdigit():
        return int(literal)
    for match in _CONST_RE.finditer(source):
        if match.group(1) == token:
            return int(match.group(2))
    raise KernelCompilationError(entry_point, f"cannot resolve workgroup size '{token}'")


def _source_hash(source: str, entry_point: str) -> str:
    """Generate a short hash identifying kernel source and entry point."""
    return hashlib.sha256(f"{source}|{entry_point}".encode()).hexdigest()[:16]
