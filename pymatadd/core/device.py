"""
Compute device acquisition.

Negotiates an adapter and device from a backend and exposes the handle,
its limits and descriptive adapter metadata.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pymatadd.exceptions import BackendError, InvalidConfigurationError

if TYPE_CHECKING:
    from pymatadd.backends.base import AdapterInfo, Backend, DeviceHandle, DeviceLimits


logger = logging.getLogger(__name__)

POWER_PREFERENCES = ("high-performance", "low-power")


class DeviceContext:
    """
    Acquires and holds one compute device.

    Adapter metadata is exposed for diagnostics only; nothing in the
    computation reads it.

    Example:
        >>> context = DeviceContext(WgpuBackend())
        >>> device = context.acquire()
        >>> context.adapter_info.vendor
        'nvidia'
    """

    def __init__(
        self,
        backend: Backend,
        *,
        power_preference: str = "high-performance",
    ) -> None:
        """
        Initialize the device context.

        Args:
            backend: Backend the device is requested from.
            power_preference: "high-performance" or "low-power".
        """
        if power_preference not in POWER_PREFERENCES:
            raise InvalidConfigurationError(
                "power_preference", power_preference, f"must be one of {POWER_PREFERENCES}"
            )
        self._backend = backend
        self._power_preference = power_preference
        self._handle: DeviceHandle | None = None

    @property
    def backend(self) -> Backend:
        """Get the backend."""
        return self._backend

    @property
    def is_acquired(self) -> bool:
        """Check if a device has been acquired."""
        return self._handle is not None

    @property
    def handle(self) -> DeviceHandle:
        """Get the acquired device handle."""
        if self._handle is None:
            raise BackendError("No device acquired. Call acquire() first.")
        return self._handle

    @property
    def adapter_info(self) -> AdapterInfo:
        """Get the adapter metadata of the acquired device."""
        return self.handle.adapter_info

    @property
    def limits(self) -> DeviceLimits:
        """Get the limits of the acquired device."""
        return self.handle.limits

    def acquire(self, required_buffer_size: int = 0) -> DeviceHandle:
        """
        Acquire a device, blocking until the backend answers.

        Args:
            required_buffer_size: Largest buffer the caller will allocate;
                raised limits are requested when it exceeds the defaults.

        Returns:
            Device handle.

        Raises:
            DeviceUnavailableError: If no compute backend is present.
            AdapterRejectedError: If the backend returns no adapter.
            DeviceRejectedError: If the device request fails.
        """
        if self._handle is not None:
            return self._handle

        handle = self._backend.acquire_device(self._power_preference, required_buffer_size)
        info = handle.adapter_info
        logger.info(
            f"Acquired {self._backend.backend_type.name} device: "
            f"vendor={info.vendor or 'unknown'}, "
            f"architecture={info.architecture or 'unknown'}, "
            f"device={info.device or 'unknown'}"
        )
        self._handle = handle
        return handle

    def __repr__(self) -> str:
        """String representation."""
        device = self._handle.adapter_info.device if self._handle else None
        return (
            f"DeviceContext(backend={self._backend.backend_type.name}, "
            f"power_preference={self._power_preference!r}, device={device!r})"
        )
