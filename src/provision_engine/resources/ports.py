"""Host port allocation for session containers.

One allocator is built at process start and shared by every pipeline. Each
provision gets a block of three ports (vnc, automation, adb) at the same
offset from the configured bases; offsets are reused once released.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Mapping

PORT_KINDS = ('vnc', 'automation', 'adb')


class PortsExhaustedError(RuntimeError):
    """No free offset remains within the configured range."""


class PortAllocator:
    def __init__(
        self,
        *,
        base_vnc_port: int = 6080,
        base_automation_port: int = 4723,
        base_adb_port: int = 5555,
        range_size: int = 1000,
    ) -> None:
        if range_size < 1:
            raise ValueError('range_size must be >= 1')
        self._bases = MappingProxyType(
            {
                'vnc': base_vnc_port,
                'automation': base_automation_port,
                'adb': base_adb_port,
            }
        )
        self._range_size = range_size
        self._offsets: dict[str, int] = {}

    def allocate(self, owner: str) -> Mapping[str, int]:
        """Return the port block for ``owner``, allocating one if needed."""
        if owner in self._offsets:
            return self._block(self._offsets[owner])

        in_use = set(self._offsets.values())
        for offset in range(self._range_size):
            if offset not in in_use:
                self._offsets[owner] = offset
                return self._block(offset)
        raise PortsExhaustedError(
            f'all {self._range_size} port blocks are allocated'
        )

    def release(self, owner: str) -> bool:
        return self._offsets.pop(owner, None) is not None

    def allocated(self) -> dict[str, Mapping[str, int]]:
        return {owner: self._block(offset) for owner, offset in self._offsets.items()}

    def _block(self, offset: int) -> Mapping[str, int]:
        return {kind: self._bases[kind] + offset for kind in PORT_KINDS}
