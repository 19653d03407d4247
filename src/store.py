"""
Discovery Store - Desired registrations keyed by workload.

Each workload's descriptor list is stored as an immutable tuple and replaced
wholesale, so a snapshot never contains half of a workload's update. Writes
are single dict operations and snapshots copy the dict, which keeps writers
free of any store-wide lock.
"""

from typing import Dict, Iterable, List, Tuple

from models import ExtensionDescriptor


def _same_descriptors(
    a: Tuple[ExtensionDescriptor, ...], b: Tuple[ExtensionDescriptor, ...]
) -> bool:
    if len(a) != len(b):
        return False
    return all(d in b for d in a) and all(d in a for d in b)


class DiscoveryStore:
    """Maps ``namespace/name`` to the descriptors last extracted for it."""

    def __init__(self):
        self._entries: Dict[str, Tuple[ExtensionDescriptor, ...]] = {}

    def put(self, key: str, descriptors: Iterable[ExtensionDescriptor]) -> bool:
        """
        Replace the descriptors of a workload.

        Returns:
            True if the stored set changed
        """
        value = tuple(descriptors)
        previous = self._entries.get(key)
        self._entries[key] = value
        return previous is None or not _same_descriptors(previous, value)

    def delete(self, key: str) -> bool:
        """
        Forget a workload.

        Returns:
            True if the workload was present
        """
        return self._entries.pop(key, None) is not None

    def get(self, key: str) -> Tuple[ExtensionDescriptor, ...]:
        return self._entries.get(key, ())

    def snapshot(self) -> List[ExtensionDescriptor]:
        """Return all desired descriptors, concatenated across workloads."""
        entries = self._entries.copy()
        result: List[ExtensionDescriptor] = []
        for descriptors in entries.values():
            result.extend(descriptors)
        return result

    def keys(self) -> List[str]:
        return list(self._entries.copy())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries
