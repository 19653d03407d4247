"""
Watch Source Base - Abstract interface for workload event sources.

Watch sources observe the cluster and report pod lifecycle changes:
- Kubernetes API: list + watch of pods and services
- Static sources used by tooling and tests
"""

from abc import ABC, abstractmethod
from typing import List

from models import Pod, Service


class PodEventHandler(ABC):
    """
    Receives pod lifecycle callbacks from a watch source.

    Callbacks are invoked synchronously and must not block; they may run
    concurrently with a reconciliation pass.
    """

    @abstractmethod
    def on_pod_added(self, pod: Pod) -> None:
        """Called when a pod appears."""
        pass

    @abstractmethod
    def on_pod_updated(self, old: Pod, new: Pod) -> None:
        """Called when a known pod changes."""
        pass

    @abstractmethod
    def on_pod_deleted(self, pod: Pod) -> None:
        """Called when a pod disappears."""
        pass


class WatchSource(ABC):
    """
    Abstract base class for watch sources.

    A watch source is first synced once, dispatching every existing pod as
    added, and then watched for the rest of the process lifetime.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this source (e.g., 'kubernetes')."""
        pass

    @abstractmethod
    async def initial_sync(self, handler: PodEventHandler) -> None:
        """
        List the current pods and services.

        Every pod found is dispatched to ``handler.on_pod_added``.

        Args:
            handler: Receiver of pod callbacks
        """
        pass

    @abstractmethod
    async def watch(self, handler: PodEventHandler) -> None:
        """
        Watch for changes until ``stop()`` is called.

        Args:
            handler: Receiver of pod callbacks
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop watching and release connections."""
        pass

    @abstractmethod
    def services_matching_pod(self, pod: Pod) -> List[Service]:
        """
        Return the services in the pod's namespace whose selector matches it.

        Must not block.
        """
        pass
