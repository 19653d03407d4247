"""
Auto-registration - Keeps the discovery store in step with pod events.

Each pod callback re-extracts the pod's descriptors and replaces or removes
its entry in the discovery store. Real changes notify the sync scheduler;
the callbacks never wait for a reconciliation pass.
"""

import logging
from typing import Callable, List

from extractor import ExtensionExtractor
from models import ExtensionDescriptor, Pod, Service
from store import DiscoveryStore
from watch.base import PodEventHandler

logger = logging.getLogger(__name__)

ServiceLookup = Callable[[Pod], List[Service]]
Notifier = Callable[[str], None]


class AutoRegistration(PodEventHandler):
    """
    Pod event handler feeding the discovery store.

    A pod has an entry in the store exactly while it passes the label
    selectors, is running and ready, and yields at least one descriptor.
    """

    def __init__(
        self,
        extractor: ExtensionExtractor,
        store: DiscoveryStore,
        services_matching_pod: ServiceLookup,
        notify: Notifier,
    ):
        self.extractor = extractor
        self.store = store
        self._services_matching_pod = services_matching_pod
        self._notify = notify

    def on_pod_added(self, pod: Pod) -> None:
        logger.debug(f"Pod added: {pod.key}")
        self._refresh(pod)

    def on_pod_updated(self, old: Pod, new: Pod) -> None:
        logger.debug(f"Pod updated: {new.key}")
        self._refresh(new)

    def on_pod_deleted(self, pod: Pod) -> None:
        logger.debug(f"Pod deleted: {pod.key}")
        self._remove(pod)

    def descriptors_for(self, pod: Pod) -> List[ExtensionDescriptor]:
        """Descriptors the pod should currently be registered with."""
        if not pod.is_running_and_ready():
            return []
        return self.extractor.extract(pod, self._services_matching_pod(pod))

    def _refresh(self, pod: Pod) -> None:
        descriptors = self.descriptors_for(pod)
        if not descriptors:
            self._remove(pod)
            return

        if self.store.put(pod.key, descriptors):
            logger.debug(
                f"Adding extension registration for pod {pod.key} "
                f"({len(descriptors)} extensions)"
            )
            self._notify(pod.key)

    def _remove(self, pod: Pod) -> None:
        if self.store.delete(pod.key):
            logger.debug(f"Removing extension registration for pod {pod.key}")
            self._notify(pod.key)
