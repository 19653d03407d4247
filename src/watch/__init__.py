"""
Workload watch sources.

A watch source delivers pod lifecycle callbacks to a ``PodEventHandler`` and
answers which services in a pod's namespace select it.
"""

from watch.base import PodEventHandler, WatchSource

__all__ = ["PodEventHandler", "WatchSource"]
