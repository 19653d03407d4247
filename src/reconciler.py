"""
Reconciler - Brings the agent's registrations in line with discovery.

Each pass refetches the agent's registrations, diffs them against a snapshot
of the discovery store and issues the deletes and adds that close the gap.
Nothing is remembered between passes, so a retried pass only repeats what
is still outstanding.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import List, Sequence, Tuple

from models import ExtensionDescriptor
from registrar import RegistrarClient, RegistrarError
from store import DiscoveryStore

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Result of one reconciliation pass."""

    success: bool = False
    message: str = ""
    added: int = 0
    deleted: int = 0
    errors: List[Exception] = field(default_factory=list)


def compute_delta(
    local: Sequence[ExtensionDescriptor], remote: Sequence[ExtensionDescriptor]
) -> Tuple[List[ExtensionDescriptor], List[ExtensionDescriptor]]:
    """
    Diff desired against registered descriptors.

    Returns:
        Tuple of (to_delete, to_add). Remote entries without an equal local
        entry are deleted; local entries without an equal remote entry are
        added, each at most once.
    """
    to_delete = [r for r in remote if r not in local]
    to_add: List[ExtensionDescriptor] = []
    for descriptor in local:
        if descriptor not in remote and descriptor not in to_add:
            to_add.append(descriptor)
    return to_delete, to_add


class Reconciler:
    """Applies the difference between the discovery store and the agent."""

    def __init__(self, store: DiscoveryStore, registrar: RegistrarClient):
        self.store = store
        self.registrar = registrar

    async def reconcile(self) -> ReconcileResult:
        """
        Run one reconciliation pass.

        Deletes are issued before adds. A failing call does not stop the
        others; all failures are collected into the result.
        """
        result = ReconcileResult()
        start_time = time.monotonic()

        try:
            remote = await self.registrar.list_extensions()
        except RegistrarError as e:
            logger.error(f"Skipping reconciliation: {e.message}")
            result.errors.append(e)
            result.message = e.message
            return result

        local = self.store.snapshot()
        to_delete, to_add = compute_delta(local, remote)
        if not to_delete and not to_add:
            logger.debug(
                f"Registrations in sync ({len(remote)} registered, "
                f"{len(local)} discovered)"
            )

        for descriptor in to_delete:
            try:
                await self.registrar.delete_extension(descriptor)
                result.deleted += 1
            except RegistrarError as e:
                logger.error(e.message)
                result.errors.append(e)

        for descriptor in to_add:
            try:
                await self.registrar.add_extension(descriptor)
                result.added += 1
            except RegistrarError as e:
                logger.error(e.message)
                result.errors.append(e)

        duration = time.monotonic() - start_time
        result.success = not result.errors
        if result.success:
            result.message = (
                f"Registrations synced: {result.added} added, "
                f"{result.deleted} removed in {duration:.2f}s"
            )
        else:
            result.message = "; ".join(str(e) for e in result.errors)
        return result
