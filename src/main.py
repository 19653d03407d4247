"""
Main entry point for extension auto-registration.

Wires the watch source, discovery store, reconciler and sync scheduler
together and runs them until the process is signalled.
"""

import asyncio
import logging
import signal
import sys
from typing import Optional

from autoregistration import AutoRegistration
from config import Config, get_config
from extractor import ExtensionExtractor
from reconciler import Reconciler
from registrar import RegistrarClient
from scheduler import SyncScheduler
from store import DiscoveryStore
from watch.base import WatchSource
from watch.kubernetes import KubernetesClient, KubernetesConnection, KubernetesError
from watch.kubernetes import KubernetesWatchSource
from watch.permissions import PermissionDeniedError, require_permissions

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class Application:
    """Main application that orchestrates discovery and registration."""

    def __init__(
        self,
        config: Optional[Config] = None,
        watch_source: Optional[WatchSource] = None,
    ):
        self.config = config or get_config()
        self.store = DiscoveryStore()
        self.watch_source = watch_source
        self.registrar: Optional[RegistrarClient] = None
        self.reconciler: Optional[Reconciler] = None
        self.scheduler: Optional[SyncScheduler] = None
        self.auto_registration: Optional[AutoRegistration] = None
        self.running = False
        self._scheduler_task: Optional[asyncio.Task] = None
        self._watch_task: Optional[asyncio.Task] = None

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing extension auto-registration")

        registrar_config = self.config.registrar
        self.registrar = RegistrarClient(
            base_url=registrar_config.base_url,
            agent_key=registrar_config.agent_key,
            timeout=registrar_config.request_timeout,
        )
        self.reconciler = Reconciler(self.store, self.registrar)
        self.scheduler = SyncScheduler(self.reconciler.reconcile, self.config.sync)

        if self.watch_source is None:
            self.watch_source = await self._create_kubernetes_source()

        discovery = self.config.discovery
        extractor = ExtensionExtractor(
            match_labels=discovery.match_labels,
            match_labels_exclude=discovery.match_labels_exclude,
        )
        self.auto_registration = AutoRegistration(
            extractor=extractor,
            store=self.store,
            services_matching_pod=self.watch_source.services_matching_pod,
            notify=self.scheduler.notify,
        )
        logger.info(f"Agent registry at {self.registrar.url}")

    async def _create_kubernetes_source(self) -> KubernetesWatchSource:
        k8s_config = self.config.kubernetes
        connection = KubernetesConnection.load(k8s_config)
        client = KubernetesClient(
            connection,
            request_timeout=k8s_config.request_timeout,
            log_http_requests=k8s_config.log_http_requests,
        )
        await client.open()
        try:
            version = await client.server_version()
            logger.info(f"Cluster connected! Kubernetes server version {version}")
            await require_permissions(client, self.config.discovery.namespace_filter)
        except Exception:
            await client.close()
            raise
        return KubernetesWatchSource(
            client,
            namespace=self.config.discovery.namespace_filter,
            watch_timeout=k8s_config.watch_timeout,
        )

    async def start(self):
        """Start the application."""
        if self.scheduler is None:
            await self.initialize()

        self.running = True
        initial_delay = self.config.sync.initial_delay
        if initial_delay > 0:
            logger.info(f"Initial delay of {initial_delay}s before starting discovery")
            await asyncio.sleep(initial_delay)
            if not self.running:
                logger.info("Stopped during initial delay")
                return

        self._scheduler_task = asyncio.create_task(self.scheduler.start())

        await self.watch_source.initial_sync(self.auto_registration)
        # Registrations left over from a previous run are cleaned up even
        # when no pod is annotated
        self.scheduler.notify("startup")

        self._watch_task = asyncio.create_task(
            self.watch_source.watch(self.auto_registration)
        )

        try:
            await asyncio.gather(self._scheduler_task, self._watch_task)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running:
            return
        logger.info("Stopping extension auto-registration")
        self.running = False

        if self.scheduler:
            await self.scheduler.stop()
        if self.watch_source:
            await self.watch_source.stop()

        # The scheduler finishes its current pass; the watch is cancelled
        if self._watch_task and not self._watch_task.done():
            self._watch_task.cancel()

        logger.info("Extension auto-registration stopped")


async def main():
    """Main entry point."""
    try:
        config = get_config()
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)
    logging.getLogger().setLevel(config.logging.level)

    app = Application(config)

    try:
        await app.initialize()
    except (KubernetesError, PermissionDeniedError) as e:
        logger.error(f"{e.message}. Exit now.")
        sys.exit(1)
    except OSError as e:
        logger.error(f"Could not set up the Kubernetes client: {e}. Exit now.")
        sys.exit(1)

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except KubernetesError as e:
        logger.error(f"Kubernetes initial sync failed: {e.message}. Exit now.")
        sys.exit(1)
    finally:
        await app.stop()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
