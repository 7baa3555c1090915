"""
Main entry point for the addon controllers.

Builds the local clients, the shared informers and discovery mapper, and
runs the AddonInstance and Shoot controllers until a shutdown signal.
"""

import asyncio
import logging
import signal
from typing import List, Optional

import click
from kubernetes_asyncio import config as kube_config
from kubernetes_asyncio.client import ApiClient, Configuration

from config import Config, get_config
from controller import Controller
from informer import Informer
from instance_controller import InstanceController
from models import (
    ADDON_GROUP,
    ADDON_INSTANCE_PLURAL,
    ADDON_MANIFEST_PLURAL,
    ADDON_VERSION,
    GARDEN_GROUP,
    GARDEN_VERSION,
    SHOOT_PLURAL,
    AddonInstance,
    AddonManifest,
    Shoot,
)
from shoot_controller import ShootController
from target import ClientFactory, DiscoveryRefresher, RESTMapper, TargetResolver

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def build_api_client(kubeconfig: Optional[str], master: Optional[str]) -> ApiClient:
    """Client for the local cluster: explicit kubeconfig, in-cluster, or default."""
    configuration = Configuration()
    if kubeconfig:
        await kube_config.load_kube_config(
            config_file=kubeconfig, client_configuration=configuration
        )
    else:
        try:
            kube_config.load_incluster_config(client_configuration=configuration)
        except kube_config.ConfigException:
            await kube_config.load_kube_config(client_configuration=configuration)

    if master:
        configuration.host = master
    return ApiClient(configuration=configuration)


class Application:
    """Main application that wires informers and controllers together."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self.api_client: Optional[ApiClient] = None
        self.refresher: Optional[DiscoveryRefresher] = None
        self.informers: List[Informer] = []
        self.controllers: List[Controller] = []
        self.stop_event = asyncio.Event()

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing addon controllers")

        kube = self.config.kube
        self.api_client = await build_api_client(kube.kubeconfig, kube.master)

        ctrl_config = self.config.controller

        mapper = RESTMapper(self.api_client)
        self.refresher = DiscoveryRefresher(
            mapper, interval=ctrl_config.discovery_refresh_interval
        )

        def informer(group, version, plural, model):
            return Informer(
                self.api_client,
                group,
                version,
                plural,
                model=model,
                resync_period=ctrl_config.resync_period,
            )

        instances = informer(ADDON_GROUP, ADDON_VERSION, ADDON_INSTANCE_PLURAL, AddonInstance)
        manifests = informer(ADDON_GROUP, ADDON_VERSION, ADDON_MANIFEST_PLURAL, AddonManifest)
        shoots = informer(GARDEN_GROUP, GARDEN_VERSION, SHOOT_PLURAL, Shoot)
        self.informers = [instances, manifests, shoots]

        resolver = TargetResolver(self.api_client, mapper, ClientFactory())
        self.controllers = [
            InstanceController(
                self.api_client, resolver, instances, manifests, config=ctrl_config
            ),
            ShootController(self.api_client, shoots, manifests, config=ctrl_config),
        ]
        logger.info("All components initialized")

    async def _run_controller(self, controller: Controller) -> None:
        try:
            await controller.run(self.config.controller.workers, self.stop_event)
        except Exception as e:
            logger.error(f"Error running {controller.name} controller: {e}")

    async def start(self):
        """Start informers and controllers; returns once stopped."""
        if not self.controllers:
            await self.initialize()

        for informer in self.informers:
            informer.start()
        self.refresher.start()

        await asyncio.gather(*(self._run_controller(c) for c in self.controllers))

    async def stop(self):
        """Stop the application gracefully."""
        logger.info("Stopping addon controllers")
        self.stop_event.set()

    async def close(self):
        for informer in self.informers:
            await informer.stop()
        if self.refresher:
            await self.refresher.stop()
        if self.api_client:
            await self.api_client.close()
        logger.info("Addon controllers stopped")


async def main(config: Optional[Config] = None):
    """Main entry point."""
    app = Application(config)

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    finally:
        await app.close()


@click.command()
@click.option("--kubeconfig", default=None, help="Path to a kubeconfig. Only required if out-of-cluster.")
@click.option("--master", default=None, help="Address of the Kubernetes API server. Overrides the kubeconfig.")
@click.option("--workers", type=int, default=None, help="Workers per controller.")
@click.option("--log-level", default=None, help="Logging level (e.g. INFO, DEBUG).")
def cli(kubeconfig, master, workers, log_level):
    """Run the AddonInstance and Shoot controllers."""
    config = get_config()
    if kubeconfig:
        config.kube.kubeconfig = kubeconfig
    if master:
        config.kube.master = master
    if workers:
        config.controller.workers = workers

    logging.getLogger().setLevel((log_level or config.log_level).upper())
    asyncio.run(main(config))


if __name__ == "__main__":
    cli()
