"""
Main entry point for Quorum-DNS.
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Dict, List

from quorum_dns import __version__
from quorum_dns.config.config import Config
from quorum_dns.controller.controller import Controller, DNSRecordReconciler
from quorum_dns.controller.healthchecks import FileHealthCheckSource
from quorum_dns.controller.reconciler import DELEGATION_ROLE_SECONDARY
from quorum_dns.controller.remote import RemoteDNSRecordReconciler
from quorum_dns.provider.inmemory import InMemoryClient, InMemoryProvider
from quorum_dns.provider.provider import Provider
from quorum_dns.store.record_store import InMemoryRecordStore, RecordStore
from quorum_dns.store.records_file import load_records, seed_store
from quorum_dns.utils.health import HealthCheckServer


def build_provider(config: Config) -> Provider:
    """
    Create the DNS provider named in the configuration.

    Args:
        config: Loaded configuration

    Returns:
        Provider: The provider

    Raises:
        ValueError: If the provider is unknown
    """
    if config.provider == InMemoryProvider.name:
        return InMemoryProvider(InMemoryClient(config.zones))
    raise ValueError(f"unknown provider {config.provider}")


def reconciler_options(config: Config) -> dict:
    return {
        "timing": config.to_timing(),
        "txt_prefix": config.txt_prefix,
        "txt_wildcard_replacement": config.txt_wildcard_replacement,
        "encrypt_txt": config.encrypt_txt,
        "encryption_key": config.encryption_key,
        "group": config.group,
        "nameservers": config.nameservers,
        "health_checks": FileHealthCheckSource(config.health_checks_file) if config.health_checks_file else None,
    }


async def build_remote_stores(config: Config) -> Dict[str, RecordStore]:
    stores: Dict[str, RecordStore] = {}
    for cluster_id, records_file in config.remote_clusters.items():
        store = InMemoryRecordStore(name=cluster_id)
        await seed_store(store, load_records(records_file))
        stores[cluster_id] = store
    return stores


async def main():
    """Main entry point running all components concurrently."""
    # Setup logging
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    logger = logging.getLogger("quorum-dns")
    logger.info(f"Starting Quorum-DNS v{__version__}")

    # Load configuration
    config_path = Path(sys.argv[1]) if len(sys.argv) > 1 else None
    config = Config.from_yaml(config_path)

    # Set log level from configuration
    log_level = getattr(logging, config.log_level.upper(), logging.INFO)
    logging.getLogger().setLevel(log_level)
    # dnspython is chatty at debug level
    logging.getLogger("dns").setLevel(logging.DEBUG if log_level == logging.DEBUG else logging.WARNING)

    # Initialize components
    provider = build_provider(config)
    options = reconciler_options(config)

    store = InMemoryRecordStore(name=config.cluster_id)
    if config.records_file:
        await seed_store(store, load_records(config.records_file))
    remote_stores = await build_remote_stores(config)

    reconciler = DNSRecordReconciler(store, provider, delegation_role=config.delegation_role, **options)
    controller = Controller(reconciler.reconcile, workers=config.workers, name="controller")
    controller.watch(store)
    controllers: List[Controller] = [controller]

    if remote_stores and reconciler.is_primary():
        remote = RemoteDNSRecordReconciler(config.cluster_id, remote_stores, store, provider, **options)
        remote_controller = Controller(remote.reconcile, workers=config.workers, name="controller.remote")
        for cluster_id, remote_store in remote_stores.items():
            remote_controller.watch(
                remote_store,
                lambda record, cluster_id=cluster_id: (cluster_id, record.namespace, record.name),
            )
        controllers.append(remote_controller)

    # Peer clusters run in process, each driving its own records as a secondary
    for cluster_id, remote_store in remote_stores.items():
        peer = DNSRecordReconciler(remote_store, provider, delegation_role=DELEGATION_ROLE_SECONDARY, **options)
        peer_controller = Controller(peer.reconcile, workers=1, name=f"controller.peer.{cluster_id}")
        peer_controller.watch(remote_store)
        controllers.append(peer_controller)

    # Start health check server
    health_server = HealthCheckServer(
        config.health_host, config.health_port, store=store, loop=asyncio.get_running_loop()
    )
    health_server.start()

    try:
        logger.debug(f"Starting {len(controllers)} controllers")
        await asyncio.gather(*(c.run() for c in controllers))
    finally:
        for c in controllers:
            await c.stop()
        # Stop health check server
        health_server.stop()


def run():
    """Console script entry point."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nShutting down Quorum-DNS")
        sys.exit(0)


if __name__ == "__main__":
    run()
