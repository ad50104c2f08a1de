#!/usr/bin/env python3
"""
Telemetry Pipeline - Main Orchestrator

Builds and runs every client-side component:
- Collector (psutil on this machine, or the simulated one)
- Batch buffer and pipeline scheduler (tick timer + flush worker)
- Persistence gateway to the remote store, and the quarantine

The Flask store runs separately (server/app.py or server/wsgi.py).

Usage:
    python run_all.py [--simulate] [--config path/to/config.toml]
"""

import argparse
import os
import platform
import signal
import sys
import time

from collectors.local_collector import LocalDataCollector
from collectors.simulated_collector import SimulatedDataCollector
from pipeline.backoff import RetryPolicy
from pipeline.batch_buffer import BatchBuffer
from pipeline.errors import PersistenceError
from pipeline.identity import Identity, IdentityProvider
from pipeline.scheduler import PipelineScheduler
from pipeline.sync_status import SyncStatus
from sharedUtils.config import AppConfig, get_typed_config, reset_config_cache
from sharedUtils.config.loader import CONFIG_ENV_VAR
from sharedUtils.logger.logger import get_logger
from sharedUtils.persistence.manager import build_gateway, build_quarantine

logger = get_logger(__name__)

SHUTDOWN_POLL_INTERVAL_SECONDS = 1  # How often the main loop checks for a stop signal
STATUS_LOG_INTERVAL_SECONDS = 60    # How often the main loop logs the sync status

running = True


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Sample this machine and persist batches to the telemetry store")
    parser.add_argument("--simulate", action="store_true", help="Use the deterministic simulated collector")
    parser.add_argument("--config", help="Path to an alternative config.toml")
    return parser.parse_args(argv)


def build_collector(config: AppConfig, simulate: bool):
    """Create the collector named by the config (or --simulate)."""
    settings = config.collector
    kwargs = {
        "interval_seconds": settings.tick_interval,
        "precision": settings.metric_precision,
        "max_rate": settings.max_network_rate,
    }
    if simulate or settings.simulate:
        logger.info("Using SimulatedDataCollector for device %s", settings.device_id)
        return SimulatedDataCollector(device_id=settings.device_id, seed=None, **kwargs)

    logger.info("Using LocalDataCollector for device %s (disk=%s)", settings.device_id, settings.disk_path)
    return LocalDataCollector(device_id=settings.device_id, disk_path=settings.disk_path, **kwargs)


def build_identity_provider(config: AppConfig) -> IdentityProvider:
    settings = config.identity
    if settings.user_id and settings.access_token:
        identity = Identity(user_id=settings.user_id, access_token=settings.access_token,
                            device_id=config.collector.device_id)
        logger.info("Headless identity: user %s", identity.user_id)
        return IdentityProvider(identity)

    logger.warning("No [identity] configured - pipeline stays idle until a login")
    return IdentityProvider()


def register_device(gateway, identity_provider: IdentityProvider, device_id: str) -> None:
    """Register this machine with the store; failures are logged, not fatal."""
    identity = identity_provider.current()
    if identity is None:
        return
    try:
        device = gateway.register_device(
            identity,
            device_id=device_id,
            device_name=platform.node() or device_id,
            device_type="desktop",
            os_name=platform.system(),
        )
        logger.info("Device registered: %s", device)
    except PersistenceError as e:
        logger.error("Device registration failed: %s", e)


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    global running
    _ = signum, frame  # Unused but required by signal.signal
    logger.info("")
    logger.info("Received shutdown signal. Stopping...")
    running = False


def wait_for_shutdown(status: SyncStatus) -> None:
    """Block until a stop signal, logging the status now and then."""
    last_report = time.monotonic()
    try:
        while running:
            time.sleep(SHUTDOWN_POLL_INTERVAL_SECONDS)
            if time.monotonic() - last_report >= STATUS_LOG_INTERVAL_SECONDS:
                last_report = time.monotonic()
                snapshot = status.snapshot()
                logger.info("Status: state=%s collected=%d saved=%d pending=%d errors=%d",
                            snapshot["state"], snapshot["total_collected"], snapshot["total_saved"],
                            snapshot["pending_batches"], snapshot["total_errors"])
    except KeyboardInterrupt:
        logger.info("")
        logger.info("Interrupted by user")


def main(argv=None):
    """Main entry point."""
    args = parse_args(argv)
    if args.config:
        os.environ[CONFIG_ENV_VAR] = args.config
        reset_config_cache()

    logger.info("=" * 60)
    logger.info("Telemetry Pipeline - Starting All Components")
    logger.info("=" * 60)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    config = get_typed_config()
    quarantine = build_quarantine(config.persistence)
    scheduler = None

    try:
        with build_gateway(config.persistence) as gateway:
            # Step 1: Check the store is reachable
            if gateway.check_connection():
                logger.info("✓ Store reachable at %s", config.persistence.api_endpoint)
            else:
                logger.warning("✗ Store unreachable at %s - batches will be retried",
                               config.persistence.api_endpoint)

            # Step 2: Identity and device registration
            identity_provider = build_identity_provider(config)
            register_device(gateway, identity_provider, config.collector.device_id)

            # Step 3: Assemble and start the pipeline
            status = SyncStatus(realtime_window=config.scheduler.realtime_window)
            scheduler = PipelineScheduler(
                collector=build_collector(config, args.simulate),
                buffer=BatchBuffer(
                    max_batch_size=config.batch_buffer.max_batch_size,
                    max_batch_age=config.batch_buffer.max_batch_age,
                    max_buffer_samples=config.batch_buffer.max_buffer_samples,
                ),
                gateway=gateway,
                identity_provider=identity_provider,
                quarantine=quarantine,
                retry_policy=RetryPolicy(
                    base=config.scheduler.retry_base,
                    cap=config.scheduler.retry_cap,
                    jitter=config.scheduler.retry_jitter,
                    max_attempts=config.scheduler.max_retry_attempts,
                ),
                status=status,
                tick_interval=config.collector.tick_interval,
                connectivity_grace_period=config.scheduler.connectivity_grace_period,
                shutdown_timeout=config.scheduler.shutdown_timeout,
                flush_on_anomaly=config.collector.flush_on_anomaly,
            )
            scheduler.start()

            logger.info("✓ All components initialized successfully")
            logger.info("Press Ctrl+C to stop")

            wait_for_shutdown(status)

            # Step 4: Final flush while the gateway is still open
            logger.info("Stopping pipeline...")
            if scheduler.stop():
                logger.info("✓ All buffered samples delivered")
            else:
                logger.warning("Some batches were not delivered; see the quarantine (%d entries)",
                               quarantine.count())

    except Exception as e:
        logger.error("Fatal error: %s", e, exc_info=True)
        if scheduler is not None:
            scheduler.stop()
        return 1
    finally:
        quarantine.close()
        logger.info("Shutdown complete")

    return 0


if __name__ == "__main__":
    sys.exit(main())
