"""Replica entry point."""

import asyncio
import os
import sys
from pathlib import Path

from common.conflict_log import ConflictRepository
from common.logging_config import setup_logging
from common.retry_queue import PendingOperationRepository, RetryQueue
from replica.config import Config, DEFAULT_CONFIG_PATH
from replica.coordinator import ReplicaCoordinator
from replica.local_store import LocalStore
from replica.transport import HttpTransport


def build_replica(config: Config, actor_id: str = "local") -> ReplicaCoordinator:
    """
    Wire a replica coordinator from configuration.

    Args:
        config: Replica configuration
        actor_id: Identity used for local watermarks

    Returns:
        Unstarted ReplicaCoordinator
    """
    db_path = config.get_database_path()
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    store = LocalStore(db_path)
    retry_queue = RetryQueue(PendingOperationRepository(db_path))

    return ReplicaCoordinator(
        store=store,
        transport=HttpTransport(config),
        retry_queue=retry_queue,
        conflicts=ConflictRepository(db_path),
        actor_id=actor_id,
        collections=config.get_collections(),
        conflict_policy=config.get_conflict_policy(),
        auto_sync_interval=config.get_auto_sync_interval(),
        debounce_seconds=config.get_debounce_seconds(),
    )


async def run(replica: ReplicaCoordinator, once: bool) -> None:
    if once:
        try:
            await replica.sync_all()
        finally:
            await replica.transport.close()
        return

    await replica.start()
    try:
        await replica.sync_all()
        while True:
            await asyncio.sleep(3600)
    finally:
        await replica.stop()
        await replica.transport.close()


def main() -> None:
    """Entry point for a headless replica."""
    log_level = 'DEBUG' if '--debug' in sys.argv else os.getenv('DOCSYNC_LOG_LEVEL', 'INFO')

    logger = setup_logging('replica', log_level=log_level)

    once = '--once' in sys.argv
    config_path = Path(os.getenv('DOCSYNC_REPLICA_CONFIG', str(DEFAULT_CONFIG_PATH)))
    config = Config(config_path)

    logger.info(f"Replica starting [config={config_path}, once={once}]")
    replica = build_replica(config, actor_id=os.getenv('DOCSYNC_ACTOR_ID', 'local'))
    replica.state.subscribe(lambda state: logger.debug(f"Sync state: {state}"), replay=False)

    try:
        asyncio.run(run(replica, once))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except Exception as e:
        logger.error(f"Replica error: {e}", exc_info=True)
        raise
    finally:
        logger.info("Replica exiting")


if __name__ == "__main__":
    main()
