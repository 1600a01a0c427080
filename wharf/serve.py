"""wharf daemon — orchestrator and HTTP API running together."""

from __future__ import annotations

import asyncio
import logging

import uvicorn

from wharf.api.app import api_app, configure
from wharf.config import settings
from wharf.events.bus import EventBus
from wharf.storage.store import WorkloadStore
from wharf.workloads.orchestrator import WorkloadOrchestrator

_logger = logging.getLogger(__name__)


def setup_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )


async def _reconcile(orchestrator: WorkloadOrchestrator) -> None:
    results = await orchestrator.reconcile_on_startup()
    for workload_id, result in results.items():
        if result.success:
            _logger.info("Restored workload %s", workload_id)
        else:
            _logger.warning("Could not restore workload %s: %s", workload_id, result.error)


async def main(host: str | None = None, port: int | None = None) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.servers_dir.mkdir(parents=True, exist_ok=True)

    event_bus = EventBus()
    store = WorkloadStore(settings.db_path)
    await store.initialize()

    orchestrator = WorkloadOrchestrator(store=store, event_bus=event_bus)
    await orchestrator.initialize()

    configure(orchestrator=orchestrator, event_bus=event_bus)

    # Bring back what was running last time, without holding up the API
    reconcile_task = asyncio.create_task(_reconcile(orchestrator))

    config = uvicorn.Config(
        api_app,
        host=host or settings.api_host,
        port=port or settings.api_port,
        log_level="warning",
    )
    server = uvicorn.Server(config)
    try:
        await server.serve()
    finally:
        reconcile_task.cancel()
        await orchestrator.shutdown()
        configure()
        await store.close()


if __name__ == "__main__":
    setup_logging()
    asyncio.run(main())
