import asyncio
import contextlib
import logging
import os
import signal

from . import config, directory, mesh, util
from .endpoint import MeshEndpoint
from .registry import Registry
from .watcher import Watcher


#: The signals that trigger a graceful shutdown
SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


logger = logging.getLogger(__name__)


async def process_events(watcher: Watcher, registry: Registry):
    """
    Feeds the events from the watcher to the registry, one at a time.
    """
    async for event in watcher.watch():
        logger.debug("Received %s event for workload %s", event.kind.name, event.short_id)
        await registry.handle_event(event)


async def run(config_obj: config.DovetailConfig):
    """
    Exposes labelled workloads on the mesh network until interrupted.
    """
    os.makedirs(config_obj.state_dir, mode=0o700, exist_ok=True)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in SHUTDOWN_SIGNALS:
        loop.add_signal_handler(signum, stop.set)

    try:
        async with contextlib.AsyncExitStack() as stack:
            directory_obj = await stack.enter_async_context(directory.load(config_obj))
            provider = await stack.enter_async_context(mesh.load(config_obj))
            watcher = Watcher(directory_obj, config_obj.labels)
            registry = Registry.from_config(
                config_obj,
                MeshEndpoint.factory(provider, config_obj.server)
            )
            # Events are processed until the stream ends or we receive a signal
            done, not_done = await asyncio.wait(
                [
                    asyncio.create_task(process_events(watcher, registry)),
                    asyncio.create_task(stop.wait()),
                ],
                return_when=asyncio.FIRST_COMPLETED,
            )
            if stop.is_set():
                logger.info("Received signal, shutting down")
            for task in not_done:
                await util.task_cancel_and_wait(task)
            # The endpoints are always stopped before the provider and directory are closed
            await registry.shutdown()
            # Raise any exceptions from the completed tasks
            for task in done:
                task.result()
    finally:
        for signum in SHUTDOWN_SIGNALS:
            loop.remove_signal_handler(signum)
    logger.info("dovetail stopped")
