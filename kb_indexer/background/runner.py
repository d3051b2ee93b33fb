"""
Stand-alone indexing worker process.

    python -m kb_indexer.background.runner
"""
import signal
import asyncio
import logging

from kb_indexer.dependencies import build_indexing_worker
from kb_indexer.utils.logger import setup_logging

logger = logging.getLogger(__name__)


async def main():
    worker = build_indexing_worker()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, worker.stop)
        except NotImplementedError:
            # Windows event loops do not support signal handlers
            pass
    await worker.run_forever()


def run():
    setup_logging()
    asyncio.run(main())


if __name__ == "__main__":
    run()
