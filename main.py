#!/usr/bin/env python3
import asyncio
import logging
import signal
import sys
import uvicorn
from contextlib import asynccontextmanager

from newsagg.utils.config import get_config
from newsagg.scheduler import NewsScheduler
from newsagg.services import build_services
from newsagg.queue.workers import build_worker_pools
from newsagg.web.app import app

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)

scheduler = None


@asynccontextmanager
async def lifespan(app):
    global scheduler
    services = None
    worker_pools = []
    try:
        config = get_config()
        services = build_services(config)
        await services.broker.start()

        worker_pools = build_worker_pools(services)
        for pool in worker_pools:
            await pool.start()

        scheduler = NewsScheduler(config, services)
        scheduler.start()

        app.state.services = services
        app.state.worker_pools = worker_pools
        app.state.scheduler = scheduler
        logger.info("News Aggregator started successfully")
        yield
    except Exception as e:
        logger.error(f"Error starting application: {e}")
        raise
    finally:
        if scheduler:
            scheduler.shutdown()
        if services:
            drain_timeout = services.config.get('workers.drain_timeout_seconds', 30)
            await asyncio.gather(*(pool.stop(drain_timeout) for pool in worker_pools))
            await services.broker.close()
        logger.info("News Aggregator shut down")

app.router.lifespan_context = lifespan


def signal_handler(signum, frame):
    logger.info(f"Received signal {signum}, shutting down...")
    if scheduler:
        scheduler.shutdown()
    sys.exit(0)


def main():
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        config = get_config()
        web_config = config.get_web_config()

        host = web_config.get('host', '127.0.0.1')
        port = web_config.get('port', 8000)
        reload = web_config.get('reload', False)

        logger.info(f"Starting News Aggregator on {host}:{port}")

        uvicorn.run(
            "main:app",
            host=host,
            port=port,
            reload=reload,
            log_level="info"
        )

    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down...")
    except Exception as e:
        logger.error(f"Error running application: {e}")
        sys.exit(1)

if __name__ == "__main__":
    main()
