#!/usr/bin/env python3
"""
RQ Worker for the notification pipeline.

Listens on the destination's priority queues (high, normal, low) with the RQ
scheduler enabled, so retries deferred with enqueue_in are released on time.
Jobs run in this process (SimpleWorker), so the email circuit breaker sees
every delivery.

Usage:
    python -m notification.worker
    python -m notification.worker --burst
    python -m notification.worker --verbose --config config.yaml
"""

import sys
import argparse
import logging
from typing import Optional

from redis.exceptions import RedisError

from core.app_context import AppContext, set_app_context
from core.config_loader import load_config
from notification.rq_transport import RqTransport, queue_names

logger = logging.getLogger(__name__)


def start_worker(config_path: str = "config.yaml", burst: bool = False, destination: Optional[str] = None) -> int:
    """Build the app context and run the worker. Returns a process exit code."""
    config = load_config(config_path)
    if config.queue.backend != "rq":
        logger.error(f"Worker requires queue.backend 'rq', got '{config.queue.backend}'")
        return 1

    destination = destination or config.queue.destination

    logger.info("Starting RQ Worker")
    logger.info(f"Redis URL: {config.queue.redis_url}")
    logger.info(f"Queues: {', '.join(queue_names(destination))}")
    logger.info(f"Burst mode: {burst}")

    try:
        ctx = AppContext.build(config)
        set_app_context(ctx)
        transport: RqTransport = ctx.transport
        if burst:
            logger.info("Running in burst mode...")
        else:
            logger.info("Worker started. Press Ctrl+C to stop.")
        transport.consume(destination, ctx.orchestrator.handle_delivery, burst=burst)
    except KeyboardInterrupt:
        logger.info("Worker stopped")
    except RedisError as e:
        logger.error(f"Redis error: {e}")
        return 1
    finally:
        set_app_context(None)
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description='Notification delivery worker')
    parser.add_argument('--burst', action='store_true', help='Process all and exit')
    parser.add_argument('--config', default='config.yaml', help='Path to config.yaml')
    parser.add_argument('--destination', default=None, help='Override queue destination')
    parser.add_argument('--verbose', action='store_true')

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    return start_worker(config_path=args.config, burst=args.burst, destination=args.destination)


if __name__ == '__main__':
    sys.exit(main())
