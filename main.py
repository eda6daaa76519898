"""
LearnHub Materials - Entry Point

Commands:
    uv run main.py api      # Start the API server (runs the worker too)
    uv run main.py worker   # Run the queue worker on its own
    uv run main.py status   # Print queue and worker statistics
"""

import argparse
import asyncio
import json

from learnhub.logging_config import logger


def run_api_command(args):
    """Start the API server."""
    from learnhub.api import start_server

    start_server(port=args.port)


async def _run_worker():
    from learnhub.container import Container

    services = Container.build()
    await services.startup()
    try:
        await services.worker.run_forever()
    finally:
        await services.shutdown()


def run_worker_command(args):
    """Run the queue worker until SIGINT/SIGTERM."""
    logger.info("🚀 Starting queue worker...")
    asyncio.run(_run_worker())
    logger.info("Graceful shutdown complete")


async def _collect_status() -> dict:
    from learnhub.container import Container

    services = Container.build()
    await services.db.init()
    try:
        return {
            "queue": await services.queue.stats(),
            "materials": await services.repository.counts(),
        }
    finally:
        await services.db.dispose()


def run_status_command(args):
    """Print queue and material statistics."""
    print(json.dumps(asyncio.run(_collect_status()), indent=2))


def main():
    parser = argparse.ArgumentParser(
        description="LearnHub material ingestion & RAG API",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    api_parser = subparsers.add_parser("api", help="Start the API server")
    api_parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to run the API server on (default: 8000)",
    )

    subparsers.add_parser("worker", help="Run the queue worker")
    subparsers.add_parser("status", help="Show queue statistics")

    args = parser.parse_args()

    if args.command == "api":
        run_api_command(args)
    elif args.command == "worker":
        run_worker_command(args)
    elif args.command == "status":
        run_status_command(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
