#!/usr/bin/env python3
"""
Riskmate Export Worker

A dedicated worker process that claims and generates queued exports
(proof packs and ledger exports).

Usage:
    python worker.py [--concurrency=N] [--poll-interval=S] [--compute-roots]

Features:
- Claims exports with the claim_export_job database function (optimistic fallback)
- Retries failed exports up to three attempts before marking them failed
- Optionally computes daily ledger roots once per UTC day
- Graceful shutdown on signals
"""

import asyncio
import logging
import os
import sys
import argparse

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("riskmate.worker")

from riskmate.export_worker import ExportWorker


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").lower() in ("1", "true", "yes")


def main():
    """Main entry point for the worker."""
    parser = argparse.ArgumentParser(description="Riskmate Export Worker")
    parser.add_argument(
        "--concurrency", "-c",
        type=int,
        default=int(os.environ.get("WORKER_CONCURRENCY", "3")),
        help="Number of exports to process concurrently (default: 3)"
    )
    parser.add_argument(
        "--poll-interval", "-p",
        type=float,
        default=float(os.environ.get("WORKER_POLL_INTERVAL", "5.0")),
        help="Seconds between queue polls (default: 5.0)"
    )
    parser.add_argument(
        "--compute-roots",
        action="store_true",
        default=_env_flag("WORKER_COMPUTE_ROOTS"),
        help="Also compute daily ledger roots once per UTC day"
    )
    parser.add_argument(
        "--worker-id",
        type=str,
        default=os.environ.get("WORKER_ID"),
        help="Unique worker identifier (default: auto-generated)"
    )

    args = parser.parse_args()

    if args.concurrency < 1:
        logger.error("Concurrency must be at least 1")
        sys.exit(1)

    worker = ExportWorker(
        worker_id=args.worker_id,
        concurrency=args.concurrency,
        poll_interval=args.poll_interval,
        compute_roots=args.compute_roots
    )

    try:
        asyncio.run(worker.start())
    except KeyboardInterrupt:
        logger.info("Worker interrupted")

    logger.info("Worker stopped")


if __name__ == "__main__":
    main()
