from __future__ import annotations

import argparse
import asyncio
import logging
import random
import time

import httpx

from opentelemetry import trace

from storyflow.core.telemetry import configure_logging, setup_worker_telemetry, shutdown_worker_telemetry
from storyflow.workers.config import WorkerSettings, get_settings
from storyflow.workers.jobs.executor import execute_generation
from storyflow.workers.services.generation_client import GenerationClient
from storyflow.workers.services.queue_client import QueueClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def build_clients(settings: WorkerSettings) -> tuple[QueueClient, GenerationClient]:
    queue_client = QueueClient(
        base_url=settings.api_base_url,
        module_id=settings.module_id,
        api_key=settings.api_key,
        worker_id=settings.worker_id,
    )
    generation_client = GenerationClient(
        settings.generation_base_url,
        api_key=settings.generation_api_key,
        timeout_seconds=settings.generation_timeout_seconds,
    )
    return queue_client, generation_client


async def process_next_batch(
    queue_client: QueueClient,
    generation_client: GenerationClient,
    *,
    limit: int,
) -> int:
    items = await queue_client.claim_next(limit=limit)
    for item in items:
        with tracer.start_as_current_span("worker.process_item") as item_span:
            item_span.set_attribute("queue_item.id", item["id"])
            item_span.set_attribute("queue_item.attempts", item["attempts"])
            try:
                outcome = await execute_generation(item, generation_client)
            except Exception as exc:
                logger.exception("generation raised for queue_item_id=%s", item["id"])
                outcome = {
                    "status": "failed",
                    "error": {"code": "worker_exception", "message": str(exc), "transient": True},
                }

            try:
                result = await queue_client.submit_result(item["id"], outcome)
            except httpx.HTTPStatusError as exc:
                # Cancelled or reassigned while generating.
                item_span.set_attribute("queue_item.outcome", "rejected")
                logger.warning(
                    "result rejected for queue item id=%s status=%s",
                    item["id"],
                    exc.response.status_code,
                )
                continue
            item_span.set_attribute("queue_item.outcome", result["outcome"])
            logger.info(
                "processed queue item id=%s attempts=%s outcome=%s",
                item["id"],
                item["attempts"],
                result["outcome"],
            )
    return len(items)


async def run_worker(*, once: bool = False) -> None:
    settings = get_settings()
    configure_logging()
    telemetry_runtime = setup_worker_telemetry(settings)
    queue_client, generation_client = build_clients(settings)

    backoff = settings.poll_interval_seconds
    last_stall_reset_at = 0.0

    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    now = time.monotonic()
                    if now - last_stall_reset_at >= settings.stall_reset_interval_seconds:
                        counts = await queue_client.reset_stalled(limit=settings.stall_reset_batch_size)
                        if counts["reset"] or counts["failed"]:
                            logger.info("reset stalled items reset=%s failed=%s", counts["reset"], counts["failed"])
                        last_stall_reset_at = now

                    processed = await process_next_batch(
                        queue_client,
                        generation_client,
                        limit=settings.batch_size,
                    )
                    backoff = settings.poll_interval_seconds
                    if once:
                        return
                    if not processed:
                        await asyncio.sleep(settings.poll_interval_seconds)
            except Exception as exc:  # pragma: no cover - bootstrap robustness
                if once:
                    raise
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        shutdown_worker_telemetry(telemetry_runtime)


def main() -> None:
    parser = argparse.ArgumentParser(description="Process the storyflow generation queue.")
    parser.add_argument("--once", action="store_true", help="process a single batch and exit")
    args = parser.parse_args()
    asyncio.run(run_worker(once=args.once))


if __name__ == "__main__":
    main()
