import asyncio
import contextlib
import logging
import os

import psycopg2
from dotenv import load_dotenv
from fastapi import FastAPI

from . import app_context
from .app.billing.config import load_database_config
from .app.routes.billing import router as billing_router
from .app.services.billing import get_billing_components, handle_webhook_payload
from .event_queue import EventQueue, LoggingDeadLetterSink, PostgresDeadLetterSink, create_dead_letter_pool

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

DB_CONFIG = load_database_config()

logger = logging.getLogger("billing")


def get_conn():
    return psycopg2.connect(**DB_CONFIG.psycopg2_kwargs())


app_context.configure(get_conn=get_conn)

app = FastAPI(title="Kill Bill Billing Bridge")

app.include_router(billing_router)


@app.get("/healthz")
def healthz():
    return {"status": "ok"}


@app.on_event("startup")
async def setup_billing_events() -> None:
    loop = asyncio.get_running_loop()
    settings = get_billing_components().settings
    pool = await create_dead_letter_pool(DB_CONFIG, enabled=settings.dead_letters_enabled)
    dead_letters = PostgresDeadLetterSink(pool) if pool is not None else LoggingDeadLetterSink()
    queue = EventQueue(
        handle_webhook_payload,
        loop=loop,
        dead_letters=dead_letters,
        event_logger=get_billing_components().event_logger,
        max_retries=settings.event_max_retries,
        backoff_seconds=settings.event_retry_backoff_seconds,
    )
    app.state.billing_dead_letter_pool = pool
    app.state.billing_event_queue = queue
    app.state.billing_event_task = asyncio.create_task(queue.run())
    logger.info("Billing event queue started", extra={"dead_letters": pool is not None})


@app.on_event("shutdown")
async def teardown_billing_events() -> None:
    task = getattr(app.state, "billing_event_task", None)
    queue = getattr(app.state, "billing_event_queue", None)
    pool = getattr(app.state, "billing_dead_letter_pool", None)

    if queue:
        queue.close()

    if task:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    if queue:
        await queue.flush()

    if pool:
        await pool.close()
