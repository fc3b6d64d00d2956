import json
import logging
import time
from typing import Any, Optional

import redis
from celery import Celery
from celery.signals import task_failure
from sqlalchemy.exc import SQLAlchemyError

from config import (
    CELERY_ALWAYS_EAGER,
    REDIS_DISABLED,
    REDIS_URL,
    WORKER_DEAD_LETTER_KEY,
    WORKER_TASK_MAX_RETRIES,
    WORKER_TASK_RETRY_DELAY_SECONDS,
)
from observability import get_logger, log_event
from storefront.db import session_scope
from storefront.discord_bot import get_chat_client
from storefront.fulfillment import FulfillmentDispatcher, load_fulfillment_target
from storefront.repository import StoreRepository

_LOGGER = get_logger("storefront.worker")

_USE_REDIS = not (REDIS_DISABLED or CELERY_ALWAYS_EAGER)
_BROKER_URL = REDIS_URL if _USE_REDIS else "memory://"
_BACKEND_URL = REDIS_URL if _USE_REDIS else "cache+memory://"

celery_app = Celery("storefront", broker=_BROKER_URL, backend=_BACKEND_URL)
if not _USE_REDIS:
    celery_app.conf.task_always_eager = True
    celery_app.conf.task_ignore_result = True
celery_app.conf.task_default_retry_delay = WORKER_TASK_RETRY_DELAY_SECONDS
celery_app.conf.task_acks_late = True
celery_app.conf.worker_prefetch_multiplier = 1

redis_client: Optional[redis.Redis] = redis.Redis.from_url(REDIS_URL, decode_responses=True) if _USE_REDIS else None


def _enqueue_dead_letter(
    *,
    task_name: str,
    task_id: Optional[str],
    args: Any,
    kwargs: Any,
    exception: Exception,
    retries: int,
    max_retries: int,
) -> None:
    payload = {
        "task": str(task_name or "unknown"),
        "task_id": str(task_id or ""),
        "args": args,
        "kwargs": kwargs,
        "retries": int(retries),
        "max_retries": int(max_retries),
        "error_type": type(exception).__name__,
        "error_message": str(exception),
        "ts": time.time(),
    }
    serialized = json.dumps(payload, ensure_ascii=False, default=str)
    if redis_client is not None:
        try:
            redis_client.rpush(WORKER_DEAD_LETTER_KEY, serialized)
        except redis.RedisError:
            _LOGGER.exception("failed to enqueue dead letter")
    log_event(_LOGGER, logging.ERROR, "worker.dead_letter", task=payload["task"], task_id=payload["task_id"], error=str(exception))


@task_failure.connect  # type: ignore[misc]
def _handle_task_failure(  # noqa: ANN001
    sender=None,
    task_id=None,
    exception=None,
    args=None,
    kwargs=None,
    einfo=None,  # noqa: ARG001
    **_extras,
) -> None:
    if sender is None or exception is None:
        return
    retries = int(getattr(getattr(sender, "request", None), "retries", 0) or 0)
    sender_max = getattr(sender, "max_retries", None)
    max_retries = WORKER_TASK_MAX_RETRIES if sender_max in {None, -1} else int(sender_max)
    if retries < max_retries:
        return
    _enqueue_dead_letter(
        task_name=str(getattr(sender, "name", "unknown")),
        task_id=str(task_id or ""),
        args=args,
        kwargs=kwargs,
        exception=exception if isinstance(exception, Exception) else RuntimeError(str(exception)),
        retries=retries,
        max_retries=max_retries,
    )


@celery_app.task(
    name="storefront.fulfill_order",
    max_retries=WORKER_TASK_MAX_RETRIES,
    autoretry_for=(SQLAlchemyError,),
    retry_backoff=True,
    retry_jitter=True,
    retry_kwargs={"max_retries": WORKER_TASK_MAX_RETRIES},
)
def fulfill_order(order_id: str) -> dict:
    # The snapshot is taken in its own short session; chat calls run outside it.
    with session_scope() as session:
        target = load_fulfillment_target(StoreRepository(session), order_id)
    outcome = FulfillmentDispatcher(get_chat_client()).fulfill(target)
    return {"order_id": order_id, **outcome}


def enqueue_fulfillment(order_id: str) -> None:
    fulfill_order.delay(order_id)
    log_event(_LOGGER, logging.INFO, "worker.fulfillment_enqueued", order_id=order_id, eager=not _USE_REDIS)
