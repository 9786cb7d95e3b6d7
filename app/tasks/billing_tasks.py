import asyncio
import inspect
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Coroutine, Optional, cast

from celery import shared_task
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from app.modules.billing.domain.billing.trial_reconciliation import TrialReconciliationJob
from app.shared.core.http import close_http_client, init_http_client
from app.shared.core.notifications import NotificationCollaborator, get_notifier
from app.shared.core.provisioning import (
    ProvisioningCollaborator,
    get_provisioning_client,
)
from app.shared.db.session import async_session_maker, get_engine

logger = structlog.get_logger()

@asynccontextmanager
async def _open_db_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_maker() as session:
        yield session


def run_async(task_or_coro: Any, *args: Any, **kwargs: Any) -> Any:
    """
    Run an async callable/coroutine from sync Celery code.

    Supported call patterns:
    - run_async(coroutine)
    - run_async(callable, *args, **kwargs)
    """
    if asyncio.iscoroutine(task_or_coro) or inspect.isawaitable(task_or_coro):
        return asyncio.run(cast(Coroutine[Any, Any, Any], task_or_coro))

    if callable(task_or_coro):
        return asyncio.run(task_or_coro(*args, **kwargs))

    raise TypeError("run_async expects an awaitable or a callable async function")


async def expire_trials_once(
    provisioning: Optional[ProvisioningCollaborator] = None,
    notifier: Optional[NotificationCollaborator] = None,
    *,
    dispose_engine: bool = True,
) -> dict[str, Any]:
    """
    One reconciliation sweep in a fresh event loop. The HTTP pool and the
    engine's connections are bound to that loop, so both are torn down here.
    """
    await init_http_client()
    try:
        async with _open_db_session() as db:
            job = TrialReconciliationJob(
                db,
                provisioning or get_provisioning_client(),
                notifier or get_notifier(),
            )
            summary = await job.run()
    finally:
        await close_http_client()
        if dispose_engine:
            await get_engine().dispose()
    return summary.as_dict()


@shared_task(
    name="billing.expire_trials",
    autoretry_for=(Exception,),
    retry_kwargs={"max_retries": 3, "countdown": 30},
    retry_backoff=True,
)  # type: ignore[untyped-decorator]
def expire_trials() -> dict[str, Any]:
    """Celery beat entrypoint for the trial reconciliation sweep."""
    result = run_async(expire_trials_once)
    logger.info(
        "trial_reconciliation_task_completed",
        processed_count=result["processed_count"],
        candidates=result["candidates"],
    )
    return result
