"""CRM sync orchestrator — pushes verified users to Zoho in the background."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from whatsapp_onboarding.config import settings
from whatsapp_onboarding.database.repository import UserRepository
from whatsapp_onboarding.exceptions import CRMError
from whatsapp_onboarding.models.user import User
from whatsapp_onboarding.services.crm_client import ZohoCRMClient

logger = logging.getLogger(__name__)


class BackgroundTaskRunner:
    """Owns detached ``asyncio`` tasks so they outlive the request that spawned them.

    Strong references are kept until each task finishes; exceptions that
    escape a task are logged, never re-raised.  ``drain`` is called on
    application shutdown.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Background task %s was cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task %s failed", task.get_name(), exc_info=exc
            )

    @property
    def pending_count(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for outstanding tasks; cancel whatever is left after *timeout*."""
        if not self._tasks:
            return
        logger.info("Waiting for %d background task(s)", len(self._tasks))
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


@dataclass(frozen=True)
class SyncTarget:
    """Snapshot of the user fields a sync needs, detached from any DB session."""

    user_id: str
    name: str
    email: str
    phone: str

    @classmethod
    def from_user(cls, user: User) -> SyncTarget:
        return cls(user_id=user.id, name=user.name, email=user.email, phone=user.phone)


class CRMSyncOrchestrator:
    """Best-effort, fire-and-forget synchronisation of users to the CRM.

    The outcome is only ever visible as the user's ``crm_synced`` /
    ``crm_id`` columns and a log line.
    """

    def __init__(
        self,
        crm_client: ZohoCRMClient,
        session_factory: async_sessionmaker[AsyncSession],
        runner: BackgroundTaskRunner,
    ) -> None:
        self._crm = crm_client
        self._session_factory = session_factory
        self._runner = runner

    def schedule(self, user: User) -> asyncio.Task | None:
        """Launch a detached sync for *user* and return immediately."""
        if not settings.crm_sync_enabled:
            logger.debug("CRM sync disabled; skipping user %s", user.id)
            return None
        target = SyncTarget.from_user(user)
        return self._runner.spawn(self._sync(target), name=f"crm-sync-{target.user_id}")

    async def sync_user(self, user: User) -> None:
        """Run one sync to completion in the current task."""
        await self._sync(SyncTarget.from_user(user))

    async def _sync(self, target: SyncTarget) -> None:
        try:
            lead_id = await self._crm.create_lead(
                name=target.name, email=target.email, phone=target.phone
            )
        except CRMError as exc:
            logger.error("Failed to sync user %s to CRM: %s", target.user_id, exc)
            await self._record(target.user_id, crm_id=None)
            return

        await self._record(target.user_id, crm_id=lead_id)
        logger.info("User %s synced to CRM as lead %s", target.user_id, lead_id)

    async def _record(self, user_id: str, crm_id: str | None) -> None:
        async with self._session_factory() as session:
            repo = UserRepository(session)
            user = await repo.find_by_id(user_id)
            if user is None:
                logger.warning("User %s vanished before CRM sync could be recorded", user_id)
                return
            if crm_id is None:
                if user.crm_synced:
                    # A concurrent sync already succeeded; keep its lead id.
                    return
                user.crm_synced = False
            else:
                user.crm_synced = True
                user.crm_id = crm_id
            await repo.save(user)
