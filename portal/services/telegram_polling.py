"""Telegram update long-polling manager.

Runs at most one getUpdates loop per bot token in this process, keeps the
update offset, hands every update to a handler in update_id order and
recovers from 409 conflicts raised when another consumer (a second process
or a webhook) holds the feed.

States::

    stopped --start()--> running --stop()--> stopped
    running --409--> conflict_backoff --ok--> running
    conflict_backoff --retry budget exhausted--> stopped

``start()`` deletes a registered webhook before the first getUpdates.
``force_clear()`` can run in any state. It deletes the webhook with
``drop_pending_updates`` and drains the backlog, but never starts the loop.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from portal.config import settings
from portal.logging_config import get_logger
from portal.services.retry import RetryPolicy, constant_delay, exponential_delay
from portal.services.telegram_bot import (
    MAX_UPDATES_PER_REQUEST,
    TelegramBotClient,
    TelegramBotError,
    TelegramConflictError,
    get_bot_client,
)

logger = get_logger(__name__)

UpdateHandler = Callable[[dict[str, Any]], Awaitable[None]]

STATE_STOPPED = "stopped"
STATE_RUNNING = "running"
STATE_CONFLICT_BACKOFF = "conflict_backoff"


@dataclass
class PollingStatus:
    """Read-only snapshot of a polling manager."""

    is_active: bool
    state: str
    offset: int
    last_error: str | None = None
    conflict_count: int = 0
    last_poll_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ForceClearReport:
    """Outcome of a force-clear run."""

    attempts: int = 0
    final_offset: int = 0
    cleared_updates: int = 0
    drained: bool = False
    aborted: bool = False
    webhook_deleted: bool = False
    webhook_info: dict[str, Any] | None = None
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class PollingManager:
    """Owns the polling loop and offset for one bot.

    Control operations (``start``, ``stop``, ``status``, ``force_clear``)
    are safe to call from request handlers while the loop runs. A loop
    iteration (fetch + dispatch + offset advance) and ``force_clear`` hold
    the same lock, so only one of them talks to getUpdates or moves the
    offset at a time.
    """

    def __init__(
        self,
        client: TelegramBotClient,
        handler: UpdateHandler,
        *,
        conflict_policy: RetryPolicy | None = None,
        error_policy: RetryPolicy | None = None,
        clear_policy: RetryPolicy | None = None,
        poll_timeout: int | None = None,
        batch_limit: int = MAX_UPDATES_PER_REQUEST,
    ):
        self._client = client
        self._handler = handler
        self._conflict_policy = conflict_policy or RetryPolicy(
            max_attempts=settings.telegram_conflict_max_retries,
            delay=exponential_delay(settings.telegram_conflict_delay_seconds),
        )
        self._error_policy = error_policy or RetryPolicy(
            max_attempts=None,
            delay=constant_delay(settings.telegram_error_delay_seconds),
        )
        self._clear_policy = clear_policy or RetryPolicy(
            max_attempts=settings.telegram_force_clear_max_attempts,
            delay=constant_delay(settings.telegram_force_clear_delay_seconds),
        )
        self._poll_timeout = (
            client.config.poll_timeout_seconds if poll_timeout is None else poll_timeout
        )
        self._batch_limit = batch_limit

        self._offset = 0
        self._last_error: str | None = None
        self._conflict_count = 0
        self._last_poll_at: datetime | None = None
        self._backing_off = False

        self._task: asyncio.Task | None = None
        self._stop_requested = asyncio.Event()
        self._clear_cancel: asyncio.Event | None = None
        self._lock = asyncio.Lock()
        self._start_lock = asyncio.Lock()

    @property
    def is_active(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def offset(self) -> int:
        return self._offset

    def status(self) -> PollingStatus:
        """Snapshot of the loop state. Never calls the Bot API."""
        if not self.is_active:
            state = STATE_STOPPED
        elif self._backing_off:
            state = STATE_CONFLICT_BACKOFF
        else:
            state = STATE_RUNNING
        return PollingStatus(
            is_active=self.is_active,
            state=state,
            offset=self._offset,
            last_error=self._last_error,
            conflict_count=self._conflict_count,
            last_poll_at=self._last_poll_at,
        )

    async def start(self) -> PollingStatus:
        """Start the loop, or return the current status if it already runs.

        Before the first getUpdates a registered webhook is deleted (with
        its pending updates), since Telegram refuses getUpdates while one
        is set. Calling ``start`` while a stop is pending keeps the existing
        loop running instead of spawning a second one.
        """
        async with self._start_lock:
            if self.is_active:
                if self._stop_requested.is_set():
                    self._stop_requested.clear()
                    logger.info("Telegram polling stop cancelled by start")
                else:
                    logger.info("Telegram polling already active", offset=self._offset)
                return self.status()

            self._stop_requested.clear()
            self._last_error = None
            self._backing_off = False
            await self._release_webhook()
            self._task = asyncio.create_task(self._run(), name="telegram-polling")
            logger.info("Telegram polling starting", offset=self._offset)
            return self.status()

    async def _release_webhook(self) -> None:
        """Delete an active webhook so getUpdates is not answered with 409."""
        try:
            info = await self._client.get_webhook_info()
            if not info.get("url"):
                return
            await self._client.delete_webhook(drop_pending_updates=True)
        except TelegramBotError as e:
            self._last_error = f"webhook: {e}"
            logger.warning("Could not release webhook before polling", error=str(e))
            return
        logger.info(
            "Webhook deleted before polling",
            url=info.get("url"),
            pending_update_count=info.get("pending_update_count", 0),
        )

    async def stop(self, wait: bool = False) -> PollingStatus:
        """Ask the loop to exit after its in-flight request.

        Also aborts a running ``force_clear`` at its next back-off sleep.
        Idempotent.

        Args:
            wait: Await the loop's exit before returning.
        """
        if self._clear_cancel is not None:
            self._clear_cancel.set()

        if not self.is_active:
            return self.status()

        self._stop_requested.set()
        logger.info("Telegram polling stop requested")
        if wait and self._task is not None:
            await self._task
        return self.status()

    async def _run(self) -> None:
        conflicts = 0
        errors = 0
        logger.info("Telegram polling started", offset=self._offset)
        try:
            while not self._stop_requested.is_set():
                try:
                    async with self._lock:
                        if self._stop_requested.is_set():
                            break
                        updates = await self._client.get_updates(
                            offset=self._offset,
                            timeout=self._poll_timeout,
                            limit=self._batch_limit,
                        )
                        self._last_poll_at = datetime.now(UTC)
                        self._backing_off = False
                        conflicts = 0
                        errors = 0
                        if updates:
                            await self._dispatch(updates)
                except TelegramConflictError as e:
                    conflicts += 1
                    self._conflict_count += 1
                    self._last_error = f"conflict: {e.description or e}"
                    if self._conflict_policy.exhausted(conflicts):
                        logger.error(
                            "Telegram polling stopped after repeated conflicts; "
                            "another bot instance is consuming updates",
                            conflicts=conflicts,
                        )
                        break
                    self._backing_off = True
                    delay = self._conflict_policy.delay_for(conflicts)
                    logger.warning(
                        "Telegram getUpdates conflict, backing off",
                        attempt=conflicts,
                        delay_seconds=delay,
                    )
                    await self._wait_or_stop(self._stop_requested, delay)
                except TelegramBotError as e:
                    errors += 1
                    self._last_error = str(e)
                    if self._error_policy.exhausted(errors):
                        logger.error("Telegram polling stopped after repeated errors")
                        break
                    delay = self._error_policy.delay_for(errors)
                    logger.warning(
                        "Telegram polling error",
                        error=str(e),
                        attempt=errors,
                        delay_seconds=delay,
                    )
                    await self._wait_or_stop(self._stop_requested, delay)
                except Exception as e:
                    errors += 1
                    self._last_error = f"unexpected: {e}"
                    logger.exception("Unexpected Telegram polling error")
                    if self._error_policy.exhausted(errors):
                        break
                    await self._wait_or_stop(
                        self._stop_requested, self._error_policy.delay_for(errors)
                    )
        finally:
            self._backing_off = False
            logger.info("Telegram polling stopped", offset=self._offset)

    async def _dispatch(self, updates: list[dict[str, Any]]) -> None:
        """Hand a batch to the handler in update_id order, advancing the offset.

        Caller holds the lock. Updates below the offset were already
        handled and are skipped. A failing handler is logged and its update
        still acknowledged so one bad update cannot wedge the feed.
        """
        for update in sorted(updates, key=lambda u: u.get("update_id", -1)):
            update_id = update.get("update_id")
            if not isinstance(update_id, int) or update_id < self._offset:
                continue
            try:
                await self._handler(update)
            except Exception:
                logger.exception(
                    "Telegram update handler failed",
                    update_id=update_id,
                )
            self._offset = update_id + 1

    async def force_clear(self) -> ForceClearReport:
        """Delete the webhook and discard the pending update backlog.

        Every failed getUpdates attempt (conflict, network, any non-ok
        response) is retried until the attempt budget runs out, so the call
        always terminates. The manager offset is raised to the drained
        offset, never lowered.
        """
        report = ForceClearReport()
        cancel = asyncio.Event()
        self._clear_cancel = cancel
        logger.info("Telegram force-clear started")

        try:
            try:
                await self._client.delete_webhook(drop_pending_updates=True)
                report.webhook_deleted = True
            except TelegramBotError as e:
                report.errors.append(f"deleteWebhook: {e}")
                logger.warning("Failed to delete webhook", error=str(e))

            async with self._lock:
                offset = self._offset
                while self._clear_policy.allows(report.attempts + 1):
                    report.attempts += 1
                    try:
                        updates = await self._client.get_updates(
                            offset=offset,
                            timeout=1,
                            limit=MAX_UPDATES_PER_REQUEST,
                        )
                    except TelegramBotError as e:
                        report.errors.append(f"getUpdates: {e}")
                        logger.warning(
                            "Force-clear attempt failed",
                            attempt=report.attempts,
                            conflict=isinstance(e, TelegramConflictError),
                            error=str(e),
                        )
                        if not self._clear_policy.allows(report.attempts + 1):
                            break
                        await self._wait_or_stop(
                            cancel, self._clear_policy.delay_for(report.attempts)
                        )
                        if cancel.is_set():
                            report.aborted = True
                            break
                        continue

                    if not updates:
                        report.drained = True
                        break

                    report.cleared_updates += len(updates)
                    offset = max(offset, max(u["update_id"] for u in updates) + 1)
                    logger.info(
                        "Discarded pending updates",
                        count=len(updates),
                        offset=offset,
                    )
                    if cancel.is_set():
                        report.aborted = True
                        break

                if offset > self._offset:
                    self._offset = offset
                report.final_offset = self._offset

            try:
                report.webhook_info = await self._client.get_webhook_info()
            except TelegramBotError as e:
                report.errors.append(f"getWebhookInfo: {e}")
        finally:
            if self._clear_cancel is cancel:
                self._clear_cancel = None

        logger.info(
            "Telegram force-clear finished",
            attempts=report.attempts,
            final_offset=report.final_offset,
            cleared_updates=report.cleared_updates,
            drained=report.drained,
        )
        return report

    @staticmethod
    async def _wait_or_stop(event: asyncio.Event, seconds: float) -> None:
        """Sleep up to ``seconds``, returning early once ``event`` is set."""
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(event.wait(), timeout=seconds)
        except TimeoutError:
            pass


async def clear_webhook(client: TelegramBotClient) -> dict[str, Any]:
    """Delete the webhook (dropping pending updates) and report before/after."""
    previous = await client.get_webhook_info()
    delete_result = await client.delete_webhook(drop_pending_updates=True)
    current = await client.get_webhook_info()
    logger.info(
        "Telegram webhook cleared",
        had_webhook=bool(previous.get("url")),
        pending_update_count=previous.get("pending_update_count", 0),
    )
    return {
        "previous_webhook": previous,
        "delete_result": delete_result,
        "current_webhook": current,
    }


def build_polling_manager(client: TelegramBotClient) -> PollingManager:
    """Manager wired to the portal's update handler."""
    # Lazy import: the update handler pulls in the database layer
    from portal.services.telegram_updates import make_update_handler

    return PollingManager(client, make_update_handler(client))


_managers: dict[str, PollingManager] = {}


def get_polling_manager(
    client: TelegramBotClient | None = None,
) -> PollingManager | None:
    """Process-wide manager for the configured bot, or None without a token."""
    client = client or get_bot_client()
    if client is None:
        return None
    manager = _managers.get(client.config.token)
    if manager is None:
        manager = build_polling_manager(client)
        _managers[client.config.token] = manager
    return manager


async def shutdown_polling_managers() -> None:
    """Stop every running loop and wait for it to exit."""
    for manager in list(_managers.values()):
        await manager.stop(wait=True)


def reset_polling_managers() -> None:
    """Forget all managers. Used for testing."""
    _managers.clear()
