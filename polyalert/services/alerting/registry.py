"""Process-wide table of per-user alert sessions with start/stop/restart control."""

import asyncio
import logging
from dataclasses import dataclass, field

from polyalert.core.store import NotFoundError
from polyalert.core.types import AlertStore, FeedFactory, Notifier, User
from polyalert.services.alerting.session import AlertSession

logger = logging.getLogger(__name__)

DEFAULT_STOP_GRACE_S = 5.0


@dataclass(eq=False, slots=True)
class UserRunner:
    """Handle for one running session: the task doubles as cancel token and completion signal."""

    external_user_id: int
    session: AlertSession = field(repr=False)
    task: asyncio.Task[None] | None = field(default=None, repr=False)
    closer: asyncio.Task[None] | None = field(default=None, repr=False)

    def cancel(self) -> None:
        if self.task is not None:
            self.task.cancel()

    async def stop(self, timeout: float) -> bool:
        """Cancel the task and force-close its feed connection.

        Closing the connection interrupts a receive that does not react to
        cancellation. Waits up to ``timeout`` seconds for both; returns True
        when the session task has finished.
        """

        self.cancel()
        if self.closer is None:
            self.closer = asyncio.create_task(
                self.session.close(),
                name=f"alert-session-close-{self.external_user_id}",
            )
        pending = {self.closer} if self.task is None else {self.closer, self.task}
        done, _ = await asyncio.wait(pending, timeout=timeout)
        return self.task is None or self.task in done


class RunnerRegistry:
    """Keeps at most one live session per user, keyed by external user id.

    The table is only touched while holding ``_lock``. The lock is never held
    while connecting to the feed or while waiting for a session to finish.

    Every start or stop bumps the user's generation. A start that loaded its
    alerts under an older generation is dropped at publish time, so a slow
    start never replaces a newer session or outlives a later stop.
    """

    def __init__(
        self,
        store: AlertStore,
        feed: FeedFactory,
        notifier: Notifier,
        stop_grace_s: float = DEFAULT_STOP_GRACE_S,
    ) -> None:
        self._store = store
        self._feed = feed
        self._notifier = notifier
        self._stop_grace_s = stop_grace_s
        self._lock = asyncio.Lock()
        self._runners: dict[int, UserRunner] = {}
        self._generations: dict[int, int] = {}

    async def start_all(self) -> int:
        """Start a session for every user with enabled alerts; returns sessions started."""

        user_ids = await self._store.list_user_ids_with_enabled_alerts()
        started = 0
        for user_id in user_ids:
            try:
                user = await self._store.get_user_by_id(user_id)
            except NotFoundError:
                logger.debug("runner_user_missing", extra={"user_id": user_id})
                continue
            except Exception as exc:  # noqa: BLE001
                logger.warning("runner_user_load_failed", extra={"user_id": user_id, "error": str(exc)})
                continue
            if await self._start_user(user):
                started += 1

        logger.info("runner_start_all_complete", extra={"users": len(user_ids), "started": started})
        return started

    async def restart_user(self, external_user_id: int) -> bool:
        """Replace any running session with one built from the current enabled alerts.

        Returns True when a new session was started.
        """

        await self.stop_user(external_user_id)
        try:
            user = await self._store.get_user_by_external_id(external_user_id)
        except NotFoundError:
            return False
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "runner_user_load_failed",
                extra={"external_user_id": external_user_id, "error": str(exc)},
            )
            return False
        return await self._start_user(user)

    async def stop_user(self, external_user_id: int) -> None:
        """Cancel the user's session and wait up to the grace period for it to finish."""

        async with self._lock:
            self._bump_generation(external_user_id)
            runner = self._runners.pop(external_user_id, None)
        if runner is None:
            return
        await self._stop_runner(runner)

    async def stop_all(self) -> None:
        async with self._lock:
            external_user_ids = list(self._runners)
        for external_user_id in external_user_ids:
            await self.stop_user(external_user_id)

    async def active_users(self) -> list[int]:
        async with self._lock:
            return sorted(self._runners)

    async def is_active(self, external_user_id: int) -> bool:
        async with self._lock:
            return external_user_id in self._runners

    async def _stop_runner(self, runner: UserRunner) -> None:
        if await runner.stop(self._stop_grace_s):
            return
        logger.warning(
            "runner_stop_timeout",
            extra={"external_user_id": runner.external_user_id, "grace_s": self._stop_grace_s},
        )

    async def _start_user(self, user: User) -> bool:
        external_user_id = user.external_id
        async with self._lock:
            generation = self._bump_generation(external_user_id)
        try:
            alerts = await self._store.list_enabled_alerts(user.id)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "runner_alert_load_failed",
                extra={"external_user_id": external_user_id, "error": str(exc)},
            )
            return False

        session = AlertSession.build(user, alerts, self._notifier)
        if session.is_empty:
            logger.debug("runner_no_enabled_alerts", extra={"external_user_id": external_user_id})
            return False

        try:
            await session.open(self._feed)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "runner_feed_connect_failed",
                extra={"external_user_id": external_user_id, "error": str(exc)},
            )
            return False

        try:
            published = await self._publish(session, generation)
        except BaseException:
            await session.close()
            raise
        if not published:
            logger.debug("runner_start_superseded", extra={"external_user_id": external_user_id})
            await session.close()
        return published

    async def _publish(self, session: AlertSession, generation: int) -> bool:
        external_user_id = session.user.external_id
        while True:
            async with self._lock:
                if self._generations.get(external_user_id) != generation:
                    return False
                existing = self._runners.pop(external_user_id, None)
                if existing is None:
                    runner = UserRunner(external_user_id, session)
                    runner.task = asyncio.create_task(
                        self._run(runner, session),
                        name=f"alert-session-{external_user_id}",
                    )
                    self._runners[external_user_id] = runner
                    return True

            logger.debug("runner_already_active", extra={"external_user_id": external_user_id})
            await self._stop_runner(existing)

    async def _run(self, runner: UserRunner, session: AlertSession) -> None:
        try:
            await session.run()
        finally:
            async with self._lock:
                if self._runners.get(runner.external_user_id) is runner:
                    del self._runners[runner.external_user_id]
            logger.info("runner_exited", extra={"external_user_id": runner.external_user_id})

    def _bump_generation(self, external_user_id: int) -> int:
        generation = self._generations.get(external_user_id, 0) + 1
        self._generations[external_user_id] = generation
        return generation
