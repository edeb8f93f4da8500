"""Periodic dispatch loop driving coalescing and external actions."""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from .actions import ActionChain, ActionRunner, render_command
from .coalescer import Coalescer
from .config import SentinelConfig
from .exceptions import (
    ActionError,
    ActionFailedError,
    ConflictError,
    DispatcherAlreadyRunningError,
    StoreUnavailableError,
)
from .models import ActionResult, Notification
from .store import NotificationStore

logger = logging.getLogger(__name__)


@dataclass
class DispatchReport:
    """
    Outcome of one dispatch tick.

    Attributes:
        candidates: IDs handed to dispatch, in dispatch order
        processed: IDs whose action succeeded and were marked PROCESSED
        failed: IDs left PENDING because their action failed or the
            state update conflicted
        unresolved: IDs left PENDING because no action is configured
        aborted: Whether the tick was aborted by a store failure
    """
    candidates: List[int] = field(default_factory=list)
    processed: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)
    unresolved: List[int] = field(default_factory=list)
    aborted: bool = False


def _fmt_time(ts: float) -> str:
    return datetime.fromtimestamp(ts).isoformat(timespec="seconds")


class Dispatcher:
    """
    Fixed-interval driver of the consumer path.

    Each tick selects a window of pending notifications, coalesces it, runs
    the resolved action for every candidate in order and marks it PROCESSED
    on success. Failures leave the notification PENDING; the next tick is a
    full retry.
    """

    def __init__(
        self,
        store: NotificationStore,
        config: Optional[SentinelConfig] = None,
        resolver: Optional[ActionChain] = None,
        runner: Optional[ActionRunner] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the dispatcher.

        Args:
            store: Notification store to consume from
            config: Sentinel configuration
            resolver: Action chain (defaults to one built from config)
            runner: Action runner (defaults to a subprocess runner)
            clock: Source of the current Unix time for window selection
        """
        self.store = store
        self.config = config or SentinelConfig()
        self.resolver = resolver or ActionChain.from_config(self.config)
        self.runner = runner or ActionRunner(timeout=self.config.action_timeout_s)
        self.clock = clock

        self._coalescer = Coalescer(store, self.config)
        self._running = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def next_batch(self) -> List[Notification]:
        """
        Select and coalesce the next window.

        Returns:
            Dispatch candidates for this tick
        """
        window = self.store.select_window(self.clock(), self.config.window)
        if window.is_empty:
            return []
        logger.debug(f"Selected window of {len(window)} notification(s) from {_fmt_time(window.tmin)}")
        return self._coalescer.coalesce(window)

    def dispatch(self, notification: Notification) -> ActionResult:
        """
        Run the action for one notification and mark it PROCESSED.

        Raises:
            ActionUnresolvedError: If no action is configured for its kind
            ActionFailedError: If the action fails
            ConflictError: If the notification is no longer PENDING
        """
        logger.info(
            f"process id={notification.id} type={notification.kind.value} "
            f"file={notification.path} at={_fmt_time(notification.occurred_at)}"
        )
        template = self.resolver.resolve(notification)
        command = render_command(template, notification)

        result = self.runner.run(command)
        logger.debug(f"exec cmd[{command}] rc[{result.returncode}] out[\n-----\n{result.output}\n-----]")
        if not result.success:
            raise ActionFailedError(
                f"Action for id={notification.id} failed (rc={result.returncode})",
                returncode=result.returncode,
                output=result.output,
            )

        self.store.mark_processed(notification.id)
        logger.debug(f"Marked processed id={notification.id}")
        return result

    def run_once(self) -> DispatchReport:
        """
        Execute one tick.

        Per-notification failures are logged and never stop the tick; a
        store failure aborts it.

        Returns:
            Report of what happened to each candidate
        """
        report = DispatchReport()

        try:
            batch = self.next_batch()
        except StoreUnavailableError as e:
            logger.error(f"Get pending failed: {e}")
            report.aborted = True
            return report

        for notification in batch:
            report.candidates.append(notification.id)
            try:
                self.dispatch(notification)
                report.processed.append(notification.id)
            except ActionFailedError as e:
                logger.error(f"Processing id={notification.id} failed: {e}")
                report.failed.append(notification.id)
            except ActionError as e:
                logger.error(f"Processing id={notification.id} unresolved: {e}")
                report.unresolved.append(notification.id)
            except ConflictError as e:
                logger.error(f"Mark processed id={notification.id} failed: {e}")
                report.failed.append(notification.id)
            except StoreUnavailableError as e:
                logger.error(f"Store unavailable, aborting tick: {e}")
                report.failed.append(notification.id)
                report.aborted = True
                break
            except Exception as e:
                logger.exception(f"Processing id={notification.id} crashed: {e}")
                report.failed.append(notification.id)

        return report

    def check(self) -> List[Notification]:
        """
        Log pending notifications without processing them.

        Returns:
            All pending notifications
        """
        pending = self.store.pending()
        for n in pending:
            logger.info(f"pending id={n.id} type={n.kind.value} file={n.path} at={_fmt_time(n.occurred_at)}")
        return pending

    def start(self) -> None:
        """
        Run the dispatch loop (blocking) until stop() is called.

        Raises:
            DispatcherAlreadyRunningError: If already running
        """
        self._mark_running()
        try:
            self._loop()
        except KeyboardInterrupt:
            pass
        finally:
            with self._lock:
                self._running = False

    def start_async(self) -> None:
        """
        Run the dispatch loop in a background thread.

        Raises:
            DispatcherAlreadyRunningError: If already running
        """
        self._mark_running()
        self._thread = threading.Thread(target=self._run_in_thread, name="DispatchLoop")
        self._thread.daemon = True
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Signal the loop to stop and wait for the current tick to finish.

        Args:
            timeout: Seconds to wait for the worker thread (default: two
                tick intervals plus 5s). If it is still busy afterwards the
                dispatcher keeps reporting itself as running.
        """
        if timeout is None:
            timeout = self.config.tick_interval * 2 + 5.0
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread() and thread.is_alive():
            thread.join(timeout=timeout)
            if thread.is_alive():
                # Still inside a long action; stays running so no second loop starts
                logger.warning("Dispatch loop did not stop within timeout")
                return
        # The worker clears the running flag itself on exit
        self._thread = None

    def _mark_running(self) -> None:
        with self._lock:
            if self._running:
                raise DispatcherAlreadyRunningError("Dispatcher is already running")
            self._running = True
            self._stop_event.clear()

    def _run_in_thread(self) -> None:
        try:
            self._loop()
        finally:
            with self._lock:
                self._running = False

    def _loop(self) -> None:
        """Worker loop; ticks never overlap."""
        interval = self.config.tick_interval
        logger.debug(f"Dispatch loop started, interval={interval}s")

        while not self._stop_event.is_set():
            started = time.monotonic()
            try:
                report = self.run_once()
                if report.candidates:
                    logger.debug(
                        f"Tick done: {len(report.processed)}/{len(report.candidates)} processed, "
                        f"{len(report.failed)} failed, {len(report.unresolved)} unresolved"
                    )
            except Exception as e:
                logger.exception(f"Dispatch loop error: {e}")

            elapsed = time.monotonic() - started
            self._stop_event.wait(timeout=max(0.0, interval - elapsed))

    @property
    def is_running(self) -> bool:
        """Check if the dispatch loop is running."""
        return self._running
