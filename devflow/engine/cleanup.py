"""Process-wide ledger of managed resources and their teardown.

The CleanupCoordinator records every container and process a workflow run
starts and tears them all down when triggered: on SIGINT/SIGTERM, on an
uncaught top-level error, when a run finishes, or on an explicit ``clean``
request. One instance is created by the CLI entry point and passed by reference
to the scheduler and runner; tests create fresh instances for isolation.

Guarantees:
    - ``register``/``unregister`` are safe under concurrent calls.
    - ``trigger`` runs the teardown at most once. Concurrent and later callers
      await or observe the same teardown and receive the same report.
    - Teardown is strictly LIFO over registration order, so a resource started
      later (and possibly depending on an earlier one) goes first.
    - Teardown is best-effort and exhaustive: a failing step is logged and
      recorded, and the remaining steps and resources are still processed.
      "Not found" conditions count as already cleaned.
    - A resource registered after the teardown has finished is released on
      its own and added to the same report.

Example:
    >>> cleanup = CleanupCoordinator(container_api=docker)
    >>> cleanup.register(ResourceHandle.container(container_id, "dev-db"))
    >>> report = await cleanup.trigger("workflow-complete")
    >>> report.ok
    True
"""

from __future__ import annotations

import asyncio
import os
import signal
import threading
from dataclasses import dataclass, field

import structlog

from devflow.enums import ResourceKind, ResourceState
from devflow.exceptions import ContainerNotFoundError
from devflow.models.domain import ResourceHandle
from devflow.providers.base import ContainerAPI

log = structlog.get_logger(__name__)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


@dataclass
class CleanupFailure:
    """A teardown step that failed."""

    handle: ResourceHandle
    step: str
    error: str


@dataclass
class CleanupReport:
    """Outcome of one teardown sequence.

    Attributes:
        reason: Why the teardown was triggered (signal name, "error", "clean", ...).
        released: Handles processed, in teardown order.
        failures: Steps that failed. Failures never stop the teardown.
    """

    reason: str
    released: list[ResourceHandle] = field(default_factory=list)
    failures: list[CleanupFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class CleanupCoordinator:
    """Ledger of live managed resources with an at-most-once teardown trigger."""

    def __init__(self, container_api: ContainerAPI | None = None, stop_timeout: float = 10.0) -> None:
        """Initialize an empty ledger.

        Args:
            container_api: Engine used to stop and remove containers. Without
                it container handles are reported as failures on teardown.
            stop_timeout: Seconds a container gets to stop before being killed.
        """
        self.container_api = container_api
        self.stop_timeout = stop_timeout
        self.reason: str | None = None
        self.received_signal: signal.Signals | None = None
        self._handles: list[ResourceHandle] = []
        self._lock = threading.Lock()
        self._teardown: asyncio.Future[CleanupReport] | None = None
        self._signal_tasks: set[asyncio.Task[None]] = set()
        self._late_releases: set[asyncio.Task[None]] = set()
        self._report: CleanupReport | None = None
        self._drained = False

    # === Ledger ===

    def register(self, handle: ResourceHandle) -> None:
        """Add a started resource to the ledger.

        A resource registered after the teardown has drained the ledger is
        released on its own right away and added to the same report.
        """
        with self._lock:
            late = self._drained
            if not late:
                self._handles.append(handle)
        if not late:
            log.debug("resource_registered", kind=str(handle.kind), resource=handle.name, id=handle.id)
            return

        log.warning("resource_registered_after_cleanup", kind=str(handle.kind), resource=handle.name)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            with self._lock:
                self._handles.append(handle)
            return
        task = loop.create_task(self._release_late(handle, self._report))
        self._late_releases.add(task)
        task.add_done_callback(self._late_releases.discard)

    def unregister(self, resource_id: str) -> ResourceHandle | None:
        """Remove a resource that was stopped by its owner.

        Returns:
            The released handle, or None if no handle has that id.
        """
        with self._lock:
            for index, handle in enumerate(self._handles):
                if handle.id == resource_id:
                    del self._handles[index]
                    break
            else:
                return None
        handle.state = ResourceState.RELEASED
        log.debug("resource_unregistered", kind=str(handle.kind), resource=handle.name)
        return handle

    def handles(self) -> list[ResourceHandle]:
        """Snapshot of the ledger in registration order."""
        with self._lock:
            return list(self._handles)

    def find(self, name_or_id: str) -> ResourceHandle | None:
        """Look up a live handle by id, id prefix or name."""
        for handle in self.handles():
            if handle.id == name_or_id or handle.name == name_or_id:
                return handle
            if len(name_or_id) >= 12 and handle.id.startswith(name_or_id):
                return handle
        return None

    @property
    def triggered(self) -> bool:
        return self._teardown is not None

    # === Teardown ===

    async def trigger(self, reason: str) -> CleanupReport:
        """Tear down every registered resource, at most once.

        The first caller starts the teardown; concurrent or later callers get
        the report of that same teardown instead of re-running it.

        Args:
            reason: Tag describing what triggered cleanup, used for logging.

        Returns:
            Report of the (single) teardown sequence.
        """
        with self._lock:
            first = self._teardown is None
            if first:
                self.reason = reason
                self._teardown = asyncio.ensure_future(self._run_teardown(reason))
            teardown = self._teardown

        if not first:
            log.debug("cleanup_already_triggered", reason=reason, original_reason=self.reason)
        report = teardown.result() if teardown.done() else await asyncio.shield(teardown)
        if self._late_releases:
            await asyncio.gather(*self._late_releases)
        return report

    async def _run_teardown(self, reason: str) -> CleanupReport:
        report = CleanupReport(reason=reason)
        self._report = report
        log.info("cleanup_started", reason=reason, resources=len(self._handles))

        while True:
            with self._lock:
                if not self._handles:
                    self._drained = True
                    break
                handle = self._handles.pop()
            await self._release(handle, report)

        log.info(
            "cleanup_completed",
            reason=reason,
            released=len(report.released),
            failures=len(report.failures),
        )
        return report

    async def _release(self, handle: ResourceHandle, report: CleanupReport) -> None:
        if handle.kind == ResourceKind.CONTAINER:
            await self._release_container(handle, report)
        elif handle.kind == ResourceKind.PROCESS:
            self._release_process(handle, report)
        else:
            self._record(report, handle, "dispatch", f"unknown resource kind {handle.kind}")

        handle.state = ResourceState.RELEASED
        report.released.append(handle)

    async def _release_late(self, handle: ResourceHandle, report: CleanupReport) -> None:
        await self._release(handle, report)
        log.info("late_resource_released", resource=handle.name, kind=str(handle.kind))

    @staticmethod
    def _record(report: CleanupReport, handle: ResourceHandle, step: str, error: str) -> None:
        log.error("cleanup_step_failed", resource=handle.name, kind=str(handle.kind), step=step, error=error)
        report.failures.append(CleanupFailure(handle=handle, step=step, error=error))

    async def _release_container(self, handle: ResourceHandle, report: CleanupReport) -> None:
        api = self.container_api
        if api is None:
            self._record(report, handle, "inspect", "no container API configured")
            return

        running = True
        try:
            info = await api.inspect(handle.id)
            running = bool(info.get("State", {}).get("Running"))
        except ContainerNotFoundError:
            log.warning("container_already_removed", resource=handle.name)
            return
        except Exception as e:
            # State unknown; still attempt stop and remove
            self._record(report, handle, "inspect", str(e))

        if running:
            try:
                await api.stop(handle.id, timeout=self.stop_timeout)
                log.info("container_stopped", resource=handle.name)
            except ContainerNotFoundError:
                log.warning("container_already_removed", resource=handle.name)
                return
            except Exception as e:
                self._record(report, handle, "stop", str(e))
        else:
            log.info("container_not_running", resource=handle.name)

        try:
            await api.remove(handle.id, force=True)
            log.info("container_removed", resource=handle.name)
        except ContainerNotFoundError:
            log.warning("container_already_removed", resource=handle.name)
        except Exception as e:
            self._record(report, handle, "remove", str(e))

    def _release_process(self, handle: ResourceHandle, report: CleanupReport) -> None:
        try:
            pid = int(handle.id)
        except ValueError:
            self._record(report, handle, "probe", f"invalid pid {handle.id!r}")
            return

        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            log.warning("process_not_found", resource=handle.name, pid=pid)
            return
        except OSError as e:
            self._record(report, handle, "probe", str(e))

        try:
            if handle.process_group:
                os.killpg(pid, signal.SIGTERM)
            else:
                os.kill(pid, signal.SIGTERM)
            log.info("process_terminated", resource=handle.name, pid=pid)
        except ProcessLookupError:
            log.warning("process_not_found", resource=handle.name, pid=pid)
        except OSError as e:
            self._record(report, handle, "terminate", str(e))

    # === Signals ===

    def install_signal_handlers(
        self,
        loop: asyncio.AbstractEventLoop | None = None,
        main_task: asyncio.Task | None = None,
    ) -> None:
        """Route SIGINT and SIGTERM to ``trigger``.

        On delivery the teardown runs first; afterwards ``main_task`` (the
        workflow run) is cancelled so the process can exit.
        """
        loop = loop or asyncio.get_running_loop()
        for sig in HANDLED_SIGNALS:
            loop.add_signal_handler(sig, self._on_signal, sig, main_task)

    def remove_signal_handlers(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        loop = loop or asyncio.get_running_loop()
        for sig in HANDLED_SIGNALS:
            loop.remove_signal_handler(sig)

    def _on_signal(self, sig: signal.Signals, main_task: asyncio.Task | None) -> None:
        if self.received_signal is None:
            self.received_signal = sig
        log.warning("signal_received", signal=sig.name)
        task = asyncio.ensure_future(self._shutdown(sig.name, main_task))
        self._signal_tasks.add(task)
        task.add_done_callback(self._signal_tasks.discard)

    async def _shutdown(self, reason: str, main_task: asyncio.Task | None) -> None:
        await self.trigger(reason)
        if main_task is not None and not main_task.done():
            main_task.cancel()
