"""Background distribution of ready tasks to their agents."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from agent_handoff.integrations.base import NotificationSink
from agent_handoff.orchestrator.dispatch import DispatchCoordinator
from agent_handoff.orchestrator.errors import OrchestratorError
from agent_handoff.orchestrator.lifecycle import TaskLifecycleManager
from agent_handoff.orchestrator.models import DeliveryMode

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DistributionSummary:
    """Counters for one or more distribution passes."""

    cycles: int = 0
    dispatched: int = 0
    notified: int = 0
    skipped: int = 0
    errors: int = 0

    def add(self, other: DistributionSummary) -> None:
        self.cycles += other.cycles
        self.dispatched += other.dispatched
        self.notified += other.notified
        self.skipped += other.skipped
        self.errors += other.errors


class TaskDistributor:
    """Push ready tasks to push-mode agents and announce them to pull-mode agents."""

    def __init__(
        self,
        dispatcher: DispatchCoordinator,
        lifecycle: TaskLifecycleManager,
        *,
        notifier: NotificationSink | None = None,
    ) -> None:
        self.dispatcher = dispatcher
        self.lifecycle = lifecycle
        self.notifier = notifier
        self._stop_event = threading.Event()

    @property
    def stop_event(self) -> threading.Event:
        return self._stop_event

    def stop(self) -> None:
        self._stop_event.set()

    def distribute_once(self) -> DistributionSummary:
        summary = DistributionSummary(cycles=1)
        pushed_agents: set[str] = set()
        for task in self.dispatcher.ready_to_send():
            agent_name = task.target_agent
            if agent_name is None or agent_name in pushed_agents:
                summary.skipped += 1
                continue
            try:
                agent = self.dispatcher.registry.resolve(agent_name)
                if agent.delivery_mode is DeliveryMode.PUSH:
                    pushed_agents.add(agent_name)
                    result = self.dispatcher.dispatch(agent_name, issue_ref_filter=task.issue_ref)
                    if result.success:
                        summary.dispatched += 1
                    else:
                        summary.skipped += 1
                        logger.debug("Task %s not dispatched: %s", task.task_id, result.message)
                    continue

                self.lifecycle.notify(task.task_id)
                summary.notified += 1
                self._notify(f"New task for {agent.label}: {task.summary}")
            except OrchestratorError as error:
                summary.errors += 1
                logger.warning("Distribution of task %s failed: %s", task.task_id, error)
        if summary.dispatched or summary.notified:
            logger.info(
                "Distribution pass: dispatched=%d notified=%d skipped=%d errors=%d",
                summary.dispatched,
                summary.notified,
                summary.skipped,
                summary.errors,
            )
        return summary

    def run_loop(
        self,
        *,
        poll_interval_seconds: float,
        max_cycles: int | None = None,
    ) -> DistributionSummary:
        """Repeat distribution passes until stopped (SIGINT/SIGTERM or :meth:`stop`)."""

        aggregate = DistributionSummary()
        with self._signal_handlers():
            while not self._stop_event.is_set():
                if max_cycles is not None and aggregate.cycles >= max_cycles:
                    break
                try:
                    aggregate.add(self.distribute_once())
                except Exception:
                    aggregate.cycles += 1
                    aggregate.errors += 1
                    logger.exception("Distribution pass crashed")
                if max_cycles is not None and aggregate.cycles >= max_cycles:
                    break
                self._stop_event.wait(poll_interval_seconds)
        return aggregate

    def _notify(self, message: str) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify(message)
        except Exception:
            logger.exception("Notification failed")

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            # Signal handlers can only be installed in main thread.
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info("Received %s, stopping distribution", signal.Signals(signum).name)
            self._stop_event.set()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
