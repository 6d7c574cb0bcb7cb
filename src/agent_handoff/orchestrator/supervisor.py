"""Supervised background execution of dispatched tasks."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures

from agent_handoff.config import DispatchSettings
from agent_handoff.orchestrator.backend.base import ExecutionRequest, ExternalExecutor
from agent_handoff.orchestrator.errors import ExecutionFailure, ExecutionTimeout
from agent_handoff.orchestrator.models import DispatchClaim, ExecutionOutcome

logger = logging.getLogger(__name__)

OutcomeHandler = Callable[[ExecutionOutcome], None]


class ExecutionSupervisor:
    """Run executions on a bounded pool and turn every ending into an outcome.

    Each submission produces exactly one :class:`ExecutionOutcome` for the
    bound handler: success, failure, timeout, crash of the executor, or
    cancellation during shutdown.
    """

    def __init__(self, executor: ExternalExecutor, *, settings: DispatchSettings) -> None:
        self.executor = executor
        self.settings = settings
        self._pool = ThreadPoolExecutor(
            max_workers=max(1, settings.max_concurrent_executions),
            thread_name_prefix="agent-exec",
        )
        self._stop_event = threading.Event()
        self._handler: OutcomeHandler | None = None
        self._lock = threading.Lock()
        self._pending: dict[Future[ExecutionOutcome], ExecutionOutcome] = {}
        self._closed = False

    def bind(self, handler: OutcomeHandler) -> None:
        self._handler = handler

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def in_flight(self) -> int:
        with self._lock:
            return len(self._pending)

    def submit(self, claim: DispatchClaim, prompt: str) -> Future[ExecutionOutcome] | None:
        """Schedule execution of a claimed task; never blocks on the agent."""

        agent_name = claim.response.agent_name
        request = ExecutionRequest(
            task_id=claim.task.task_id,
            agent_name=agent_name,
            prompt=prompt,
            timeout_seconds=self.settings.execution_timeout_seconds,
            command_template=self.settings.command_template_for(agent_name),
            working_directory=self.settings.working_directory,
            stop_requested=self._stop_event.is_set,
            graceful_shutdown_seconds=self.settings.graceful_shutdown_seconds,
        )
        cancelled = ExecutionOutcome(
            task_id=request.task_id,
            agent_response_id=claim.response.response_id,
            agent_name=agent_name,
            success=False,
            error="Execution cancelled before start.",
        )
        with self._lock:
            if self._closed:
                future = None
            else:
                future = self._pool.submit(self._run, request, claim.response.response_id)
                self._pending[future] = cancelled
        if future is None:
            logger.warning("Supervisor closed; task %s will not run", request.task_id)
            self._deliver(cancelled)
            return None
        future.add_done_callback(self._forget)
        logger.info(
            "Execution of task %s by %s scheduled (record %s)",
            request.task_id,
            agent_name,
            claim.response.response_id,
        )
        return future

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Wait until every submitted execution has finished."""

        with self._lock:
            futures = list(self._pending)
        if not futures:
            return True
        _, not_done = wait_futures(futures, timeout=timeout)
        return not not_done

    def shutdown(self, *, wait: bool = True, cancel_running: bool = False) -> None:
        """Stop accepting work; drain or cancel what is in flight.

        With ``cancel_running`` queued executions are dropped and running agents
        are terminated after the graceful shutdown window. Dropped executions
        still report a failed outcome.
        """

        with self._lock:
            if self._closed:
                return
            self._closed = True
        if cancel_running:
            self._stop_event.set()
        self._pool.shutdown(wait=wait, cancel_futures=cancel_running)
        with self._lock:
            cancelled = [future for future in self._pending if future.cancelled()]
            dropped = [self._pending.pop(future) for future in cancelled]
        for outcome in dropped:
            self._deliver(outcome)

    def _run(self, request: ExecutionRequest, response_id: int) -> ExecutionOutcome:
        base = {
            "task_id": request.task_id,
            "agent_response_id": response_id,
            "agent_name": request.agent_name,
        }
        try:
            result = self.executor.execute(request)
        except ExecutionTimeout as error:
            logger.warning("Task %s timed out: %s", request.task_id, error)
            outcome = ExecutionOutcome(**base, success=False, error=str(error), timed_out=True)
        except ExecutionFailure as error:
            logger.warning("Task %s execution failed: %s", request.task_id, error)
            outcome = ExecutionOutcome(**base, success=False, error=str(error))
        except Exception as error:
            logger.exception("Executor crashed on task %s", request.task_id)
            outcome = ExecutionOutcome(
                **base,
                success=False,
                error=f"Executor error: {error}",
            )
        else:
            outcome = ExecutionOutcome(
                **base,
                success=result.success,
                result_text=result.result_text,
                error=result.error,
                session_id=result.session_id,
                exit_code=result.exit_code,
                cost_usd=result.cost_usd,
            )
            logger.info(
                "Task %s execution finished: success=%s exit_code=%s",
                request.task_id,
                result.success,
                result.exit_code,
            )
        self._deliver(outcome)
        return outcome

    def _deliver(self, outcome: ExecutionOutcome) -> None:
        handler = self._handler
        if handler is None:
            logger.warning(
                "No outcome handler bound; execution record %s stays open",
                outcome.agent_response_id,
            )
            return
        try:
            handler(outcome)
        except Exception:
            logger.exception(
                "Failed to record outcome of task %s (record %s)",
                outcome.task_id,
                outcome.agent_response_id,
            )

    def _forget(self, future: Future[ExecutionOutcome]) -> None:
        if future.cancelled():
            return
        with self._lock:
            self._pending.pop(future, None)
