"""
Durable scheduler.

Every timer a rollout depends on (bake time, termination wait, provisioning
polls, alarm evaluation, phase timeouts) is a row in scheduled_tasks, so a
restarted process resumes them instead of forgetting them.

Tasks are claimed with a compare-and-set on their status before the handler
runs, so a task runs at most once per claim even with several pollers.
Handlers must be idempotent: a task interrupted by a crash is reset to
pending by recover() and runs again.
"""

import asyncio
import json
import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from database import ScheduledTask

logger = logging.getLogger(__name__)

PENDING = 'pending'
RUNNING = 'running'
DONE = 'done'
CANCELLED = 'cancelled'
FAILED = 'failed'

# Upper bound on handler runs per run_due() call
MAX_TASKS_PER_RUN = 1000

TaskHandler = Callable[[ScheduledTask], Awaitable[None]]


class DurableScheduler:
    """Database-backed timer queue with registered handlers per task kind"""

    def __init__(self, db, poll_interval: float = 5.0,
                 clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self.poll_interval = poll_interval
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.handlers: Dict[str, TaskHandler] = {}
        self.running = False
        self._wakeup = asyncio.Event()

    def register(self, kind: str, handler: TaskHandler) -> None:
        self.handlers[kind] = handler
        logger.debug(f"Registered scheduler handler: {kind}")

    def schedule(self, session, kind: str, stack_name: str, rollout_id: Optional[str] = None,
                 due_at: Optional[datetime] = None, delay_seconds: float = 0,
                 payload: Optional[dict] = None) -> ScheduledTask:
        """
        Add a task in the caller's session. The task becomes durable when
        the caller commits, together with the state change that caused it.
        """
        if kind not in self.handlers:
            raise ValueError(f"No handler registered for task kind '{kind}'")
        if due_at is None:
            due_at = self.clock() + timedelta(seconds=delay_seconds)

        task = ScheduledTask(
            kind=kind,
            stack_name=stack_name,
            rollout_id=rollout_id,
            due_at=due_at,
            status=PENDING,
            payload_json=json.dumps(payload or {}),
        )
        session.add(task)
        self._wakeup.set()
        return task

    def cancel_pending(self, session, rollout_id: str, kinds: Optional[Iterable[str]] = None) -> int:
        """Cancel a rollout's pending tasks in the caller's session"""
        query = session.query(ScheduledTask).filter(
            ScheduledTask.rollout_id == rollout_id,
            ScheduledTask.status == PENDING,
        )
        if kinds is not None:
            query = query.filter(ScheduledTask.kind.in_(list(kinds)))
        return query.update({'status': CANCELLED}, synchronize_session=False)

    def _claim(self, task_id: int) -> Optional[ScheduledTask]:
        with self.db.get_session() as session:
            claimed = session.query(ScheduledTask).filter(
                ScheduledTask.id == task_id,
                ScheduledTask.status == PENDING,
            ).update({
                'status': RUNNING,
                'attempts': ScheduledTask.attempts + 1,
            }, synchronize_session=False)
            session.commit()
            if not claimed:
                return None
            return session.get(ScheduledTask, task_id)

    def _finish(self, task_id: int, status: str, error: Optional[str] = None) -> None:
        with self.db.get_session() as session:
            task = session.get(ScheduledTask, task_id)
            # A handler may have cancelled its own task; keep that
            if task is not None and task.status == RUNNING:
                task.status = status
                task.last_error = error
                session.commit()

    async def run_task(self, task: ScheduledTask) -> bool:
        handler = self.handlers.get(task.kind)
        if handler is None:
            logger.error(f"No handler for scheduled task {task.id} ({task.kind})")
            self._finish(task.id, FAILED, f"No handler for {task.kind}")
            return False

        try:
            logger.debug(f"Running scheduled task {task.id} ({task.kind}) for {task.stack_name}")
            await handler(task)
        except Exception as e:
            logger.error(f"Scheduled task {task.id} ({task.kind}) failed: {e}", exc_info=True)
            self._finish(task.id, FAILED, str(e))
            return False

        self._finish(task.id, DONE)
        return True

    async def _run_in_order(self, task_ids: List[int]) -> int:
        executed = 0
        for task_id in task_ids:
            task = self._claim(task_id)
            if task is None:
                continue  # Claimed by another poller or cancelled
            await self.run_task(task)
            executed += 1
        return executed

    async def run_due(self, now: Optional[datetime] = None) -> int:
        """
        Run every task due at `now`, including tasks that become due while
        running (handlers scheduling immediate follow-ups).

        Tasks of one stack run one after another in due order; different
        stacks run concurrently, so a slow validation hook on one stack does
        not hold up the timers of the others.

        Returns:
            Number of tasks executed
        """
        executed = 0
        while executed < MAX_TASKS_PER_RUN:
            cutoff = now or self.clock()
            with self.db.get_session() as session:
                due = session.query(ScheduledTask.id, ScheduledTask.stack_name).filter(
                    ScheduledTask.status == PENDING,
                    ScheduledTask.due_at <= cutoff,
                ).order_by(ScheduledTask.due_at, ScheduledTask.id).all()

            if not due:
                break

            by_stack: Dict[str, List[int]] = defaultdict(list)
            for row in due:
                by_stack[row.stack_name].append(row.id)

            counts = await asyncio.gather(*(self._run_in_order(ids) for ids in by_stack.values()))
            if not any(counts):
                break
            executed += sum(counts)

        if executed >= MAX_TASKS_PER_RUN:
            logger.warning(f"Scheduler stopped after {executed} tasks in one pass")
        return executed

    def recover(self) -> int:
        """Requeue tasks that were running when the previous process stopped"""
        with self.db.get_session() as session:
            count = session.query(ScheduledTask).filter(
                ScheduledTask.status == RUNNING
            ).update({'status': PENDING}, synchronize_session=False)
            session.commit()
        if count:
            logger.info(f"Requeued {count} interrupted scheduled tasks")
        return count

    def next_due(self) -> Optional[datetime]:
        with self.db.get_session() as session:
            task = session.query(ScheduledTask).filter(
                ScheduledTask.status == PENDING
            ).order_by(ScheduledTask.due_at).first()
            return task.due_at if task else None

    async def start(self):
        """Run the scheduler loop until stop() is called"""
        logger.info(f"Starting durable scheduler (poll every {self.poll_interval}s)")
        self.running = True
        self.recover()

        while self.running:
            try:
                await self.run_due()
            except Exception as e:
                logger.error(f"Error in scheduler loop: {e}", exc_info=True)

            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    def stop(self):
        logger.info("Stopping durable scheduler")
        self.running = False
        self._wakeup.set()
