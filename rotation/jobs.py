"""
In-process task queue and the four job handlers.

Topics:
    signal_poll       -> SignalEngine.poll, then enqueue strategy_evaluate
    strategy_evaluate -> PortfolioAllocator.evaluate, one order_execute per decision
    order_execute     -> OrderExecutor.execute
    reconcile         -> Reconciler.run

Each topic has its own ``asyncio.Queue`` and worker pool. A handler that
raises is logged and alerted as a job failure; the worker keeps running.
"""

import asyncio
import itertools
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .alerts import AlertService
from .errors import ExecutionError, SymbolBusyError
from .execution import ExecutionRequest, OrderExecutor
from .logging_setup import component_logger
from .models import Side, TradeDecision, utcnow

log = component_logger("jobs")


class Topic(str, Enum):
    SIGNAL_POLL = "signal_poll"
    STRATEGY_EVALUATE = "strategy_evaluate"
    ORDER_EXECUTE = "order_execute"
    RECONCILE = "reconcile"


@dataclass
class Job:
    id: str
    topic: Topic
    payload: Dict[str, Any] = field(default_factory=dict)
    enqueued_at: datetime = field(default_factory=utcnow)


Handler = Callable[[Job], Awaitable[Any]]


class TaskQueue:
    """Topic-keyed queues with ``enqueue(topic, payload)`` / ``subscribe(topic, handler)``.

    Usage:
        queue = TaskQueue(alerts)
        queue.subscribe(Topic.RECONCILE, handle_reconcile)
        await queue.start()
        await queue.enqueue(Topic.RECONCILE)
        await queue.join()
        await queue.stop()
    """

    def __init__(self, alerts: Optional[AlertService] = None, workers: Optional[Dict[Topic, int]] = None):
        self.alerts = alerts
        self.workers = {topic: 1 for topic in Topic}
        self.workers.update(workers or {})
        self._queues: Dict[Topic, asyncio.Queue] = {topic: asyncio.Queue() for topic in Topic}
        self._handlers: Dict[Topic, Handler] = {}
        self._tasks: List[asyncio.Task] = []
        self._ids = itertools.count(1)
        self.completed: Dict[Topic, int] = {topic: 0 for topic in Topic}
        self.failed: Dict[Topic, int] = {topic: 0 for topic in Topic}
        self.skipped: Dict[Topic, int] = {topic: 0 for topic in Topic}

    def subscribe(self, topic: Topic, handler: Handler) -> None:
        if topic in self._handlers:
            raise ValueError(f"Topic {topic.value} already has a handler")
        self._handlers[topic] = handler

    async def enqueue(self, topic: Topic, payload: Optional[Dict[str, Any]] = None) -> Job:
        job = Job(id=f"{topic.value}-{next(self._ids)}", topic=topic, payload=dict(payload or {}))
        await self._queues[topic].put(job)
        log.debug(f"Enqueued job | job_id={job.id} topic={topic.value}")
        return job

    def depth(self) -> Dict[str, int]:
        """Pending jobs per topic."""
        return {topic.value: q.qsize() for topic, q in self._queues.items()}

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self._tasks:
            return
        for topic, handler in self._handlers.items():
            for n in range(max(1, self.workers.get(topic, 1))):
                task = asyncio.create_task(self._worker(topic, handler), name=f"{topic.value}-worker-{n}")
                self._tasks.append(task)
        pools = {t.value: self.workers[t] for t in self._handlers}
        log.info(f"Task queue started | workers={pools}")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        for q in self._queues.values():
            await q.join()

    async def _worker(self, topic: Topic, handler: Handler) -> None:
        queue = self._queues[topic]
        while True:
            job = await queue.get()
            try:
                await self.run_job(job, handler)
            finally:
                queue.task_done()

    async def run_job(self, job: Job, handler: Handler) -> Any:
        bound = log.bind(job_id=job.id)
        try:
            result = await handler(job)
        except asyncio.CancelledError:
            raise
        except SymbolBusyError as e:
            self.skipped[job.topic] += 1
            bound.warning(f"Job skipped, symbol busy | topic={job.topic.value} symbol={e.symbol}")
            return None
        except Exception as e:
            self.failed[job.topic] += 1
            bound.exception(f"Job failed | topic={job.topic.value} error={e}")
            # execution units alert their own failures
            if self.alerts is not None and not isinstance(e, ExecutionError):
                await self.alerts.alert_job_failure(job.topic.value, str(e), job.id)
            return None
        self.completed[job.topic] += 1
        return result


class JobHandlers:
    """Bind the engine components to the task-queue topics."""

    def __init__(self, queue: TaskQueue, signal_engine, allocator, executor: OrderExecutor, reconciler, exchange):
        self.queue = queue
        self.signal_engine = signal_engine
        self.allocator = allocator
        self.executor = executor
        self.reconciler = reconciler
        self.exchange = exchange

    def register(self) -> None:
        self.queue.subscribe(Topic.SIGNAL_POLL, self.poll_signals)
        self.queue.subscribe(Topic.STRATEGY_EVALUATE, self.evaluate_strategy)
        self.queue.subscribe(Topic.ORDER_EXECUTE, self.execute_order)
        self.queue.subscribe(Topic.RECONCILE, self.reconcile)

    async def poll_signals(self, job: Job):
        result = await self.signal_engine.poll()
        if result.success_count > 0:
            await self.queue.enqueue(Topic.STRATEGY_EVALUATE)
        else:
            log.bind(job_id=job.id).warning("No signals generated, skipping strategy evaluation")
        return result

    async def enqueue_decisions(self, decisions: List[TradeDecision], job_id: Optional[str] = None) -> List[Job]:
        """Enqueue one order_execute job per decision; a failed quote skips only that decision."""
        bound = log.bind(job_id=job_id)
        jobs = []
        for decision in decisions:
            try:
                ticker = await self.exchange.get_ticker(decision.symbol)
            except Exception as e:
                bound.error(f"Error enqueueing trade | symbol={decision.symbol} error={e}")
                continue
            price = ticker.ask if decision.side == Side.BUY else ticker.bid
            request = ExecutionRequest.from_decision(decision, price)
            jobs.append(await self.queue.enqueue(Topic.ORDER_EXECUTE, request.to_dict()))
            bound.info(
                f"Enqueued {decision.side.value} order | symbol={decision.symbol} "
                f"qty={decision.quantity} price={price} reason={decision.reason}"
            )
        return jobs

    async def evaluate_strategy(self, job: Job):
        bound = log.bind(job_id=job.id)
        if not self.allocator.is_enabled():
            bound.info("Strategy is disabled")
            return []
        decisions = await self.allocator.evaluate()
        if not decisions:
            bound.info("No trades needed")
            return []
        return await self.enqueue_decisions(decisions, job.id)

    async def execute_order(self, job: Job):
        request = ExecutionRequest.from_dict(job.payload)
        return await self.executor.execute(request, job_id=job.id)

    async def reconcile(self, job: Job):
        return await self.reconciler.run(job_id=job.id)
