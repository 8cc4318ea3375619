"""
Graph Executor - Drives a run through its supersteps.

One superstep:
1. Take every pending step. A single step runs alone; several run
   concurrently as one batch behind a join barrier.
2. Wait for the whole batch. If any task failed, nothing from the batch
   is merged.
3. Merge all updates in dispatch order as one atomic state transition.
4. Hand the new state to the checkpoint hook, if any.
5. Resolve the next steps of every completed node against the post-merge
   state, in dispatch order, and de-duplicate them.

The run is terminal when a step resolves no further work.
"""

import asyncio
import logging
import time
from collections.abc import Sequence
from typing import Any

from weft.graph.edge import GraphSpec
from weft.graph.errors import CheckpointError, DeadlineExceeded, NodeExecutionError, StepLimitError
from weft.graph.node import NodeResult, _cancel_probe
from weft.graph.resolver import EdgeResolver, Step, dedupe_steps
from weft.graph.run import CancellationToken, Run, RunStatus
from weft.observability import set_trace_context
from weft.runtime.event_bus import EventBus, EventType
from weft.schemas.checkpoint import Checkpoint
from weft.storage.checkpoint_hook import CheckpointCallable, CheckpointHook, deliver_checkpoint

logger = logging.getLogger(__name__)


class GraphExecutor:
    """
    Executes compiled graphs.

    The executor holds no per-run state: everything a run needs lives on
    its Run object, so one executor can drive any number of concurrent
    runs.

    Example:
        executor = GraphExecutor(event_bus=bus)
        await executor.execute(graph, run, run_config={}, token=token)
    """

    def __init__(
        self,
        event_bus: EventBus | None = None,
        checkpoint_hook: CheckpointHook | CheckpointCallable | None = None,
        resolver: EdgeResolver | None = None,
    ):
        self.event_bus = event_bus
        self.checkpoint_hook = checkpoint_hook
        self.resolver = resolver or EdgeResolver()
        self.logger = logger

    async def _emit(self, event_type: EventType, run: Run, **kwargs: Any) -> None:
        if self.event_bus is not None:
            await self.event_bus.emit(event_type, run.run_id, **kwargs)

    async def execute(
        self,
        graph: GraphSpec,
        run: Run,
        run_config: Any = None,
        token: CancellationToken | None = None,
        max_steps: int = 25,
        node_timeout: float | None = None,
        max_concurrency: int | None = None,
    ) -> Run:
        """
        Drive ``run`` until no steps remain.

        Args:
            graph: The compiled graph
            run: Run to execute; its state container is mutated in place
            run_config: Opaque value handed to every node invocation
            token: Cancellation token; a fresh one is used if omitted
            max_steps: Superstep limit
            node_timeout: Default per-invocation deadline in seconds
            max_concurrency: Cap on tasks of one batch running at once

        Returns:
            The same Run, in TERMINAL status

        Raises:
            WeftError: any engine error; the run is left in FAILED status
                with the state of its last successful merge
        """
        token = token or CancellationToken()
        if not token.bound:
            token.bind(asyncio.get_running_loop())

        run.pending = [Step(node=graph.entry_node)]
        self.logger.info(f"🚀 Starting run {run.run_id[:8]} of graph '{graph.id}'")
        self.logger.info(f"   Entry node: {graph.entry_node}")
        await self._emit(EventType.RUN_STARTED, run, entry_node=graph.entry_node)

        try:
            while run.pending:
                token.raise_if_cancelled()
                if run.step >= max_steps:
                    raise StepLimitError(max_steps)

                run.step += 1
                set_trace_context(step=run.step)
                steps = run.pending
                run.pending = []

                for step in steps:
                    visits = run.record_visit(step.node)
                    spec = graph.get_node(step.node)
                    if spec is not None and spec.max_visits and visits > spec.max_visits:
                        raise StepLimitError(spec.max_visits, node=step.node)

                names = ", ".join(s.node for s in steps)
                self.logger.info(f"▶ Step {run.step}: {names}")

                run.status = RunStatus.RUNNING
                results = await self._run_step(
                    graph, run, steps, run_config, token, node_timeout, max_concurrency
                )

                # Results that finish after a cancellation are discarded.
                token.raise_if_cancelled()

                run.status = RunStatus.MERGING
                sources = [s.node for s in steps]
                version = run.state.merge_many([r.update for r in results], sources)
                await self._emit(
                    EventType.STATE_MERGED,
                    run,
                    step=run.step,
                    version=version,
                    nodes=sources,
                    keys=sorted({k for r in results for k in r.update}),
                )

                if self.checkpoint_hook is not None:
                    await self._checkpoint(graph, run, sources)

                view = run.state.view()
                resolved: list[Step] = []
                for step, result in zip(steps, results, strict=True):
                    resolved.extend(
                        await self.resolver.next_steps(graph, step.node, view, result.dispatch)
                    )
                run.pending = dedupe_steps(resolved)

                for nxt in run.pending:
                    self.logger.info(f"   → {nxt.origin} → {nxt.node} ({nxt.kind})")
                    await self._emit(
                        EventType.EDGE_TRAVERSED,
                        run,
                        node_id=nxt.origin,
                        step=run.step,
                        target=nxt.node,
                        kind=str(nxt.kind),
                    )
                if len(steps) > 1:
                    self.logger.info(f"   ⑃ Fan-in: {len(steps)} tasks merged")
                    await self._emit(EventType.FAN_IN, run, step=run.step, nodes=sources)

                run.status = RunStatus.READY

        except BaseException as e:
            run.status = RunStatus.FAILED
            run.close_batch()
            self.logger.error(f"✗ Run {run.run_id[:8]} failed at step {run.step}: {e}")
            await self._emit(
                EventType.RUN_FAILED,
                run,
                step=run.step,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        run.status = RunStatus.TERMINAL
        self.logger.info(f"✓ Run {run.run_id[:8]} complete after {run.step} steps")
        await self._emit(
            EventType.RUN_COMPLETED,
            run,
            step=run.step,
            path=list(run.path),
            state_version=run.state.version,
        )
        return run

    async def _checkpoint(self, graph: GraphSpec, run: Run, completed: list[str]) -> None:
        checkpoint = Checkpoint.create(
            run_id=run.run_id,
            graph_id=graph.id,
            step=run.step,
            state_version=run.state.version,
            state=run.state.snapshot(),
            execution_path=run.path,
            completed_nodes=completed,
        )
        try:
            await deliver_checkpoint(self.checkpoint_hook, checkpoint)
        except Exception as e:
            raise CheckpointError(
                f"Checkpoint hook failed at step {run.step}: {type(e).__name__}: {e}"
            ) from e
        self.logger.debug(f"💾 Checkpoint {checkpoint.checkpoint_id}")

    async def _run_step(
        self,
        graph: GraphSpec,
        run: Run,
        steps: Sequence[Step],
        run_config: Any,
        token: CancellationToken,
        node_timeout: float | None,
        max_concurrency: int | None,
    ) -> list[NodeResult]:
        """
        Run every step of one superstep and wait for all of them.

        Returns:
            Node results in dispatch order

        Raises:
            The first failure by dispatch index, or the token's error if
            the run is stopped while tasks are in flight
        """
        barrier = run.open_batch(len(steps))
        views = [run.state.view(step.scoped_input) for step in steps]

        if len(steps) > 1:
            self.logger.info(f"   ⑂ Fan-out: executing {len(steps)} tasks in parallel")
            await self._emit(
                EventType.FAN_OUT,
                run,
                step=run.step,
                batch_id=barrier.batch_id,
                nodes=[s.node for s in steps],
            )

        semaphore = asyncio.Semaphore(max_concurrency) if max_concurrency else None

        async def run_task(index: int, step: Step) -> None:
            if semaphore is not None:
                async with semaphore:
                    result = await self._invoke(
                        graph, run, step, views[index], run_config, token, node_timeout
                    )
            else:
                result = await self._invoke(
                    graph, run, step, views[index], run_config, token, node_timeout
                )
            barrier.arrive(index, result)

        tasks = [asyncio.create_task(run_task(i, s)) for i, s in enumerate(steps)]
        stop = asyncio.create_task(token.wait())
        try:
            pending = set(tasks)
            while pending:
                done, pending = await asyncio.wait(
                    pending | {stop}, return_when=asyncio.FIRST_COMPLETED
                )
                if stop in done:
                    pending.discard(stop)
                    for t in pending:
                        t.cancel()
                    await asyncio.gather(*pending, return_exceptions=True)
                    token.raise_if_cancelled()
                pending.discard(stop)
        except BaseException:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        finally:
            stop.cancel()

        for task in tasks:
            if task.cancelled():
                raise asyncio.CancelledError()
            if task.exception() is not None:
                raise task.exception()

        results = barrier.ordered_results()
        run.close_batch()
        return results

    async def _invoke(
        self,
        graph: GraphSpec,
        run: Run,
        step: Step,
        view: Any,
        run_config: Any,
        token: CancellationToken,
        node_timeout: float | None,
    ) -> NodeResult:
        set_trace_context(node_id=step.node)
        _cancel_probe.set(lambda: token.cancelled)

        spec = graph.get_node(step.node)
        timeout = spec.timeout if spec is not None and spec.timeout is not None else node_timeout

        await self._emit(EventType.NODE_STARTED, run, node_id=step.node, step=run.step)
        start = time.perf_counter()
        try:
            call = graph.registry.invoke(step.node, view, run_config)
            if timeout is not None:
                result = await asyncio.wait_for(call, timeout)
            else:
                result = await call
        except TimeoutError as e:
            self.logger.error(f"   ✗ {step.node} timed out after {timeout}s")
            await self._emit(
                EventType.NODE_FAILED,
                run,
                node_id=step.node,
                step=run.step,
                error=f"timed out after {timeout}s",
            )
            raise DeadlineExceeded(f"node '{step.node}'", timeout, node=step.node) from e
        except NodeExecutionError as e:
            self.logger.error(f"   ✗ {step.node} failed: {e.message}")
            await self._emit(
                EventType.NODE_FAILED,
                run,
                node_id=step.node,
                step=run.step,
                error=e.message,
                error_kind=e.kind,
            )
            raise

        latency_ms = int((time.perf_counter() - start) * 1000)
        self.logger.info(
            f"   ✓ {step.node} completed in {latency_ms}ms",
            extra={"node_id": step.node, "latency_ms": latency_ms},
        )
        await self._emit(
            EventType.NODE_COMPLETED,
            run,
            node_id=step.node,
            step=run.step,
            latency_ms=latency_ms,
            keys=sorted(result.update),
            dispatched=len(result.dispatch),
        )
        return result
