# -*- coding: utf-8 -*-
"""Worker pool and partition task graph.

One ``WorkerPool`` (fixed size, ``Settings.n_threads``) serves every parallel
stage of a run and is reused across outer iterations.

- ``WorkerPool.parallel_map``: plain parallel-for with no ordering. The first
  failure sets a stage-wide cancel flag, queued work is dropped, and the
  failure is re-raised once the running workers have returned.
- ``TaskGraph``: explicit DAG. A task is submitted only after every task it
  depends on has *finished*, and it receives their results (the partition
  hand-off). The coordinator is the calling thread, so tasks never block a
  worker while waiting on a dependency.

Collaborators are not assumed thread safe: ``WorkerContext.state`` is a
per-thread clone of the stage prototype.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import FIRST_COMPLETED, FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Hashable, List, Optional, Sequence, Tuple


class StageCancelled(Exception):
    """Raised inside a task whose stage was cancelled by a sibling failure."""


@dataclass
class WorkerContext:
    state: Any
    cancel: threading.Event

    def check(self):
        if self.cancel.is_set():
            raise StageCancelled()


class WorkerPool:
    def __init__(self, n_threads: int = 1):
        self.n_threads = max(1, int(n_threads))
        self._executor: Optional[ThreadPoolExecutor] = None
        if self.n_threads > 1:
            self._executor = ThreadPoolExecutor(
                max_workers=self.n_threads,
                thread_name_prefix="slq-worker",
                initializer=self._mark_worker,
            )
        self._local = threading.local()

    # ------------------------------------------------------------------
    def _mark_worker(self):
        self._local.is_worker = True

    def _in_worker(self) -> bool:
        return bool(getattr(self._local, "is_worker", False))

    def local_clone(self, prototype):
        """Per-thread clone of ``prototype`` (cached for the life of the pool)."""
        if prototype is None:
            return None
        cache = getattr(self._local, "clones", None)
        if cache is None:
            cache = self._local.clones = {}
        entry = cache.get(id(prototype))
        if entry is None or entry[0] is not prototype:
            entry = (prototype, prototype.clone())
            cache[id(prototype)] = entry
        return entry[1]

    def shutdown(self):
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.shutdown()
        return False

    # ------------------------------------------------------------------
    # parallel for
    # ------------------------------------------------------------------

    def parallel_map(
        self,
        fn: Callable[[Any, WorkerContext], Any],
        items: Sequence[Any],
        *,
        prototype=None,
        chunks_per_thread: int = 4,
    ) -> List[Any]:
        """``[fn(item, ctx) for item in items]`` on the pool; results keep item order."""
        items = list(items)
        cancel = threading.Event()
        if not items:
            return []

        # inline: single thread, or a nested call from inside a worker
        if self._executor is None or self._in_worker() or len(items) == 1:
            ctx = WorkerContext(self.local_clone(prototype), cancel)
            return [fn(item, ctx) for item in items]

        n_chunks = min(len(items), self.n_threads * max(1, int(chunks_per_thread)))
        bounds = [round(i * len(items) / n_chunks) for i in range(n_chunks + 1)]

        def run_chunk(lo, hi):
            ctx = WorkerContext(self.local_clone(prototype), cancel)
            out = []
            for item in items[lo:hi]:
                ctx.check()
                out.append(fn(item, ctx))
            return out

        futures = [
            self._executor.submit(run_chunk, lo, hi) for lo, hi in zip(bounds[:-1], bounds[1:]) if hi > lo
        ]
        done, pending = wait(futures, return_when=FIRST_EXCEPTION)
        if pending and any(f.exception() is not None for f in done):
            cancel.set()
            for f in pending:
                f.cancel()
            wait(pending)

        results: List[Any] = []
        first_error: Optional[BaseException] = None
        for f in futures:
            if f.cancelled():
                continue
            exc = f.exception()
            if exc is None:
                results.extend(f.result())
            elif not isinstance(exc, StageCancelled) and first_error is None:
                first_error = exc
        if first_error is not None:
            raise first_error
        return results


# =============================================================================
# Task graph
# =============================================================================

@dataclass
class _Task:
    key: Hashable
    fn: Callable[[WorkerContext, Dict[Hashable, Any]], Any]
    deps: Tuple[Hashable, ...] = ()


@dataclass
class TaskGraph:
    """Directed acyclic graph of tasks executed on a ``WorkerPool``.

    ``trace`` records ``(event, key, timestamp)`` for every task start and
    finish, in the order the events happened.
    """

    tasks: Dict[Hashable, _Task] = field(default_factory=dict)
    trace: List[Tuple[str, Hashable, float]] = field(default_factory=list)

    def __post_init__(self):
        self._lock = threading.Lock()

    def add(self, key: Hashable, fn, deps: Sequence[Hashable] = ()):
        if key in self.tasks:
            raise ValueError(f"duplicate task {key!r}")
        self.tasks[key] = _Task(key=key, fn=fn, deps=tuple(deps))
        return key

    def _record(self, event: str, key: Hashable):
        with self._lock:
            self.trace.append((event, key, time.perf_counter()))

    def _check(self):
        for t in self.tasks.values():
            for d in t.deps:
                if d not in self.tasks:
                    raise ValueError(f"task {t.key!r} depends on unknown task {d!r}")
        # Kahn's algorithm
        indeg = {k: len(t.deps) for k, t in self.tasks.items()}
        users: Dict[Hashable, List[Hashable]] = {k: [] for k in self.tasks}
        for t in self.tasks.values():
            for d in t.deps:
                users[d].append(t.key)
        stack = [k for k, v in indeg.items() if v == 0]
        seen = 0
        while stack:
            k = stack.pop()
            seen += 1
            for u in users[k]:
                indeg[u] -= 1
                if indeg[u] == 0:
                    stack.append(u)
        if seen != len(self.tasks):
            raise ValueError("task graph has a cycle")
        return users

    def run(self, pool: WorkerPool, *, prototype=None) -> Dict[Hashable, Any]:
        users = self._check()
        cancel = threading.Event()
        results: Dict[Hashable, Any] = {}
        remaining = {k: set(t.deps) for k, t in self.tasks.items()}
        ready = [k for k in self.tasks if not remaining[k]]  # insertion order

        def execute(task: _Task, inputs: Dict[Hashable, Any]):
            ctx = WorkerContext(pool.local_clone(prototype), cancel)
            ctx.check()
            self._record("start", task.key)
            out = task.fn(ctx, inputs)
            self._record("finish", task.key)
            return out

        def release(key):
            for u in users[key]:
                remaining[u].discard(key)
                if not remaining[u]:
                    ready.append(u)

        def inputs_of(task):
            return {d: results[d] for d in task.deps}

        if pool._executor is None or pool._in_worker():
            while ready:
                key = ready.pop(0)
                results[key] = execute(self.tasks[key], inputs_of(self.tasks[key]))
                release(key)
            return results

        running = {}
        first_error: Optional[BaseException] = None
        while ready or running:
            while ready and first_error is None:
                key = ready.pop(0)
                task = self.tasks[key]
                running[pool._executor.submit(execute, task, inputs_of(task))] = key
            if not running:
                break
            done, _ = wait(list(running), return_when=FIRST_COMPLETED)
            for f in done:
                key = running.pop(f)
                exc = f.exception()
                if exc is not None:
                    if first_error is None and not isinstance(exc, StageCancelled):
                        first_error = exc
                    cancel.set()
                    continue
                results[key] = f.result()
                if first_error is None:
                    release(key)
            if first_error is not None:
                ready.clear()

        if first_error is not None:
            raise first_error
        return results


def backward_chain(num_partitions: int, fn, terminal, *, after: Optional[Callable] = None) -> TaskGraph:
    """Graph for the backward sweep.

    ``riccati[k]`` depends on ``riccati[k+1]`` and receives its hand-off value
    (the value function at the start of partition k+1). ``fn(ctx, k, handoff)``
    must return ``(result, handoff_for_k_minus_1)``. The last partition gets
    ``terminal``. ``after(ctx, k, result)`` adds an optional per-partition
    follow-up task that only depends on ``riccati[k]`` and so overlaps with
    the sweep of earlier partitions.
    """
    g = TaskGraph()
    for k in reversed(range(num_partitions)):
        if k == num_partitions - 1:
            g.add(("riccati", k), lambda ctx, deps, k=k: fn(ctx, k, terminal))
        else:
            g.add(
                ("riccati", k),
                lambda ctx, deps, k=k: fn(ctx, k, deps[("riccati", k + 1)][1]),
                deps=[("riccati", k + 1)],
            )
        if after is not None:
            g.add(
                ("after", k),
                lambda ctx, deps, k=k: after(ctx, k, deps[("riccati", k)][0]),
                deps=[("riccati", k)],
            )
    return g
