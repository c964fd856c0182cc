"""
Work queue and worker pool driving the reconcilers.

The Manager turns store change notifications, requeue requests and periodic
resyncs into reconcile calls. An object key is never reconciled by two workers
at once; a change that arrives while its key is being reconciled is replayed
as soon as that reconcile finishes.
"""

import heapq
import itertools
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional

from ldap_operator.reconciler import ReconcileError
from ldap_operator.resources import ObjectKey
from ldap_operator.store import ObjectStore

logger = logging.getLogger(__name__)


class Manager:
    """
    Dispatches object keys to per-kind reconcilers on a bounded worker pool.
    
    In ``once`` mode nothing is scheduled beyond the current work: failed
    reconciles and periodic resyncs are not requeued, so run_until_settled()
    returns once every object has been handled.
    """
    
    def __init__(self, store: ObjectStore, reconcilers: Dict[str, object], workers: int = 4,
                 resync_interval: float = 300.0, once: bool = False,
                 namespace: Optional[str] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.store = store
        self.reconcilers = reconcilers
        self.workers = workers
        self.resync_interval = resync_interval
        self.once = once
        self.namespace = namespace
        self.clock = clock
        
        self._cond = threading.Condition()
        self._stop = threading.Event()
        self._heap: List[tuple] = []
        self._counter = itertools.count()
        self._scheduled: Dict[ObjectKey, float] = {}
        self._active = set()
        self._replay: Dict[ObjectKey, float] = {}
        self._executor: Optional[ThreadPoolExecutor] = None
        self._next_resync = None
        
        self.failures: Dict[ObjectKey, str] = {}
        self.reconcile_count = 0
        
        store.subscribe(self.enqueue)
    
    @property
    def stopped(self) -> bool:
        return self._stop.is_set()
    
    def enqueue(self, key: ObjectKey, delay: float = 0.0) -> None:
        """Schedule key for reconciliation after delay seconds; earlier requests win."""
        if key.kind not in self.reconcilers:
            return
        if self.namespace is not None and key.namespace != self.namespace:
            return
        
        with self._cond:
            due = self.clock() + delay
            if key in self._active:
                current = self._replay.get(key)
                if current is None or due < current:
                    self._replay[key] = due
                return
            
            current = self._scheduled.get(key)
            if current is not None and current <= due:
                return
            self._scheduled[key] = due
            heapq.heappush(self._heap, (due, next(self._counter), key))
            self._cond.notify()
    
    def enqueue_all(self) -> int:
        count = 0
        for kind in self.reconcilers:
            for obj in self.store.list(kind=kind, namespace=self.namespace):
                self.enqueue(obj.key)
                count += 1
        return count
    
    def _pop_due(self) -> Optional[ObjectKey]:
        """Return the next due key (marking it active), or None. Caller holds the lock."""
        now = self.clock()
        while self._heap:
            due, _, key = self._heap[0]
            if self._scheduled.get(key) != due:
                heapq.heappop(self._heap)
                continue
            if due > now:
                return None
            heapq.heappop(self._heap)
            del self._scheduled[key]
            self._active.add(key)
            return key
        return None
    
    def _wait_timeout(self) -> float:
        timeouts = [1.0]
        if self._heap:
            timeouts.append(max(self._heap[0][0] - self.clock(), 0.0))
        if self._next_resync is not None:
            timeouts.append(max(self._next_resync - self.clock(), 0.0))
        return min(timeouts)
    
    def _settled(self) -> bool:
        return not self._active and not self._scheduled
    
    def _process(self, key: ObjectKey) -> None:
        reconciler = self.reconcilers[key.kind]
        requeue_after = None
        try:
            result = reconciler.reconcile(key)
            requeue_after = result.requeue_after
            self.failures.pop(key, None)
        except ReconcileError as e:
            logger.warning(f"Reconcile of {key} failed: {e}")
            self.failures[key] = str(e)
            requeue_after = None if self.once else self.resync_interval
        except Exception as e:
            logger.error(f"Unexpected error reconciling {key}: {e}", exc_info=True)
            self.failures[key] = f"unexpected error: {e}"
            requeue_after = None if self.once else self.resync_interval
        finally:
            # Requeue under the lock so the queue never looks settled in between
            with self._cond:
                self.reconcile_count += 1
                self._active.discard(key)
                replay = self._replay.pop(key, None)
                if replay is not None:
                    self.enqueue(key, max(replay - self.clock(), 0.0))
                if requeue_after is not None:
                    self.enqueue(key, requeue_after)
                self._cond.notify_all()
    
    def _start(self) -> None:
        self._executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix='reconcile')
        count = self.enqueue_all()
        if not self.once:
            self._next_resync = self.clock() + self.resync_interval
        logger.info(f"Manager started with {self.workers} workers, {count} objects queued")
    
    def _maybe_resync(self) -> None:
        if self._next_resync is None or self.clock() < self._next_resync:
            return
        self._next_resync = self.clock() + self.resync_interval
        count = self.enqueue_all()
        logger.debug(f"Periodic resync queued {count} objects")
    
    def _dispatch(self, until: Callable[[], bool]) -> bool:
        while not self._stop.is_set():
            self._maybe_resync()
            with self._cond:
                key = self._pop_due()
                if key is None:
                    if until():
                        return True
                    self._cond.wait(self._wait_timeout())
                    continue
            self._executor.submit(self._process, key)
        return False
    
    def run(self) -> None:
        """Dispatch until stop() is called."""
        self._start()
        try:
            self._dispatch(lambda: False)
        finally:
            self._shutdown()
    
    def run_until_settled(self, timeout: Optional[float] = None) -> bool:
        """
        Reconcile every object until no work is active or scheduled.
        
        Returns:
            True if the queue settled, False on timeout or stop
        """
        deadline = None if timeout is None else self.clock() + timeout
        
        def settled_or_expired() -> bool:
            if self._settled():
                return True
            if deadline is not None and self.clock() >= deadline:
                logger.warning(f"Work did not settle within {timeout} seconds")
                self._stop.set()
            return False
        
        self._start()
        try:
            return self._dispatch(settled_or_expired)
        finally:
            self._shutdown()
    
    def stop(self) -> None:
        """Ask the dispatcher to stop; in-flight reconciles are allowed to finish."""
        self._stop.set()
        with self._cond:
            self._cond.notify_all()
    
    def _shutdown(self) -> None:
        self._stop.set()
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        logger.info(f"Manager stopped after {self.reconcile_count} reconciles")
