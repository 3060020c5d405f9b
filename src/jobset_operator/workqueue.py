"""
Keyed work queue and worker pool driving reconciliation.

Watch events for a JobSet and for any of its child Jobs all enqueue the same
``(namespace, name)`` key. The queue guarantees:

  * a key waiting in the queue is stored once, however often it is added;
  * a key being processed is never handed to another worker; re-adds during
    processing are queued once, when the current pass calls ``done``;
  * failed keys come back after an exponential backoff
    ``min(max_delay, base_delay * 2**failures)``.

That gives at most one in-flight pass per JobSet while different JobSets
reconcile concurrently on the worker pool.
"""

import collections
import logging
import threading
import time

from .errors import ConflictError, NotFoundError, PermanentModelError, TransientCollaboratorError

logger = logging.getLogger(__name__)


class RateLimitingQueue:
    """Deduplicating FIFO of keys with delayed and rate-limited re-adds."""

    def __init__(self, base_delay=1.0, max_delay=300.0):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._cond = threading.Condition()
        self._queue = collections.deque()
        self._dirty = set()
        self._processing = set()
        self._failures = {}
        self._timers = set()
        self._shutting_down = False

    @property
    def shutting_down(self):
        return self._shutting_down

    def add(self, key):
        """Queue ``key`` unless it is already waiting."""
        with self._cond:
            if self._shutting_down or key in self._dirty:
                return
            self._dirty.add(key)
            if key in self._processing:
                return
            self._queue.append(key)
            self._cond.notify()

    def add_after(self, key, delay):
        """Queue ``key`` once ``delay`` seconds have passed."""
        if delay <= 0:
            self.add(key)
            return

        def fire():
            with self._cond:
                self._timers.discard(timer)
            self.add(key)

        timer = threading.Timer(delay, fire)
        timer.daemon = True
        with self._cond:
            if self._shutting_down:
                return
            self._timers.add(timer)
        timer.start()

    def backoff(self, key):
        """Delay the next rate-limited add of ``key`` would wait."""
        with self._cond:
            failures = self._failures.get(key, 0)
        return min(self.max_delay, self.base_delay * (2 ** failures))

    def add_rate_limited(self, key):
        """Queue ``key`` after its backoff and grow the backoff for next time."""
        with self._cond:
            delay = self.backoff(key)
            self._failures[key] = self._failures.get(key, 0) + 1
        self.add_after(key, delay)
        return delay

    def num_requeues(self, key):
        with self._cond:
            return self._failures.get(key, 0)

    def forget(self, key):
        """Reset the backoff of ``key``."""
        with self._cond:
            self._failures.pop(key, None)

    def get(self, timeout=None):
        """Next key to process, or None on timeout or shutdown."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._queue and not self._shutting_down:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return None
                self._cond.wait(remaining)
            if not self._queue:
                return None
            key = self._queue.popleft()
            self._dirty.discard(key)
            self._processing.add(key)
            return key

    def done(self, key):
        """Mark ``key`` processed; requeue it if it was re-added meanwhile."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                self._cond.notify()

    def shutdown(self):
        with self._cond:
            self._shutting_down = True
            timers = list(self._timers)
            self._timers.clear()
            self._cond.notify_all()
        for timer in timers:
            timer.cancel()


class Controller:
    """Pool of worker threads running ``reconcile(namespace, name)`` per key."""

    def __init__(self, reconcile, workers=4, base_delay=1.0, max_delay=300.0):
        self.reconcile = reconcile
        self.workers = workers
        self.queue = RateLimitingQueue(base_delay=base_delay, max_delay=max_delay)
        self._threads = []

    def enqueue(self, namespace, name):
        self.queue.add((namespace, name))

    def start(self):
        for i in range(self.workers):
            thread = threading.Thread(target=self._run_worker, name=f"jobset-worker-{i}", daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info(f"Started {self.workers} reconcile workers")

    def stop(self, timeout=10.0):
        self.queue.shutdown()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info("Reconcile workers stopped")

    def _run_worker(self):
        while not self.queue.shutting_down:
            self.process_next(timeout=1.0)

    def process_next(self, timeout=None):
        """Run one pass for the next key; False if none was available."""
        key = self.queue.get(timeout=timeout)
        if key is None:
            return False

        namespace, name = key
        try:
            self.reconcile(namespace, name)
            self.queue.forget(key)
        except NotFoundError:
            logger.debug(f"JobSet {namespace}/{name} no longer exists")
            self.queue.forget(key)
        except ConflictError as e:
            logger.info(f"Conflict reconciling JobSet {namespace}/{name}, retrying: {e}")
            self.queue.add(key)
        except TransientCollaboratorError as e:
            delay = self.queue.add_rate_limited(key)
            logger.warning(f"Transient error reconciling JobSet {namespace}/{name}: {e}. Retrying in {delay:.1f}s")
        except PermanentModelError as e:
            logger.error(f"JobSet {namespace}/{name} cannot be reconciled, not retrying: {e}")
            self.queue.forget(key)
        except Exception as e:
            delay = self.queue.add_rate_limited(key)
            logger.error(f"Reconciliation error for JobSet {namespace}/{name}, retrying in {delay:.1f}s: {e}", exc_info=True)
        finally:
            self.queue.done(key)
        return True
