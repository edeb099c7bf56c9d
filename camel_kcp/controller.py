"""
Event delivery for reconcilers
A controller lists and watches one resource type across all logical clusters,
filters events, and hands requests to a pool of workers through a work queue.
"""

import collections
import enum
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from kubernetes import watch
from kubernetes.client.rest import ApiException

from .predicates import EventFilter
from .resources import CLUSTER_ANNOTATION

logger = logging.getLogger(__name__)


class Outcome(enum.Enum):
    DONE = 'Done'
    RETRY_LATER = 'RetryLater'


@dataclass(frozen=True)
class Request:
    """Identity of an object to reconcile, qualified by its logical cluster"""

    cluster: str
    name: str
    namespace: str = ''

    def __str__(self) -> str:
        if self.namespace:
            return f'{self.cluster}|{self.namespace}/{self.name}'
        return f'{self.cluster}|{self.name}'


def request_for(obj: Dict) -> Optional[Request]:
    metadata = obj.get('metadata') or {}
    cluster = (metadata.get('annotations') or {}).get(CLUSTER_ANNOTATION)
    name = metadata.get('name')
    if not cluster or not name:
        return None
    return Request(cluster=cluster, name=name, namespace=metadata.get('namespace') or '')


class WorkQueue:
    """
    Deduplicating work queue.
    A request queued several times is processed once, and a request is never
    handed to two workers at the same time: adding it while it is processed
    queues it again once the worker is done.
    """

    def __init__(self, base_delay: float = 0.5, max_delay: float = 60.0):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._cond = threading.Condition()
        self._queue = collections.deque()
        self._dirty = set()
        self._processing = set()
        self._failures: Dict[Request, int] = {}
        self._timers = set()
        self._shutdown = False

    def add(self, item: Request) -> None:
        with self._cond:
            if self._shutdown or item in self._dirty:
                return
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            self._cond.notify()

    def get(self, timeout: Optional[float] = None) -> Optional[Request]:
        """Next request, or None on timeout or shutdown"""
        with self._cond:
            while not self._queue and not self._shutdown:
                if not self._cond.wait(timeout):
                    return None
            if not self._queue:
                return None
            item = self._queue.popleft()
            self._dirty.discard(item)
            self._processing.add(item)
            return item

    def done(self, item: Request) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._cond.notify()

    def add_after(self, item: Request, delay: float) -> None:
        with self._cond:
            if self._shutdown:
                return
            timer = threading.Timer(delay, self._fire, args=(item,))
            timer.daemon = True
            self._timers.add(timer)
        timer.start()

    def _fire(self, item: Request) -> None:
        with self._cond:
            self._timers = {t for t in self._timers if t.is_alive() and t is not threading.current_thread()}
        self.add(item)

    def add_rate_limited(self, item: Request) -> float:
        """Queue the request again after its exponential backoff delay"""
        with self._cond:
            failures = self._failures.get(item, 0)
            self._failures[item] = failures + 1
        delay = min(self.base_delay * (2 ** failures), self.max_delay)
        self.add_after(item, delay)
        return delay

    def forget(self, item: Request) -> None:
        with self._cond:
            self._failures.pop(item, None)

    def shut_down(self) -> None:
        with self._cond:
            self._shutdown = True
            timers, self._timers = self._timers, set()
            self._cond.notify_all()
        for timer in timers:
            timer.cancel()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)


class Controller:
    """Feeds a reconciler with the filtered events of one resource type"""

    def __init__(self, name: str, list_func: Callable, list_kwargs: Dict, event_filter: EventFilter,
                 reconciler: Callable[[Request], Outcome], stop: threading.Event,
                 workers: int = 2, queue: Optional[WorkQueue] = None,
                 watch_factory: Callable[[], watch.Watch] = watch.Watch, timeout_seconds: int = 60):
        self.name = name
        self.list_func = list_func
        self.list_kwargs = list_kwargs
        self.event_filter = event_filter
        self.reconciler = reconciler
        self.stop = stop
        self.workers = workers
        self.queue = queue or WorkQueue()
        self.watch_factory = watch_factory
        self.timeout_seconds = timeout_seconds
        # Last observed state of every object, used to compare old and new on updates
        self._observed: Dict[Request, Dict] = {}
        self._threads: List[threading.Thread] = []

    def handle_event(self, event_type: str, obj: Dict) -> bool:
        """Record an event and queue its request if the filter accepts it"""
        request = request_for(obj)
        if request is None:
            logger.debug(f"[{self.name}] Ignoring {event_type} event for an object without logical cluster")
            return False

        if event_type == 'ADDED':
            previous = self._observed.get(request)
            self._observed[request] = obj
            # A re-list after the watch expired replays known objects as ADDED
            if previous is None:
                accepted = self.event_filter.create(obj)
            else:
                accepted = self.event_filter.update(previous, obj)
        elif event_type == 'MODIFIED':
            previous = self._observed.get(request, {})
            self._observed[request] = obj
            accepted = self.event_filter.update(previous, obj)
        elif event_type == 'DELETED':
            self._observed.pop(request, None)
            accepted = self.event_filter.delete(obj)
        else:
            logger.warning(f"[{self.name}] Unknown event type: {event_type}")
            return False

        if accepted:
            self.queue.add(request)
        return accepted

    def _sync(self, items: List[Dict]) -> None:
        listed = set()
        for obj in items:
            request = request_for(obj)
            if request is not None:
                listed.add(request)
            self.handle_event('ADDED', obj)

        for request in [r for r in self._observed if r not in listed]:
            self.handle_event('DELETED', self._observed[request])

    def watch_loop(self) -> None:
        """List, then watch from the listed resource version until stopped"""
        resource_version = None

        while not self.stop.is_set():
            w = self.watch_factory()
            try:
                if resource_version is None:
                    listing = self.list_func(**self.list_kwargs)
                    self._sync(listing.get('items', []))
                    resource_version = listing.get('metadata', {}).get('resourceVersion')
                    logger.info(f"[{self.name}] Listed {len(listing.get('items', []))} objects")

                for event in w.stream(self.list_func,
                                      resource_version=resource_version,
                                      timeout_seconds=self.timeout_seconds,
                                      **self.list_kwargs):
                    if self.stop.is_set():
                        break
                    self.handle_event(event['type'], event['object'])
                else:
                    resource_version = getattr(w, 'resource_version', None) or resource_version

            except ApiException as e:
                if e.status == 410:
                    logger.info(f"[{self.name}] Watch expired, listing again")
                else:
                    logger.error(f"[{self.name}] Watch failed: {e}", exc_info=True)
                    self.stop.wait(5)
                resource_version = None
            except Exception as e:
                if self.stop.is_set():
                    break
                logger.error(f"[{self.name}] Error in watch loop: {e}", exc_info=True)
                resource_version = None
                self.stop.wait(5)
            finally:
                w.stop()

        logger.info(f"[{self.name}] Watch stopped")

    def process(self, request: Request) -> Optional[Outcome]:
        """Run the reconciler once, scheduling a retry when it asks for one"""
        try:
            outcome = self.reconciler(request)
        except Exception as e:
            delay = self.queue.add_rate_limited(request)
            logger.error(f"[{self.name}] Failed to reconcile {request}, retrying in {delay:.1f}s: {e}",
                         exc_info=True)
            return None

        if outcome is Outcome.RETRY_LATER:
            delay = self.queue.add_rate_limited(request)
            logger.info(f"[{self.name}] Retrying {request} in {delay:.1f}s")
        else:
            self.queue.forget(request)
        return outcome

    def worker_loop(self) -> None:
        while not self.stop.is_set():
            request = self.queue.get(timeout=1.0)
            if request is None:
                continue
            try:
                self.process(request)
            finally:
                self.queue.done(request)

    def start(self) -> None:
        logger.info(f"[{self.name}] Starting with {self.workers} workers")
        self._threads = [threading.Thread(target=self.watch_loop, name=f'{self.name}-watch', daemon=True)]
        for i in range(self.workers):
            self._threads.append(
                threading.Thread(target=self.worker_loop, name=f'{self.name}-worker-{i}', daemon=True))
        for thread in self._threads:
            thread.start()

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for the threads, once the stop event is set"""
        self.queue.shut_down()
        for thread in self._threads:
            thread.join(timeout)
