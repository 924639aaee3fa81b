"""
Watch engines: typed shared controllers and the factories that own them.

Each SharedController lists and watches one resource kind, keeps the latest
objects in a local store and dispatches object keys through a work queue to
the handlers registered on it. A Factory owns the controllers of one API
group and starts them together.
"""

import logging
import threading
from collections import deque
from typing import Any, Callable, Dict, List, Optional, Tuple

from kubernetes import client
from kubernetes.client.rest import ApiException

from .clients import KsmtunedClient, NodeClient, ResourceClient
from .config import (
    KSMTUNED_KIND,
    MAX_RETRIES,
    NODE_KIND,
    RETRY_BASE_DELAY_SECONDS,
    RETRY_MAX_DELAY_SECONDS,
    WATCH_RETRY_SECONDS,
    WATCH_TIMEOUT_SECONDS,
)
from .errors import FactoryError, StartError
from .logs import TRACE

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[str, Optional[Dict[str, Any]]], Any]
RemoveHandler = Callable[[str, Dict[str, Any]], Any]


class Store:
    """Thread-safe cache of objects keyed by name."""

    def __init__(self):
        self._objects: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.RLock()

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._objects.get(key)

    def set(self, key: str, obj: Dict[str, Any]) -> None:
        with self._lock:
            self._objects[key] = obj

    def delete(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._objects.pop(key, None)

    def replace(self, objects: Dict[str, Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
        """Replace the whole content; return the objects that were dropped."""
        with self._lock:
            dropped = {
                key: obj for key, obj in self._objects.items() if key not in objects
            }
            self._objects = dict(objects)
            return dropped

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._objects)

    def __len__(self) -> int:
        with self._lock:
            return len(self._objects)


class WorkQueue:
    """
    Deduplicating FIFO of keys.

    A key is handed to at most one worker at a time; a key added while it is
    being processed is queued again once the worker calls done().
    """

    def __init__(
        self,
        base_delay: float = RETRY_BASE_DELAY_SECONDS,
        max_delay: float = RETRY_MAX_DELAY_SECONDS,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._cond = threading.Condition()
        self._queue: deque = deque()
        self._dirty: set = set()
        self._processing: set = set()
        self._failures: Dict[str, int] = {}
        self._shutting_down = False

    def add(self, key: str) -> None:
        with self._cond:
            if self._shutting_down or key in self._dirty:
                return
            self._dirty.add(key)
            if key in self._processing:
                return
            self._queue.append(key)
            self._cond.notify()

    def get(self, timeout: Optional[float] = None) -> Optional[str]:
        """Return the next key, or None on shutdown or timeout."""
        with self._cond:
            if not self._cond.wait_for(
                lambda: self._queue or self._shutting_down, timeout
            ):
                return None
            if not self._queue:
                return None
            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            return key

    def done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def add_rate_limited(self, key: str) -> float:
        """Queue key again after an exponential backoff; return the delay."""
        with self._cond:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        delay = min(self.base_delay * (2 ** failures), self.max_delay)
        timer = threading.Timer(delay, self.add, args=(key,))
        timer.daemon = True
        timer.start()
        return delay

    def num_requeues(self, key: str) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def forget(self, key: str) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)


def object_name(obj: Dict[str, Any]) -> str:
    return obj.get("metadata", {}).get("name", "")


class SharedController:
    """Typed watcher for one resource kind."""

    def __init__(self, resource_client: ResourceClient, queue: Optional[WorkQueue] = None):
        self.client = resource_client
        self.kind = resource_client.kind
        self.cache = Store()
        self.queue = queue or WorkQueue()
        self._change_handlers: List[Tuple[str, ChangeHandler]] = []
        self._remove_handlers: List[Tuple[str, RemoveHandler]] = []
        self._tombstones: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._started = False
        self._threads: List[threading.Thread] = []

    def on_change(self, name: str, handler: ChangeHandler) -> None:
        """Call handler(key, obj) for every change; obj is None once deleted."""
        with self._lock:
            if self._started:
                raise RuntimeError(f"cannot add handler {name} to started {self.kind} controller")
            self._change_handlers.append((name, handler))

    def on_remove(self, name: str, handler: RemoveHandler) -> None:
        """Call handler(key, obj) with the last known object after a deletion."""
        with self._lock:
            if self._started:
                raise RuntimeError(f"cannot add handler {name} to started {self.kind} controller")
            self._remove_handlers.append((name, handler))

    @property
    def has_handlers(self) -> bool:
        return bool(self._change_handlers or self._remove_handlers)

    @property
    def started(self) -> bool:
        return self._started

    def enqueue(self, key: str) -> None:
        self.queue.add(key)

    def get(self, name: str) -> Optional[Dict[str, Any]]:
        """Return the cached object, falling back to the API."""
        obj = self.cache.get(name)
        if obj is None:
            obj = self.client.get(name)
        return obj

    def create(self, body: Dict[str, Any]) -> Dict[str, Any]:
        obj = self.client.create(body)
        self.cache.set(object_name(obj), obj)
        return obj

    def update(self, body: Dict[str, Any]) -> Dict[str, Any]:
        obj = self.client.update(body)
        self.cache.set(object_name(obj), obj)
        return obj

    def update_status(self, body: Dict[str, Any]) -> Dict[str, Any]:
        obj = self.client.update_status(body)
        self.cache.set(object_name(obj), obj)
        return obj

    def start(self, ctx, workers: int) -> None:
        """Start the watch thread and workers. Returns once they are scheduled."""
        with self._lock:
            if self._started:
                return
            self._started = True

        logger.info(f"Starting {self.kind} controller with {workers} worker(s)")

        threads = [
            threading.Thread(
                target=self._watch_loop,
                args=(ctx,),
                name=f"{self.kind.lower()}-watcher",
                daemon=True
            ),
            threading.Thread(
                target=self._shutdown_on_cancel,
                args=(ctx,),
                name=f"{self.kind.lower()}-queue-closer",
                daemon=True
            ),
        ]
        for i in range(workers):
            threads.append(threading.Thread(
                target=self._run_worker,
                name=f"{self.kind.lower()}-worker-{i}",
                daemon=True
            ))

        for thread in threads:
            thread.start()
        self._threads = threads

    def _shutdown_on_cancel(self, ctx) -> None:
        ctx.done()
        self.queue.shut_down()

    def _relist(self) -> str:
        items, resource_version = self.client.list()
        objects = {object_name(obj): obj for obj in items}

        dropped = self.cache.replace(objects)
        with self._lock:
            self._tombstones.update(dropped)

        for key in list(objects) + list(dropped):
            self.enqueue(key)

        logger.debug(f"Listed {len(objects)} {self.kind} object(s) at version {resource_version}")
        return resource_version

    def handle_event(self, event: Dict[str, Any]) -> str:
        """Apply one watch event to the store; return its resource version."""
        event_type = event["type"]
        obj = event["object"]
        resource_version = obj.get("metadata", {}).get("resourceVersion", "")

        if event_type in ("ADDED", "MODIFIED"):
            key = object_name(obj)
            self.cache.set(key, obj)
            self.enqueue(key)
        elif event_type == "DELETED":
            key = object_name(obj)
            self.cache.delete(key)
            with self._lock:
                self._tombstones[key] = obj
            self.enqueue(key)
        elif event_type == "ERROR":
            logger.warning(f"{self.kind} watch returned an error event: {obj}")
            return ""

        return resource_version

    def _watch_loop(self, ctx) -> None:
        logger.info(f"Starting {self.kind} watcher...")
        resource_version = ""

        while not ctx.cancelled:
            try:
                if not resource_version:
                    resource_version = self._relist()

                for event in self.client.watch(resource_version, timeout=WATCH_TIMEOUT_SECONDS):
                    if ctx.cancelled:
                        break
                    resource_version = self.handle_event(event) or resource_version

            except ApiException as e:
                if e.status == 410:
                    logger.info(f"{self.kind} watch expired, relisting")
                    resource_version = ""
                    continue
                logger.error(f"{self.kind} watch error: {e}")
                ctx.wait(WATCH_RETRY_SECONDS)
            except Exception as e:
                logger.error(f"Unexpected error in {self.kind} watcher: {e}")
                ctx.wait(WATCH_RETRY_SECONDS)

        logger.info(f"{self.kind} watcher stopped")

    def _run_worker(self) -> None:
        while self.process_next_item():
            pass

    def process_next_item(self, timeout: Optional[float] = None) -> bool:
        """Process one key from the queue. Returns False once the queue is shut down."""
        key = self.queue.get(timeout)
        if key is None:
            return not self.queue.shutting_down

        try:
            self.sync(key)
            self.queue.forget(key)
        except Exception as e:
            retries = self.queue.num_requeues(key)
            if retries < MAX_RETRIES:
                delay = self.queue.add_rate_limited(key)
                logger.error(f"Error syncing {self.kind} {key}, requeuing in {delay:.3f}s: {e}")
            else:
                self.queue.forget(key)
                with self._lock:
                    self._tombstones.pop(key, None)
                logger.error(f"Dropping {self.kind} {key} after {retries} retries: {e}")
        finally:
            self.queue.done(key)

        return True

    def sync(self, key: str) -> None:
        """Run every handler for key against the current state of the store."""
        obj = self.cache.get(key)

        removed = None
        if obj is None:
            with self._lock:
                removed = self._tombstones.get(key)

        for name, handler in self._change_handlers:
            logger.log(TRACE, f"Running handler {name} for {self.kind} {key}")
            handler(key, obj)

        if removed is not None:
            for name, handler in self._remove_handlers:
                logger.log(TRACE, f"Running remove handler {name} for {self.kind} {key}")
                handler(key, removed)
            with self._lock:
                if self._tombstones.get(key) is removed:
                    del self._tombstones[key]


class Factory:
    """
    Owns one ApiClient and the shared controllers of the kinds it serves.

    Subclasses declare the kinds they serve in `kinds`.
    """

    kinds: Dict[str, type] = {}

    def __init__(self, api_client: client.ApiClient):
        self.api_client = api_client
        self._controllers: Dict[str, SharedController] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, cfg: client.Configuration) -> "Factory":
        try:
            return cls(client.ApiClient(cfg))
        except Exception as e:
            raise FactoryError(f"error building {cls.__name__}: {e}") from e

    def for_kind(self, kind: str) -> SharedController:
        """Return the shared controller for kind, creating it on first use."""
        if kind not in self.kinds:
            raise ValueError(f"{type(self).__name__} does not serve kind {kind!r}")

        with self._lock:
            controller = self._controllers.get(kind)
            if controller is None:
                controller = SharedController(self.kinds[kind](self.api_client))
                self._controllers[kind] = controller
            return controller

    def controllers(self) -> List[SharedController]:
        with self._lock:
            return list(self._controllers.values())

    def start(self, ctx, threadiness: int) -> None:
        """Start every controller that has handlers registered."""
        for controller in self.controllers():
            if controller.has_handlers:
                controller.start(ctx, threadiness)


class NodeFactory(Factory):
    """Factory for the core Node kind."""

    kinds = {NODE_KIND: NodeClient}

    def node(self) -> SharedController:
        return self.for_kind(NODE_KIND)


class KsmtunedFactory(Factory):
    """Factory for the Ksmtuned custom resource."""

    kinds = {KSMTUNED_KIND: KsmtunedClient}

    def ksmtuned(self) -> SharedController:
        return self.for_kind(KSMTUNED_KIND)


def start_all(ctx, threadiness: int, *factories: Factory) -> None:
    """
    Start factories in order.

    Call only once every handler of every participating factory is registered.
    """
    for factory in factories:
        try:
            factory.start(ctx, threadiness)
        except Exception as e:
            raise StartError(f"error starting {type(factory).__name__}: {e}") from e
