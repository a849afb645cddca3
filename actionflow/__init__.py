import asyncio, warnings, copy, time, uuid, inspect, logging, threading, re, traceback
import datetime as _dt
from collections import deque
from collections.abc import Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Optional, List, Dict, Set, Tuple, Callable, Deque
from enum import Enum

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

DEFAULT_ACTION = "default"
LOG_EVENT = "log"
LOG_LEVELS = ("debug", "info", "warning", "error")

def _new_id() -> str: return str(uuid.uuid4())

# Strong references to coroutines scheduled from synchronous callbacks
_background: Set[asyncio.Future] = set()

def _background_done(task: asyncio.Future):
    _background.discard(task)
    if not task.cancelled() and task.exception() is not None:
        logger.error("Background listener failed", exc_info=task.exception())

def _settle(result: Any):
    """Schedule an awaitable returned by a listener that was called synchronously."""
    if not inspect.isawaitable(result): return
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        if inspect.iscoroutine(result): result.close()
        logger.warning("Dropped awaitable listener result: no running event loop")
        return
    task = asyncio.ensure_future(result)
    _background.add(task)
    task.add_done_callback(_background_done)


class Aborted(RuntimeError):
    """Raised by cooperative cancellation checks once a signal has tripped."""
    def __init__(self, reason: Any = None):
        super().__init__("Aborted" if reason is None else f"Aborted: {reason}")
        self.reason = reason


class CancelSignal:
    """Monotonic cancellation signal shared by everything that runs on a context.

    Once tripped it never resets. Long-running work is expected to poll
    ``aborted`` (or call ``raise_if_aborted()``); nothing is stopped forcibly.

    Usage:
        signal = CancelSignal()
        child = signal.child()        # trips when ``signal`` trips
        remove = child.add_observer(lambda reason: print("stopped:", reason))
        signal.abort("user quit")
        assert child.aborted and child.reason == "user quit"
    """
    def __init__(self, parent: Optional['CancelSignal'] = None):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._observers: List[Callable[[Any], Any]] = []
        self.reason: Any = None
        self._detach: Optional[Callable[[], None]] = None
        if parent is not None:
            detach = parent.add_observer(self.abort)
            if not self.aborted: self._detach = detach

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self, reason: Any = None) -> bool:
        """Trip the signal. Returns True only for the call that tripped it."""
        with self._lock:
            if self._event.is_set():
                return False
            self.reason = reason
            self._event.set()
            observers, self._observers = self._observers, []
            detach, self._detach = self._detach, None
        # Drop the parent's reference to this child
        if detach is not None: detach()
        for observer in observers:
            self._notify(observer)
        return True

    def _notify(self, observer: Callable[[Any], Any]):
        try:
            observer(self.reason)
        except Exception:
            logger.exception("Cancel observer %r failed", observer)

    def add_observer(self, observer: Callable[[Any], Any]) -> Callable[[], None]:
        """Call ``observer(reason)`` when the signal trips (immediately if it already has)."""
        with self._lock:
            if not self._event.is_set():
                self._observers.append(observer)
                return lambda: self._remove_observer(observer)
        self._notify(observer)
        return lambda: None

    def _remove_observer(self, observer: Callable[[Any], Any]):
        with self._lock:
            if observer in self._observers:
                self._observers.remove(observer)

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def child(self) -> 'CancelSignal':
        return CancelSignal(parent=self)

    def raise_if_aborted(self):
        if self.aborted:
            raise Aborted(self.reason)


class ContextLogger:
    """Per-context logger with listener hooks.

    Records are forwarded to a standard ``logging.Logger`` (the sink), then to
    per-level listeners, catch-all listeners and finally the context's ``"log"``
    event. Once the context is aborted only errors get through.
    """
    def __init__(self, context: 'SharedContext', sink: Optional[logging.Logger] = None):
        self._context = context
        self.sink = sink if sink is not None else logging.getLogger(f"{__name__}.context")
        self._listeners: Dict[str, List[Callable]] = {}
        self._all_listeners: List[Callable] = []

    def debug(self, message: str, *args): self._log("debug", message, *args)
    def info(self, message: str, *args): self._log("info", message, *args)
    def warning(self, message: str, *args): self._log("warning", message, *args)
    def error(self, message: str, *args): self._log("error", message, *args)

    def on(self, level: str, listener: Callable) -> Callable[[], None]:
        """Listen to one level; ``listener(message, *args)``. Returns a remover."""
        if level not in LOG_LEVELS:
            raise ValueError(f"level must be one of {list(LOG_LEVELS)}, got '{level}'")
        listeners = self._listeners.setdefault(level, [])
        listeners.append(listener)
        return lambda: self._discard(listeners, listener)

    def on_all(self, listener: Callable) -> Callable[[], None]:
        """Listen to every level; ``listener(level, message, *args)``. Returns a remover."""
        self._all_listeners.append(listener)
        return lambda: self._discard(self._all_listeners, listener)

    @staticmethod
    def _discard(listeners: List[Callable], listener: Callable):
        if listener in listeners:
            listeners.remove(listener)

    def _log(self, level: str, message: str, *args):
        if self._context.aborted and level != "error":
            return
        self.sink.log(getattr(logging, level.upper()), message, *args)
        for listener in list(self._listeners.get(level, ())):
            self._call(listener, message, *args)
        for listener in list(self._all_listeners):
            self._call(listener, level, message, *args)
        self._context.emit(LOG_EVENT, level, message, *args)

    @staticmethod
    def _call(listener: Callable, *args):
        try:
            _settle(listener(*args))
        except Exception:
            logger.exception("Log listener %r failed", listener)


class Locker:
    """Named, non-reentrant asyncio mutexes granted in FIFO arrival order.

    Usage:
        await shared.locker.with_lock("counter", update)

        async with shared.locker.lock("counter"):
            ...
    """
    def __init__(self):
        # resource id -> queued waiters; presence of the key means "held"
        self._locks: Dict[str, Deque[asyncio.Future]] = {}

    def is_locked(self, resource_id: str) -> bool:
        return resource_id in self._locks

    async def acquire(self, resource_id: str):
        waiters = self._locks.get(resource_id)
        if waiters is None:
            self._locks[resource_id] = deque()
            return
        fut = asyncio.get_running_loop().create_future()
        waiters.append(fut)
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # Ownership was handed over just before the cancellation landed
                self.release(resource_id)
            elif fut in waiters:
                waiters.remove(fut)
            raise

    def release(self, resource_id: str):
        waiters = self._locks.get(resource_id)
        if waiters is None:
            logger.debug("Release of '%s' ignored: lock not held", resource_id)
            return
        while waiters:
            fut = waiters.popleft()
            if not fut.done():
                fut.set_result(None)
                return
        del self._locks[resource_id]

    @asynccontextmanager
    async def lock(self, resource_id: str):
        await self.acquire(resource_id)
        try:
            yield
        finally:
            self.release(resource_id)

    async def with_lock(self, resource_id: str, body: Callable[[], Any]) -> Any:
        """Run ``body()`` (sync or async) while holding ``resource_id``."""
        async with self.lock(resource_id):
            result = body()
            if inspect.isawaitable(result):
                result = await result
            return result


class SharedContext:
    """Cross-node data bus for one run: payload, cancellation, locks, logging and events.

    Every node of a flow borrows the same context. ``data`` is shared by
    reference and is not isolated between concurrent traversals; use
    ``locker`` when exclusivity matters.

    Usage:
        shared = SharedContext({"count": 0})
        off = shared.on("progress", lambda pct: print(pct))
        flow.run(shared)
        off()
    """
    def __init__(self, data: Any = None, signal: Optional[CancelSignal] = None, logger: Optional[logging.Logger] = None):
        """
        Args:
            data: Application payload, defaults to an empty dict.
            signal: An existing CancelSignal to share; a new one is created if omitted.
            logger: ``logging.Logger`` used as the sink for ``self.logger``.
        """
        self.id = _new_id()
        self.data = {} if data is None else data
        self.signal = signal if signal is not None else CancelSignal()
        self.logger = ContextLogger(self, logger)
        self.locker = Locker()
        self._listeners: Dict[str, List[Callable]] = {}

    def __repr__(self):
        return f"SharedContext(id={self.id}, aborted={self.aborted})"

    @property
    def aborted(self) -> bool:
        return self.signal.aborted

    @property
    def abort_reason(self) -> Any:
        return self.signal.reason

    def abort(self, reason: Any = None):
        if not self.signal.aborted:
            self.logger.info("Abort requested. Reason: %s", reason if reason is not None else "No reason provided")
            self.signal.abort(reason)

    def raise_if_aborted(self):
        self.signal.raise_if_aborted()

    def on(self, event: str, listener: Callable) -> Callable[[], None]:
        """Register ``listener`` for ``event``. Returns a function that removes it."""
        self._listeners.setdefault(event, []).append(listener)
        return lambda: self.off(event, listener)

    def off(self, event: str, listener: Callable):
        listeners = self._listeners.get(event)
        if listeners and listener in listeners:
            listeners.remove(listener)

    def emit(self, event: str, *args):
        if self.aborted:
            logger.debug("Aborted. Skipping event emit for: %s", event)
            return
        for listener in list(self._listeners.get(event, ())):
            try:
                _settle(listener(*args))
            except Exception as exc:
                self._listener_failed(event, exc)
            if self.aborted:
                logger.debug("Aborted during event '%s' processing.", event)
                break

    async def emit_async(self, event: str, *args):
        if self.aborted:
            logger.debug("Aborted. Skipping event emit for: %s", event)
            return
        for listener in list(self._listeners.get(event, ())):
            try:
                result = listener(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                self._listener_failed(event, exc)
            if self.aborted:
                logger.debug("Aborted during event '%s' processing.", event)
                break

    def _listener_failed(self, event: str, exc: Exception):
        if event == LOG_EVENT:
            # Reporting through self.logger would emit "log" again
            logger.error("Error in listener for event '%s'", event, exc_info=exc)
        else:
            self.logger.error("Error in listener for event '%s': %r", event, exc)


class TraceEventType(Enum):
    RUN_START = "run_start"
    RUN_END = "run_end"
    PREP_START = "prep_start"
    PREP_RESULT = "prep_result"
    EXEC_START = "exec_start"
    EXEC_RESULT = "exec_result"
    POST_START = "post_start"
    POST_RESULT = "post_result"
    ORCHESTRATE_START = "orchestrate_start"
    ORCHESTRATE_END = "orchestrate_end"

@dataclass(frozen=True)
class TraceEvent:
    """Serializable snapshot of a node around one lifecycle phase.

    Attributes:
        event_type: The phase boundary this event marks.
        node_classes: Class names of the node, most-derived first.
        node_id: Id of the (cloned) node instance that ran.
        params: Projection of the node's params.
        shared_context_id: Id of the context the node was bound to, if any.
        shared_data: Projection of that context's data.
        phase_payload: Projection of the phase input/output, if any.
        timestamp: ``time.time()`` when the snapshot was taken.
    """
    event_type: TraceEventType
    node_classes: Tuple[str, ...]
    node_id: str
    params: Any
    shared_context_id: Optional[str]
    shared_data: Any
    phase_payload: Any = None
    timestamp: float = field(default_factory=time.time)

    def __repr__(self):
        return f"TraceEvent({self.event_type.value}, node={self.node_classes[0] if self.node_classes else '?'}:{self.node_id[:8]}, t={self.timestamp:.4f})"

    def to_dict(self) -> Dict[str, Any]:
        """Export the event in its plain serializable form."""
        return {
            "event_name": self.event_type.value,
            "node_classes": list(self.node_classes),
            "node_id": self.node_id,
            "params": self.params,
            "shared_context_id": self.shared_context_id,
            "shared_data": self.shared_data,
            "phase_payload": self.phase_payload,
            "timestamp": self.timestamp,
        }

_REGEX_FLAGS = (("i", re.IGNORECASE), ("m", re.MULTILINE), ("s", re.DOTALL), ("x", re.VERBOSE), ("a", re.ASCII))

def to_serializable(value: Any, _active: Optional[Set[int]] = None) -> Any:
    """Project ``value`` onto plain JSON-compatible data.

    Containers are rebuilt (so the result shares nothing mutable with the
    input), dates, regexes and exceptions get textual forms, cycles become
    ``"<circular>"`` and anything else becomes ``"<TypeName>"``.
    """
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (dict, list, tuple, set, frozenset)):
        active = set() if _active is None else _active
        if id(value) in active:
            return "<circular>"
        active.add(id(value))
        try:
            if isinstance(value, dict):
                return {k if isinstance(k, str) else str(k): to_serializable(v, active) for k, v in value.items()}
            return [to_serializable(v, active) for v in value]
        finally:
            active.discard(id(value))
    if isinstance(value, (_dt.datetime, _dt.date)):
        return f"date:{value.isoformat()}"
    if isinstance(value, re.Pattern):
        flags = "".join(letter for letter, flag in _REGEX_FLAGS if value.flags & flag)
        return f"regexp:/{value.pattern}/{flags}"
    if isinstance(value, BaseException):
        return {
            "name": type(value).__name__,
            "message": str(value),
            "traceback": "".join(traceback.format_exception(type(value), value, value.__traceback__)),
        }
    return f"<{type(value).__name__}>"

def _class_chain(node) -> Tuple[str, ...]:
    return tuple(cls.__name__ for cls in type(node).__mro__ if cls is not object)

def _walk(root, visit: Callable[[Any], bool]):
    """Visit every node reachable through successors and Flow start nodes.

    ``visit`` returns False to stop descending below a node.
    """
    stack = [root]
    while stack:
        node = stack.pop()
        if node is None or not visit(node): continue
        if isinstance(node, Flow): stack.append(node.start_node)
        stack.extend(reversed(list(node.successors.values())))


class Inspector:
    """Attaches tracing to an already-built graph without changing node logic.

    Attached nodes (and every clone made from them during a run) report each
    lifecycle phase to the inspector, which emits a ``TraceEvent`` on its own
    context under the event's name.

    Usage:
        inspector = Inspector(shared)
        events = inspector.collect(flow, lambda f: f.run(shared))
        print([e.event_type.value for e in events])
    """
    def __init__(self, shared: SharedContext):
        self.shared = shared

    def attach(self, node):
        """Mark every reachable node. Already-marked nodes stop the walk, so re-attaching is a no-op."""
        def visit(n):
            if n._inspector is not None: return False
            n._inspector = self
            return True
        _walk(node, visit)
        return node

    def detach(self, node):
        def visit(n):
            if n._inspector is not self: return False
            n._inspector = None
            return True
        _walk(node, visit)
        return node

    def snapshot(self, node, event_type: TraceEventType, payload: Any = None) -> TraceEvent:
        shared = node.shared
        return TraceEvent(
            event_type=event_type,
            node_classes=_class_chain(node),
            node_id=node.id,
            params=to_serializable(node.params),
            shared_context_id=shared.id if shared is not None else None,
            shared_data=to_serializable(shared.data) if shared is not None else None,
            phase_payload=to_serializable(payload),
        )

    def record(self, node, event_type: TraceEventType, payload: Any = None):
        if self.shared.aborted: return
        self.shared.emit(event_type.value, self.snapshot(node, event_type, payload))

    def _subscribe(self, events: List[TraceEvent]) -> List[Callable[[], None]]:
        return [self.shared.on(event_type.value, events.append) for event_type in TraceEventType]

    def collect(self, node, fn: Callable[[Any], Any]) -> List[TraceEvent]:
        """Attach to ``node``, run ``fn(node)`` and return the events it produced in order."""
        self.attach(node)
        events: List[TraceEvent] = []
        offs = self._subscribe(events)
        try:
            result = fn(node)
            if inspect.isawaitable(result):
                if inspect.iscoroutine(result): result.close()
                raise TypeError("collect() driver returned an awaitable; use collect_async() for async graphs")
        finally:
            for off in offs: off()
        return events

    async def collect_async(self, node, fn: Callable[[Any], Any]) -> List[TraceEvent]:
        self.attach(node)
        events: List[TraceEvent] = []
        offs = self._subscribe(events)
        try:
            await fn(node)
        finally:
            for off in offs: off()
        return events


def _is_sequence(value) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray))

def _batch_items(node, value) -> Sequence:
    if _is_sequence(value): return value
    node.log.warning("%s received non-sequence input for batch processing (%s). Treating it as empty.", type(node).__name__, type(value).__name__)
    return []

def _check_limit(concurrency_limit):
    if concurrency_limit is not None and concurrency_limit < 1: raise ValueError("concurrency_limit must be at least 1")
    return concurrency_limit

async def _gather(aws, concurrency_limit=None) -> list:
    # First failure propagates; siblings already running are left to finish,
    # queued ones never start
    if concurrency_limit is None: return list(await asyncio.gather(*aws))
    semaphore, failed = asyncio.Semaphore(concurrency_limit), asyncio.Event()
    async def limited(aw):
        try:
            async with semaphore:
                if failed.is_set(): return None
                try: return await aw
                except Exception: failed.set(); raise
        finally:
            if inspect.iscoroutine(aw) and inspect.getcoroutinestate(aw) == inspect.CORO_CREATED: aw.close()
    return list(await asyncio.gather(*(limited(aw) for aw in aws)))


class BaseNode:
    def __init__(self): self.id,self.params,self.successors,self.shared,self._inspector=_new_id(),{},{},None,None
    def __repr__(self): return f"<{type(self).__name__} {self.id[:8]}>"
    def set_params(self,params): self.params=params
    def set_shared(self,shared): self.shared=shared
    @property
    def log(self): return self.shared.logger if self.shared is not None else logger
    def on(self,action,node): self.next(node,action); return self
    def next(self,node,action=DEFAULT_ACTION):
        if action in self.successors: warnings.warn(f"Overwriting successor for action '{action}'")
        self.successors[action]=node; return node
    def get_next_node(self,action=None):
        action=action or DEFAULT_ACTION
        nxt=self.successors.get(action)
        if nxt is None and self.successors: self.log.warning("Flow ends: '%s' not found in %s",action,list(self.successors))
        return nxt
    def clone(self):
        c=copy.copy(self); c.id,c.params,c.successors=_new_id(),dict(self.params),dict(self.successors); return c
    def prep(self,shared): pass
    def exec(self,prep_res): pass
    def post(self,shared,prep_res,exec_res): pass
    def _trace(self,event_type,payload=None):
        if self._inspector is not None: self._inspector.record(self,event_type,payload)
    def _prep(self,shared):
        self._trace(TraceEventType.PREP_START); p=self.prep(shared); self._trace(TraceEventType.PREP_RESULT,p); return p
    def _exec_once(self,prep_res):
        self._trace(TraceEventType.EXEC_START,prep_res); e=self.exec(prep_res); self._trace(TraceEventType.EXEC_RESULT,e); return e
    def _exec(self,prep_res): return self._exec_once(prep_res)
    def _post(self,shared,prep_res,exec_res):
        self._trace(TraceEventType.POST_START,{"prep_res":prep_res,"exec_res":exec_res})
        a=self.post(shared,prep_res,exec_res); self._trace(TraceEventType.POST_RESULT,a); return a
    def _lifecycle(self,shared):
        p=self._prep(shared); e=self._exec(p); return self._post(shared,p,e)
    def _run(self,shared):
        self._trace(TraceEventType.RUN_START); a=self._lifecycle(shared); self._trace(TraceEventType.RUN_END,a); return a
    def _bind(self,shared):
        if shared is None: shared=self.shared if self.shared is not None else SharedContext()
        elif not isinstance(shared,SharedContext): shared=SharedContext(shared)
        self.shared=shared; return shared
    def run(self,shared=None):
        shared=self._bind(shared)
        if self.successors: shared.logger.warning("Node won't run successors. Use Flow.")
        return self._run(shared)
    def __rshift__(self,other): return self.next(other)
    def __sub__(self,action):
        if isinstance(action,str): return _ConditionalTransition(self,action)
        raise TypeError("Action must be a string")

class _ConditionalTransition:
    def __init__(self,src,action): self.src,self.action=src,action
    def __rshift__(self,tgt): return self.src.next(tgt,self.action)

class Node(BaseNode):
    def __init__(self,max_retries=1,wait=0):
        super().__init__()
        if max_retries<1: raise ValueError("max_retries must be at least 1")
        if wait<0: raise ValueError("wait must be non-negative")
        self.max_retries,self.wait=max_retries,wait
    def exec_fallback(self,prep_res,exc): raise exc
    def _exec(self,prep_res):
        for i in range(self.max_retries):
            try: return self._exec_once(prep_res)
            except Aborted: raise
            except Exception as e:
                if i==self.max_retries-1: return self.exec_fallback(prep_res,e)
                self.log.debug("%r attempt %d/%d failed: %r",self,i+1,self.max_retries,e)
                if self.wait>0: time.sleep(self.wait)

class BatchNode(Node):
    def _exec(self,items): return [super(BatchNode,self)._exec(i) for i in _batch_items(self,items)]
    def post_item(self,prep_item,exec_item): pass
    def merge_actions(self,actions): return actions[0] if actions else None
    def post(self,shared,prep_res,exec_res):
        items=prep_res if _is_sequence(prep_res) else []
        return self.merge_actions([self.post_item(p,e) for p,e in zip(items,exec_res or [])])

class Flow(BaseNode):
    def __init__(self,start=None): super().__init__(); self.start_node=start
    def start(self,start): self.start_node=start; return start
    def exec(self,prep_res): raise RuntimeError("Flow can't exec.")
    def _first(self):
        if self.start_node is None: raise ValueError(f"{type(self).__name__} has no start node")
        return self.start_node.clone()
    def _orch(self,shared,params=None):
        p=self.params if params is None else params
        self._trace(TraceEventType.ORCHESTRATE_START,p)
        curr,last_action=self._first(),None
        while curr:
            curr.set_params(dict(p)); curr.set_shared(shared)
            last_action=curr._run(shared)
            nxt=curr.get_next_node(last_action)
            curr=nxt.clone() if nxt is not None else None
        self._trace(TraceEventType.ORCHESTRATE_END,last_action)
        return last_action
    def _lifecycle(self,shared):
        p=self._prep(shared); self._orch(shared); return self._post(shared,p,None)

class BatchFlow(Flow):
    def prep(self,shared): return []
    def _lifecycle(self,shared):
        pr=self._prep(shared)
        for bp in _batch_items(self,pr): self._orch(shared,{**self.params,**bp})
        return self._post(shared,pr,None)

class AsyncNode(Node):
    async def prep_async(self,shared): pass
    async def exec_async(self,prep_res): pass
    async def exec_fallback_async(self,prep_res,exc): raise exc
    async def post_async(self,shared,prep_res,exec_res): pass
    async def _prep_async(self,shared):
        self._trace(TraceEventType.PREP_START); p=await self.prep_async(shared); self._trace(TraceEventType.PREP_RESULT,p); return p
    async def _exec_once(self,prep_res):
        self._trace(TraceEventType.EXEC_START,prep_res); e=await self.exec_async(prep_res); self._trace(TraceEventType.EXEC_RESULT,e); return e
    async def _exec(self,prep_res):
        for i in range(self.max_retries):
            try: return await self._exec_once(prep_res)
            except Aborted: raise
            except Exception as e:
                if i==self.max_retries-1: return await self.exec_fallback_async(prep_res,e)
                self.log.debug("%r attempt %d/%d failed: %r",self,i+1,self.max_retries,e)
                if self.wait>0: await asyncio.sleep(self.wait)
    async def _post_async(self,shared,prep_res,exec_res):
        self._trace(TraceEventType.POST_START,{"prep_res":prep_res,"exec_res":exec_res})
        a=await self.post_async(shared,prep_res,exec_res); self._trace(TraceEventType.POST_RESULT,a); return a
    async def _lifecycle_async(self,shared):
        p=await self._prep_async(shared); e=await self._exec(p); return await self._post_async(shared,p,e)
    async def _run_async(self,shared):
        self._trace(TraceEventType.RUN_START); a=await self._lifecycle_async(shared); self._trace(TraceEventType.RUN_END,a); return a
    async def run_async(self,shared=None):
        shared=self._bind(shared)
        if self.successors: shared.logger.warning("Node won't run successors. Use AsyncFlow.")
        return await self._run_async(shared)
    def _run(self,shared): raise RuntimeError("Use run_async.")

class AsyncBatchNode(AsyncNode,BatchNode):
    async def _exec(self,items): return [await super(AsyncBatchNode,self)._exec(i) for i in _batch_items(self,items)]
    async def post_item_async(self,prep_item,exec_item): pass
    async def merge_actions_async(self,actions): return self.merge_actions(actions)
    async def post_async(self,shared,prep_res,exec_res):
        items=prep_res if _is_sequence(prep_res) else []
        return await self.merge_actions_async([await self.post_item_async(p,e) for p,e in zip(items,exec_res or [])])

class AsyncParallelBatchNode(AsyncBatchNode):
    def __init__(self,max_retries=1,wait=0,concurrency_limit=None):
        super().__init__(max_retries,wait); self.concurrency_limit=_check_limit(concurrency_limit)
    async def _exec(self,items):
        return await _gather([AsyncNode._exec(self,i) for i in _batch_items(self,items)],self.concurrency_limit)

class AsyncFlow(Flow,AsyncNode):
    async def exec_async(self,prep_res): raise RuntimeError("Flow can't exec.")
    async def _orch_async(self,shared,params=None):
        p=self.params if params is None else params
        self._trace(TraceEventType.ORCHESTRATE_START,p)
        curr,last_action=self._first(),None
        while curr:
            curr.set_params(dict(p)); curr.set_shared(shared)
            last_action=await curr._run_async(shared) if isinstance(curr,AsyncNode) else curr._run(shared)
            nxt=curr.get_next_node(last_action)
            curr=nxt.clone() if nxt is not None else None
        self._trace(TraceEventType.ORCHESTRATE_END,last_action)
        return last_action
    async def _lifecycle_async(self,shared):
        p=await self._prep_async(shared); await self._orch_async(shared); return await self._post_async(shared,p,None)

class AsyncBatchFlow(AsyncFlow,BatchFlow):
    async def prep_async(self,shared): return []
    async def _lifecycle_async(self,shared):
        pr=await self._prep_async(shared)
        for bp in _batch_items(self,pr): await self._orch_async(shared,{**self.params,**bp})
        return await self._post_async(shared,pr,None)

class AsyncParallelBatchFlow(AsyncBatchFlow):
    def __init__(self,start=None,concurrency_limit=None):
        super().__init__(start); self.concurrency_limit=_check_limit(concurrency_limit)
    async def _lifecycle_async(self,shared):
        pr=await self._prep_async(shared)
        await _gather([self._orch_async(shared,{**self.params,**bp}) for bp in _batch_items(self,pr)],self.concurrency_limit)
        return await self._post_async(shared,pr,None)
