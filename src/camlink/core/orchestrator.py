"""
Call orchestrator: one uniform, bounded way to invoke remote operations.

Every call goes through the same steps:
- pre-flight checks (active client, connection state, operation present)
- a deadline per attempt, raced against the remote completion
- bounded retry with a fixed backoff
"""

import asyncio
import functools
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from zeep.helpers import serialize_object

from camlink.core.errors import (
    CamlinkError, DeviceTimeoutError, InvalidArgumentsError, MethodNotFoundError,
    NotConnectedError, RemoteError, UnsupportedServiceError,
)
from camlink.core.operations import AnyOperation, ServiceCategory, build_params, target_address
from camlink.models.device import ConnectionState

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 7.0
DEFAULT_RETRIES = 1
DEFAULT_BACKOFF = 0.3

# Serialization lanes. Pull-point polls use their own.
DEVICE_LANE = "device"
EVENT_LANE = "events"


@dataclass
class CallRequest:
    """Inbound operation request from a feature component."""
    operation: AnyOperation
    args: Any = None
    timeout: Optional[float] = None
    retries: Optional[int] = None
    allow_disconnected: bool = False


@dataclass
class CallResult:
    """Outcome of a successful call: plain data plus the untouched response."""
    data: Any
    raw_payload: Any = None


class PendingCall:
    """One in-flight attempt. complete() returns True exactly once."""

    def __init__(self, label: str, params: Any, deadline: float):
        self.label = label
        self.params = params
        self.deadline = deadline
        self._completed = False
        self.in_thread = False

    @property
    def completed(self) -> bool:
        return self._completed

    def complete(self) -> bool:
        if self._completed:
            return False
        self._completed = True
        return True


class CallOrchestrator:
    """
    Invokes operations on a connection's protocol client.

    Calls are serialized per connection (FIFO) unless serialize=False; the
    onvif-zeep client shares one HTTP session across services and is not
    documented as safe for concurrent use. Pull-point traffic has its own
    lane (and its own session on the client side) so a long poll never
    delays device calls. A call abandoned at its deadline while running on
    the executor keeps its lane until the thread returns.
    """

    def __init__(self, connection, timeout: float = DEFAULT_TIMEOUT, retries: int = DEFAULT_RETRIES,
                 backoff: float = DEFAULT_BACKOFF, serialize: bool = True):
        self._connection = connection
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff
        self.serialize = serialize
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def address(self) -> str:
        return self._connection.address

    async def call(self, request: CallRequest) -> CallResult:
        """
        Invoke one remote operation.

        Raises:
            NotConnectedError: no client, or not connected and not allowed
            InvalidArgumentsError: the arguments do not fit the operation
            MethodNotFoundError: the client has no such operation
            UnsupportedServiceError: the device does not offer the service
            DeviceTimeoutError: every attempt exceeded its deadline
            RemoteError: the device returned a failure on every attempt
        """
        operation = request.operation
        label = operation.label

        client = self._connection.client
        if client is None:
            raise NotConnectedError("No device client available", method=label, address=self.address)

        if not request.allow_disconnected and self._connection.state is not ConnectionState.CONNECTED:
            raise NotConnectedError("Device not connected", method=label, address=self.address)

        try:
            params = build_params(operation, request.args)
        except InvalidArgumentsError as e:
            raise InvalidArgumentsError(e.message, method=label, address=self.address) from e

        try:
            fn = client.resolve(operation.service.value, operation.method, target_address(request.args))
        except UnsupportedServiceError as e:
            raise UnsupportedServiceError(e.message, method=label, address=self.address) from e

        if fn is None:
            raise MethodNotFoundError(f"ONVIF method not found: {operation.method}", method=label,
                                      address=self.address)

        lane = EVENT_LANE if operation.service is ServiceCategory.PULLPOINT else DEVICE_LANE
        result = await self.run(fn, label=label, params=params, timeout=request.timeout,
                                retries=request.retries, lane=lane)
        return CallResult(data=serialize_object(result), raw_payload=result)

    async def run(self, fn: Callable, *, label: str, params: Any = None, timeout: Optional[float] = None,
                  retries: Optional[int] = None, lane: str = DEVICE_LANE) -> Any:
        """
        Run a client callable with deadline and retry, without pre-flight checks.

        fn is called as fn() when params is None, else fn(params). Coroutine
        functions are awaited; plain callables run on the default executor.
        The deadline of each attempt includes the time spent queued behind
        other calls in the same lane.
        """
        timeout = self.timeout if timeout is None else timeout
        retries = self.retries if retries is None else max(0, retries)

        attempt = 0
        while True:
            try:
                return await self._invoke(fn, label, params, timeout, lane)
            except (DeviceTimeoutError, RemoteError) as e:
                if attempt >= retries:
                    logger.error(f"ONVIF call {label} on {self.address} failed after {attempt + 1} attempt(s): {e}")
                    raise
                attempt += 1
                logger.debug(f"Retrying {label} on {self.address} ({attempt}/{retries}) after: {e}")
                await asyncio.sleep(self.backoff)

    def _lock(self, lane: str) -> Optional[asyncio.Lock]:
        if not self.serialize:
            return None
        if lane not in self._locks:
            self._locks[lane] = asyncio.Lock()
        return self._locks[lane]

    async def _invoke(self, fn: Callable, label: str, params: Any, timeout: float, lane: str) -> Any:
        loop = asyncio.get_running_loop()
        pending = PendingCall(label, params, loop.time() + timeout)
        outcome = loop.create_future()

        def settle(result: Any = None, error: Optional[BaseException] = None):
            if not pending.complete():
                logger.debug(f"Discarding late completion of {label} on {self.address}")
                return
            if outcome.done():
                return
            if error is not None:
                outcome.set_exception(error)
            else:
                outcome.set_result(result)

        def on_timeout():
            settle(error=DeviceTimeoutError(f"ONVIF call timeout after {timeout:g}s", method=label,
                                            address=self.address))

        def on_done(task: asyncio.Future):
            if task.cancelled():
                settle(error=RemoteError("ONVIF call cancelled", method=label, address=self.address))
                return
            error = task.exception()
            if error is not None:
                settle(error=self._wrap(error, label))
            else:
                settle(result=task.result())

        timer = loop.call_later(timeout, on_timeout)
        task = asyncio.ensure_future(self._dispatch(fn, params, pending, lane))
        task.add_done_callback(on_done)
        try:
            return await outcome
        finally:
            timer.cancel()
            # Executor work cannot be interrupted; it keeps the lane until the thread returns
            if not task.done() and not pending.in_thread:
                task.cancel()

    async def _dispatch(self, fn: Callable, params: Any, pending: PendingCall, lane: str) -> Any:
        lock = self._lock(lane)
        if lock is None:
            return await self._start(fn, params, pending)
        async with lock:
            if pending.completed:
                logger.debug(f"Skipping {pending.label} on {self.address}: deadline passed while queued")
                return None
            return await self._start(fn, params, pending)

    def _start(self, fn: Callable, params: Any, pending: PendingCall) -> Awaitable:
        args = () if params is None else (params,)
        if inspect.iscoroutinefunction(fn):
            return fn(*args)
        pending.in_thread = True
        loop = asyncio.get_running_loop()
        return loop.run_in_executor(None, functools.partial(fn, *args))

    def _wrap(self, error: BaseException, label: str) -> CamlinkError:
        if isinstance(error, CamlinkError):
            return error
        if isinstance(error, TimeoutError):
            wrapped: CamlinkError = DeviceTimeoutError(f"ONVIF call timeout: {error}", method=label,
                                                      address=self.address)
        else:
            message = str(error) or type(error).__name__
            wrapped = RemoteError(message, method=label, address=self.address)
        wrapped.__cause__ = error
        return wrapped
