"""
RPC client and server for Python classes based on ZeroMQ and MessagePack.

wsmirror talks to the agent running inside a workspace by simply executing calls like
list_directory(), read_file() and write_file() over the network. Change notifications
flow the other way over a publish/subscribe channel. The requirements for this are:

* Ease of exposing a number of functions with minimal boilerplate
    * No .proto files or code generation, wsmirror only talks to its own agent.
* Low overhead per call
    * An editor is latency sensitive, so there is no HTTP overhead per call.
* Asynchronous clients
    * The client side runs inside a single-threaded asyncio event loop and must never
    block it while waiting for the network.

For that reason the agent exposes its service with a small multithreaded server, and the
client side uses zmq.asyncio with a pool of request sockets so that calls can be in
flight concurrently.

Other properties:

* Dataclasses in service signatures are (de)serialized without extra declarations
* Builtin exceptions raised by the agent are raised again on the client side
    * A missing file in the workspace is a FileNotFoundError locally as well.
* Every call carries the session token, which the agent checks
"""

from abc import ABC
import asyncio
import builtins
from dataclasses import is_dataclass
from enum import auto, Enum
import logging
import threading
import time
import typing
from typing import Any, Callable, Dict, List, NoReturn, Optional, Tuple

import msgpack
import zmq
import zmq.asyncio

from wsmirror.logger import log, summarize


class Encoding:
    """
    MessagePack codec that understands dataclasses, enums and exceptions.

    Dataclasses travel as their fields tagged with the class name and are only rebuilt
    on the receiving end if that type was registered there too. The RPC endpoints
    register every dataclass that appears in the signatures of the service, so both
    sides know the same set of types without any schema files.
    """

    DATACLASS_TAG = "__data__"
    EXCEPTION_TAG = "__exception__"

    def __init__(self, *types: type):
        """Initialize a codec for the given types and everything reachable from them."""
        self._dataclasses: Dict[str, type] = {}

        for typ in types:
            self.register(typ)

    def register(self, seed_type: type) -> None:
        """Register seed_type if it's a dataclass, as well as all nested dataclasses."""
        for dataclass in _reachable_dataclasses(seed_type):
            self._dataclasses[dataclass.__qualname__] = dataclass

    def pack(self, obj: Any) -> bytes:
        return msgpack.packb(obj, default=self.encode_obj)

    def unpack(self, data: bytes) -> Any:
        return msgpack.unpackb(data, object_hook=self.decode_obj)

    def encode_obj(self, obj: Any) -> Any:
        """Turn an object msgpack doesn't know into something it does."""
        name = obj.__class__.__qualname__

        if isinstance(obj, BaseException):
            args = [arg if _is_plain(arg) else str(arg) for arg in obj.args]
            return {self.EXCEPTION_TAG: [name, args]}
        elif isinstance(obj, Enum):
            return obj.value
        elif name in self._dataclasses:
            return {self.DATACLASS_TAG: [name, obj.__dict__]}
        else:
            raise ValueError(f"unserializable object {obj!r}")

    def decode_obj(self, obj: Dict) -> Any:
        """Rebuild the dataclass or exception that a tagged map stands for."""
        if self.EXCEPTION_TAG in obj:
            name, args = obj[self.EXCEPTION_TAG]
            return _rebuild_exception(name, args)
        elif self.DATACLASS_TAG in obj:
            name, fields = obj[self.DATACLASS_TAG]

            if name not in self._dataclasses:
                raise TypeError(f"unknown dataclass '{name}'")

            try:
                return self._dataclasses[name](**fields)
            except TypeError as e:
                raise TypeError(f"failed to deserialize {name}: {e}")
        else:
            return obj


def _is_plain(value: Any) -> bool:
    """Check if a value can be sent as-is as an exception argument."""
    return value is None or isinstance(value, (bool, int, float, str, bytes))


def _rebuild_exception(name: str, args: List[Any]) -> BaseException:
    """
    Recreate an exception from its class name and arguments.

    Builtin exceptions like FileNotFoundError come back as themselves so that callers
    can handle them as usual. Anything else becomes a plain Exception.
    """
    exc_type = getattr(builtins, name, None)

    if isinstance(exc_type, type) and issubclass(exc_type, BaseException):
        return exc_type(*args)

    return Exception(*args)


def _reachable_dataclasses(seed_type: Any) -> List[type]:
    """Collect the dataclasses in a type, its fields and in types like List[T]."""
    pending = [seed_type]
    seen = set()
    found = []

    while pending:
        typ = pending.pop()

        if typ in seen:
            continue

        seen.add(typ)

        if is_dataclass(typ):
            found.append(typ)
            pending.extend(typing.get_type_hints(typ).values())
        else:
            pending.extend(
                arg
                for arg in typing.get_args(typ)
                if isinstance(arg, type) or typing.get_args(arg)
            )

    return found


class ReturnType(Enum):
    """Kind of reply to an RPC call."""

    NORMAL = auto()
    EXCEPTION = auto()
    TOKEN_ERROR = auto()


class InvalidTokenError(RuntimeError):
    """Exception raised when the agent rejects the session token of a call."""


class Base(ABC):
    """Codec setup shared by all endpoints of a service or notification channel."""

    def __init__(self, service_type: type, *extra_types: type):
        """Prepare an encoding for the signatures of service_type and extra_types."""
        self._encoding = Encoding(*self._signature_types(service_type), *extra_types)

    @staticmethod
    def _signature_types(service_type: type) -> List[type]:
        """Collect the parameter and return types of the public methods of a service."""
        types: List[type] = []

        for name in dir(service_type):
            member = getattr(service_type, name)

            if name.startswith("_") or not callable(member):
                continue

            try:
                types.extend(typing.get_type_hints(member).values())
            except TypeError:
                # Nested classes and other callables without annotations
                continue

        return types


class Server(Base):
    """
    Blocking RPC server that exposes the public methods of a service instance.

    Calls arrive on a ROUTER socket and are handed to a pool of worker threads, so a
    slow call like running a command doesn't hold up file operations of other clients.
    Methods starting with an underscore can't be called.

    Example:
    ```
    server = rpc.Server(WorkspaceService("/srv/project"), token="secret")
    server.serve("tcp://0.0.0.0:7070")
    ```
    """

    def __init__(
        self, service: Any, token: Optional[str] = None, worker_count: int = 1
    ):
        """
        Wrap a service instance.

        Calls are only accepted if they carry the given token, if any.
        """
        super().__init__(service.__class__)

        self.context = zmq.Context()

        self.service = service
        self.token = token
        self.worker_count = worker_count

    def serve(self, endpoint: str) -> NoReturn:
        """Bind to an endpoint like "tcp://0.0.0.0:7070" and handle calls forever."""
        frontend = self.context.socket(zmq.ROUTER)
        frontend.bind(endpoint)

        backend = self.context.socket(zmq.DEALER)
        backend.bind(self._workers_endpoint)

        for _ in range(self.worker_count):
            threading.Thread(target=self._run_worker, daemon=True).start()

        zmq.proxy(frontend, backend)

        assert False, "unreachable"

    @property
    def _workers_endpoint(self) -> str:
        return f"inproc://rpc-workers-{id(self)}"

    def _run_worker(self) -> NoReturn:
        socket = self.context.socket(zmq.REP)
        socket.connect(self._workers_endpoint)

        while True:
            reply = self._handle(socket.recv())

            try:
                data = self._encoding.pack(reply)
            except (TypeError, ValueError) as e:
                error = TypeError(f"unserializable result: {e}")
                data = self._encoding.pack((ReturnType.EXCEPTION.value, error))

            socket.send(data)

    def _handle(self, request: bytes) -> tuple:
        """Perform a single call and return the reply to it."""
        try:
            token, function, *args = self._encoding.unpack(request)
        except (TypeError, ValueError) as e:
            log.warning(f"rejecting malformed rpc request: {e}")
            return (ReturnType.EXCEPTION.value, ValueError(f"malformed request: {e}"))

        if token != self.token:
            return (ReturnType.TOKEN_ERROR.value, None)

        try:
            if function is None:
                # Ping
                return (ReturnType.NORMAL.value, None)
            elif function.startswith("_"):
                raise AttributeError(f"no such function: {function}")

            ret = getattr(self.service, function)(*args)

            return (ReturnType.NORMAL.value, ret)
        except Exception as e:
            log.debug(f"rpc::{function} raised {e.__class__.__name__}: {e}")
            return (ReturnType.EXCEPTION.value, e)


class Publisher(Base):
    """
    Publishing side of a topic based notification channel.

    Messages are published as a topic frame followed by the serialized payload.
    Subscribers receive all messages for topics that start with one of their
    subscriptions.
    """

    def __init__(self, payload_type: type, endpoint: str):
        """Bind a publishing socket for payloads of the given type."""
        super().__init__(object, payload_type)

        self.context = zmq.Context()

        self._socket = self.context.socket(zmq.PUB)
        self._socket.bind(endpoint)
        self._lock = threading.Lock()

    def publish(self, topic: str, payload: Any) -> None:
        """Publish a payload under the specified topic."""
        with self._lock:
            self._socket.send_multipart([topic.encode(), self._encoding.pack(payload)])

    def close(self) -> None:
        """Close the publishing socket and its ZeroMQ context."""
        with self._lock:
            self._socket.close(linger=0)
            self.context.destroy()


class Subscriber(Base):
    """Asynchronous subscribing side of a notification channel."""

    def __init__(self, payload_type: type, endpoint: str):
        """Connect a subscribing socket for payloads of the given type."""
        super().__init__(object, payload_type)

        self.endpoint = endpoint

        self.context = zmq.asyncio.Context()

        self._socket = self.context.socket(zmq.SUB)
        self._socket.connect(endpoint)

    def subscribe(self, topic: str) -> None:
        """Start receiving messages with topics starting with the given prefix."""
        self._socket.setsockopt(zmq.SUBSCRIBE, topic.encode())

    def unsubscribe(self, topic: str) -> None:
        """Stop receiving messages for a previously subscribed prefix."""
        self._socket.setsockopt(zmq.UNSUBSCRIBE, topic.encode())

    async def receive(self) -> Tuple[str, Any]:
        """Wait for the next message and return its topic and payload."""
        topic, data = await self._socket.recv_multipart()
        return topic.decode(), self._encoding.unpack(data)

    def close(self) -> None:
        """Close the subscribing socket and its ZeroMQ context."""
        self._socket.close(linger=0)
        self.context.destroy(linger=0)


class Client(Base):
    """
    Asynchronous RPC client to invoke methods on a service exposed by an RPC server.

    A single client can be used by many concurrent tasks and will internally create
    multiple socket connections as needed, because every request socket can only have
    one call in flight.

    Example:
    ```
    service = rpc.Client(WorkspaceService, "tcp://10.0.0.5:7070", token)
    entries = await service.list_directory("/src")
    ```
    """

    def __init__(
        self,
        service_type: type,
        endpoint: str,
        token: Optional[str] = None,
        timeout_ms: int = -1,
    ) -> None:
        """
        Prepare a client for service_type at an endpoint like "tcp://10.0.0.5:7070".

        No connection is made until the first call. A negative timeout means that calls
        wait for their reply indefinitely.
        """
        super().__init__(service_type)

        self.endpoint = endpoint
        self.token = token
        self.timeout_ms = timeout_ms

        self.context = zmq.asyncio.Context()

        self._idle_sockets: List[zmq.asyncio.Socket] = []
        self._socket_count = 0
        self._closed = False

    def _acquire_socket(self) -> zmq.asyncio.Socket:
        """Return an idle socket or connect a new one."""
        if self._closed:
            raise ConnectionError("rpc client is closed")

        if self._idle_sockets:
            return self._idle_sockets.pop()

        sock = self.context.socket(zmq.REQ)
        sock.connect(self.endpoint)

        self._socket_count += 1

        return sock

    def _release_socket(self, sock: zmq.asyncio.Socket, healthy: bool) -> None:
        """
        Return a socket to the pool after a call.

        A request socket that didn't get its reply is stuck in the wrong state of the
        REQUEST-REPLY lockstep and has to be discarded.
        """
        if healthy and not self._closed:
            self._idle_sockets.append(sock)
        else:
            sock.close(linger=0)
            self._socket_count -= 1

    async def ping(self, timeout_ms: Optional[int] = None) -> None:
        """
        Make an empty call to check that the server responds.

        Uses the timeout of the client unless another one is given.
        """
        await self._call(None, (), timeout_ms)

    def close(self) -> None:
        """Close the client sockets and their ZeroMQ context."""
        if self._closed:
            return

        self._closed = True

        for sock in self._idle_sockets:
            sock.close(linger=0)

        self._idle_sockets.clear()
        self.context.destroy(linger=0)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def socket_count(self) -> int:
        """Return the number of sockets for this client."""
        return self._socket_count

    @staticmethod
    def _summarize_args(args: tuple) -> Tuple[str, ...]:
        """Summarize a tuple of function arguments."""
        return tuple([summarize(arg) for arg in args])

    async def _call(
        self, name: Optional[str], args: tuple, timeout_ms: Optional[int] = None
    ) -> Any:
        """
        Call a remote function with the given arguments.

        Serializes the arguments, makes the call and deserializes the resulting return
        value or raises the resulting exception.

        ZeroMQ connections are stateless so the token is sent again with every call.
        """
        if timeout_ms is None:
            timeout_ms = self.timeout_ms

        timeout = timeout_ms / 1000 if timeout_ms >= 0 else None

        sock = self._acquire_socket()
        healthy = False

        t_call = time.time()

        try:
            # Serialize arguments and invoke remote function
            call = self._encoding.pack((self.token, name, *args))
            await sock.send(call)

            # Wait for answer (return value, exception, token error, or RPC error)
            try:
                reply = await asyncio.wait_for(sock.recv(), timeout)
            except (asyncio.TimeoutError, zmq.ZMQError):
                raise IOError("rpc call timed out")

            healthy = True
        finally:
            self._release_socket(sock, healthy)

        typ, *ret = self._encoding.unpack(reply)

        t_return = time.time()

        # Explicit check before logging because _summarize_args is relatively slow
        if log.isEnabledFor(logging.DEBUG):
            t_millis = round((t_return - t_call) * 1000)
            log.debug(f"rpc::{name}{self._summarize_args(args)} - {t_millis} ms")

        if typ == ReturnType.NORMAL.value:
            if len(ret) == 1:
                return ret[0]
            else:
                return ret
        elif typ == ReturnType.EXCEPTION.value:
            raise ret[0]
        elif typ == ReturnType.TOKEN_ERROR.value:
            raise InvalidTokenError("token mismatch between client and server")
        else:
            raise ValueError(f"unexpected return type {typ}")

    def __getattr__(self, name: str) -> Callable[..., Any]:
        """Retrieve a coroutine function to call the specified remote function."""
        if name.startswith("_"):
            raise AttributeError(name)

        async def fn(*args: Any) -> Any:
            return await self._call(name, args)

        return fn
