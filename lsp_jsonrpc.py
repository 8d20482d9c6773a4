"""
JSON-RPC 2.0 Protocol Implementation for LSP

This module provides the transport used to talk to language servers over
stdio: message types, an incremental frame parser, and a connection that
correlates requests with responses and dispatches server-initiated traffic.
Serialization is delegated to the python-lsp-jsonrpc stream writer.
"""

import asyncio
import io
import json
import logging
import re
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, BinaryIO

from pylsp_jsonrpc.streams import JsonRpcStreamWriter

from lsp_constants import DEFAULT_REQUEST_TIMEOUT, LSPErrorCode

CONTENT_LENGTH_RE = re.compile(rb"^content-length\s*:\s*(\d+)\s*$", re.IGNORECASE)
HEADER_TERMINATOR = b"\r\n\r\n"
READ_CHUNK_SIZE = 65536


class JSONRPCError(Exception):
    """Exception for JSON-RPC protocol errors."""

    def __init__(self, code: LSPErrorCode | int, message: str, data: Any | None = None):
        self.code = code
        self.message = message
        self.data = data
        code_value = code.value if isinstance(code, LSPErrorCode) else code
        super().__init__(f"JSON-RPC Error {code_value}: {message}")


class RemoteError(JSONRPCError):
    """The server answered a request with an error object."""

    @classmethod
    def from_error_object(cls, error: Any) -> "RemoteError":
        if not isinstance(error, dict):
            return cls(LSPErrorCode.UNKNOWN_ERROR_CODE, str(error))
        code = error.get("code", LSPErrorCode.UNKNOWN_ERROR_CODE.value)
        try:
            code = LSPErrorCode(code)
        except ValueError:
            pass
        return cls(code, error.get("message") or "LSP error", error.get("data"))


class RequestTimeoutError(TimeoutError):
    """A request was not answered within its deadline."""


class ConnectionDisposedError(Exception):
    """The connection was disposed while a request was in flight."""


@dataclass(frozen=True)
class JSONRPCRequest:
    """JSON-RPC request message (client or server initiated)."""

    id: int | str
    method: str
    params: Any = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"jsonrpc": "2.0", "id": self.id, "method": self.method}
        if self.params is not None:
            data["params"] = self.params
        return data


@dataclass(frozen=True)
class JSONRPCNotification:
    """JSON-RPC notification message."""

    method: str
    params: Any = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"jsonrpc": "2.0", "method": self.method}
        if self.params is not None:
            data["params"] = self.params
        return data


@dataclass(frozen=True)
class JSONRPCResponse:
    """JSON-RPC response message."""

    id: int | str | None
    result: Any = None
    error: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"jsonrpc": "2.0", "id": self.id}
        if self.error is not None:
            data["error"] = self.error
        else:
            data["result"] = self.result
        return data

    @classmethod
    def create_error(
        cls,
        message_id: int | str | None,
        code: LSPErrorCode,
        message: str,
        data: Any | None = None,
    ) -> "JSONRPCResponse":
        """Create an error response."""
        error: dict[str, Any] = {"code": code.value, "message": message}
        if data is not None:
            error["data"] = data
        return cls(id=message_id, error=error)


JSONRPCMessage = JSONRPCRequest | JSONRPCResponse | JSONRPCNotification


def decode_message(data: Any) -> JSONRPCMessage:
    """Classify a decoded JSON object as request, response or notification.

    Raises:
        JSONRPCError: If the object is not a recognizable JSON-RPC message
    """
    if not isinstance(data, dict):
        raise JSONRPCError(LSPErrorCode.INVALID_REQUEST, "Message is not an object")

    has_id = "id" in data
    method = data.get("method")

    if has_id and isinstance(method, str):
        return JSONRPCRequest(id=data["id"], method=method, params=data.get("params"))
    if has_id and ("result" in data or "error" in data):
        return JSONRPCResponse(
            id=data["id"], result=data.get("result"), error=data.get("error")
        )
    if not has_id and isinstance(method, str):
        return JSONRPCNotification(method=method, params=data.get("params"))

    raise JSONRPCError(LSPErrorCode.INVALID_REQUEST, f"Unknown message type: {data}")


def serialize_message(message: JSONRPCMessage) -> bytes:
    """Serialize a message into a single LSP frame."""
    buffer = io.BytesIO()
    JsonRpcStreamWriter(buffer).write(message.to_dict())
    return buffer.getvalue()


def _parse_content_length(header: bytes) -> int | None:
    for line in header.split(b"\r\n"):
        match = CONTENT_LENGTH_RE.match(line.strip())
        if match:
            return int(match.group(1))
    return None


class MessageFramer:
    """Incremental parser for Content-Length framed messages.

    Bytes may arrive split at arbitrary points; incomplete frames stay
    buffered until the rest arrives.
    """

    def __init__(self, logger: logging.Logger | None = None):
        self.logger = logger or logging.getLogger(__name__)
        self._buffer = bytearray()

    @property
    def buffered_bytes(self) -> int:
        return len(self._buffer)

    def feed(self, data: bytes) -> list[Any]:
        """Add bytes to the buffer and return every complete decoded body."""
        self._buffer.extend(data)
        messages: list[Any] = []

        while True:
            header_end = self._buffer.find(HEADER_TERMINATOR)
            if header_end == -1:
                break

            body_start = header_end + len(HEADER_TERMINATOR)
            content_length = _parse_content_length(bytes(self._buffer[:header_end]))
            if content_length is None:
                self.logger.error("Invalid message: missing Content-Length")
                del self._buffer[:body_start]
                continue

            body_end = body_start + content_length
            if len(self._buffer) < body_end:
                break

            body = bytes(self._buffer[body_start:body_end])
            del self._buffer[:body_end]

            try:
                messages.append(json.loads(body.decode("utf-8")))
            except (UnicodeDecodeError, json.JSONDecodeError) as e:
                self.logger.error(f"Invalid JSON in message body: {e}")

        return messages


NotificationHandler = Callable[[str, Any], None]
RequestHandler = Callable[[str, Any], Awaitable[Any]]


@dataclass
class PendingRequest:
    """An outstanding request awaiting its response."""

    method: str
    future: asyncio.Future
    timer: asyncio.TimerHandle | None = field(default=None)


class JsonRpcConnection:
    """Bidirectional JSON-RPC connection over a pair of byte streams.

    All parsing, dispatch and bookkeeping runs on the event loop the
    connection was created on. A reader thread (see ``start_reader``) only
    moves bytes from the stream onto that loop.
    """

    def __init__(self, output: BinaryIO, logger: logging.Logger | None = None):
        self.logger = logger or logging.getLogger(__name__)
        self._loop = asyncio.get_running_loop()
        self._writer = JsonRpcStreamWriter(output)
        self._framer = MessageFramer(self.logger)

        self._next_id = 1
        self._pending: dict[int, PendingRequest] = {}
        self._request_tasks: set[asyncio.Task] = set()
        self._disposed = False
        self._reader_thread: threading.Thread | None = None

        self.on_notification: NotificationHandler | None = None
        self.on_request: RequestHandler | None = None
        self.on_close: Callable[[], None] | None = None

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    @property
    def pending_request_count(self) -> int:
        return len(self._pending)

    def send_request(
        self,
        method: str,
        params: Any = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> asyncio.Future:
        """Send a request; the returned future resolves with the result."""
        future = self._loop.create_future()
        if self._disposed:
            future.set_exception(ConnectionDisposedError("Connection disposed"))
            return future

        request_id = self._next_id
        self._next_id += 1

        pending = PendingRequest(method=method, future=future)
        pending.timer = self._loop.call_later(
            timeout, self._expire_request, request_id, timeout
        )
        self._pending[request_id] = pending
        future.add_done_callback(lambda f: self._forget_cancelled(request_id, f))

        self.logger.debug(f"Sending request {request_id}: {method}")
        self._write(JSONRPCRequest(id=request_id, method=method, params=params))
        return future

    def send_notification(self, method: str, params: Any = None) -> None:
        """Send a notification; no response is expected."""
        if self._disposed:
            self.logger.debug(f"Dropping notification {method}: connection disposed")
            return
        self.logger.debug(f"Sending notification: {method}")
        self._write(JSONRPCNotification(method=method, params=params))

    def feed_data(self, data: bytes) -> None:
        """Parse incoming bytes and dispatch every complete message."""
        if self._disposed:
            return
        for raw in self._framer.feed(data):
            self._dispatch(raw)

    def start_reader(self, stream: BinaryIO, name: str = "lsp-reader") -> None:
        """Start a daemon thread that forwards ``stream`` bytes to the loop."""
        self._reader_thread = threading.Thread(
            target=self._reader_loop, args=(stream,), name=name, daemon=True
        )
        self._reader_thread.start()

    def dispose(self) -> None:
        """Reject every pending request and stop accepting traffic."""
        if self._disposed:
            return
        self._disposed = True

        pending = list(self._pending.values())
        self._pending.clear()
        for request in pending:
            if request.timer:
                request.timer.cancel()
            if not request.future.done():
                request.future.set_exception(
                    ConnectionDisposedError(
                        f"Connection disposed before '{request.method}' completed"
                    )
                )

        for task in list(self._request_tasks):
            task.cancel()
        self._request_tasks.clear()

    def _write(self, message: JSONRPCMessage) -> None:
        self._writer.write(message.to_dict())

    def _expire_request(self, request_id: int, timeout: float) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None or pending.future.done():
            return
        self.logger.warning(f"Request timeout: {pending.method} ({timeout}s)")
        pending.future.set_exception(
            RequestTimeoutError(
                f"LSP request '{pending.method}' timed out after {timeout}s"
            )
        )

    def _forget_cancelled(self, request_id: int, future: asyncio.Future) -> None:
        if not future.cancelled():
            return
        pending = self._pending.pop(request_id, None)
        if pending and pending.timer:
            pending.timer.cancel()

    def _dispatch(self, raw: Any) -> None:
        try:
            message = decode_message(raw)
        except JSONRPCError as e:
            self.logger.warning(f"Dropping message: {e}")
            return

        match message:
            case JSONRPCResponse():
                self._handle_response(message)
            case JSONRPCRequest():
                task = self._loop.create_task(self._handle_request(message))
                self._request_tasks.add(task)
                task.add_done_callback(self._request_tasks.discard)
            case JSONRPCNotification():
                self._handle_notification(message)

    def _handle_response(self, message: JSONRPCResponse) -> None:
        pending = self._pending.pop(message.id, None)
        if pending is None:
            self.logger.debug(f"No pending request for response ID: {message.id}")
            return
        if pending.timer:
            pending.timer.cancel()
        if pending.future.done():
            return
        if message.error is not None:
            pending.future.set_exception(RemoteError.from_error_object(message.error))
        else:
            pending.future.set_result(message.result)

    async def _handle_request(self, message: JSONRPCRequest) -> None:
        if self.on_request is None:
            self._write(JSONRPCResponse(id=message.id, result=None))
            return

        try:
            result = await self.on_request(message.method, message.params)
        except Exception as e:
            self.logger.error(f"Error in request handler for {message.method}: {e}")
            self._write(
                JSONRPCResponse.create_error(
                    message.id, LSPErrorCode.INTERNAL_ERROR, f"Handler error: {e}"
                )
            )
            return

        if not self._disposed:
            self._write(JSONRPCResponse(id=message.id, result=result))

    def _handle_notification(self, message: JSONRPCNotification) -> None:
        if self.on_notification is None:
            self.logger.debug(f"No handler for notification method: {message.method}")
            return
        try:
            self.on_notification(message.method, message.params)
        except Exception as e:
            self.logger.error(f"Error in notification handler for {message.method}: {e}")

    def _handle_close(self) -> None:
        self.logger.debug("Connection input closed")
        if self.on_close is not None:
            self.on_close()

    def _reader_loop(self, stream: BinaryIO) -> None:
        read = getattr(stream, "read1", stream.read)
        try:
            while True:
                data = read(READ_CHUNK_SIZE)
                if not data:
                    break
                self._loop.call_soon_threadsafe(self.feed_data, data)
        except (OSError, ValueError) as e:
            self.logger.debug(f"Reader stopped: {e}")
        finally:
            try:
                self._loop.call_soon_threadsafe(self._handle_close)
            except RuntimeError:
                self.logger.debug("Event loop closed before reader shutdown")
