import time
from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.datastructures import Headers
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from src.logs.server_log import api_logger
from src.logs.debug_log import debug_logger


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        method = request.method
        path = request.url.path
        client_host = request.client.host if request.client else "unknown"

        debug_logger.log_request(request)

        try:
            response = await call_next(request)
        except Exception as e:
            debug_logger.log_exception(f"Ошибка при обработке запроса {method} {path}")
            api_logger.error(f"Error processing request {method} {path}: {str(e)}")
            raise

        process_time = time.time() - start_time
        # Query string не пишем: в нем может оказаться токен
        log_message = (
            f"Request: {method} {path} | "
            f"Status: {response.status_code} | "
            f"Client: {client_host} | "
            f"Process Time: {process_time:.3f}s"
        )
        if response.status_code >= 500:
            api_logger.error(log_message)
        elif response.status_code >= 400:
            api_logger.warning(log_message)
        else:
            api_logger.info(log_message)

        debug_logger.log_response(response, process_time)
        return response


class BodySizeLimitMiddleware:
    """Rejects request bodies larger than ``max_bytes`` with 413.

    The declared ``Content-Length`` is checked first. The body is then read
    chunk by chunk and counted, so chunked uploads without a length are held
    to the same cap. A body within the cap is replayed to the application.
    """

    def __init__(self, app: ASGIApp, max_bytes: int):
        self.app = app
        self.max_bytes = max_bytes

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        declared = headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > self.max_bytes:
            await self._reject(scope, receive, send, declared)
            return

        chunks = []
        received = 0
        more_body = True
        while more_body:
            message = await receive()
            if message["type"] != "http.request":
                # Клиент отключился, дальше разбирается приложение
                await self.app(scope, _replay([message], receive), send)
                return
            body = message.get("body", b"")
            received += len(body)
            if received > self.max_bytes:
                await self._reject(scope, receive, send, f"over {received}")
                return
            chunks.append(body)
            more_body = message.get("more_body", False)

        request_message = {"type": "http.request", "body": b"".join(chunks), "more_body": False}
        await self.app(scope, _replay([request_message], receive), send)

    async def _reject(self, scope: Scope, receive: Receive, send: Send, size) -> None:
        api_logger.warning(
            f"Rejected {scope.get('method')} {scope.get('path')}: body {size} bytes, limit {self.max_bytes}"
        )
        response = JSONResponse(
            {"error": "PAYLOAD_TOO_LARGE", "limitBytes": self.max_bytes},
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
        )
        await response(scope, receive, send)


def _replay(messages, receive: Receive) -> Receive:
    pending = list(messages)

    async def replay_receive() -> Message:
        if pending:
            return pending.pop(0)
        return await receive()

    return replay_receive
