from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from contextvars import ContextVar

import logging
import time
import uuid

# Request id of the request currently being served, read by log.ContextualFilter
request_id_context: ContextVar[str] = ContextVar("request_id", default="N/A")

REQUEST_ID_HEADER = "X-Request-ID"

logger = logging.getLogger(__name__)


class RequestIDMiddleware(BaseHTTPMiddleware):
    @classmethod
    def request_id_context(cls):
        return request_id_context

    async def dispatch(self, request: Request, call_next):
        # Reuse the storefront's id when it sends one so ingestion logs can be joined
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())[:8]
        token = request_id_context.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id
            logger.debug("%s %s -> %d in %.1fms", request.method, request.url.path,
                         response.status_code, (time.perf_counter() - started) * 1000)
        except Exception:
            logger.exception("Unhandled error during %s %s", request.method, request.url.path)
            raise
        finally:
            request_id_context.reset(token)

        return response
