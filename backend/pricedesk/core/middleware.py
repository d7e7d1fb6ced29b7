"""FastAPI middleware for request correlation."""

import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from pricedesk.core.logging import set_correlation_id, clear_correlation_id


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Middleware for managing correlation IDs."""

    CORRELATION_ID_HEADER = "X-Correlation-ID"

    async def dispatch(
        self, request: Request, call_next: Callable
    ) -> Response:
        """Process request with correlation ID.

        Args:
            request: Incoming request
            call_next: Next middleware/handler

        Returns:
            Response with correlation ID header
        """
        correlation_id = request.headers.get(
            self.CORRELATION_ID_HEADER,
            str(uuid.uuid4()),
        )

        set_correlation_id(correlation_id)

        try:
            response = await call_next(request)
            response.headers[self.CORRELATION_ID_HEADER] = correlation_id
            return response
        finally:
            clear_correlation_id()
