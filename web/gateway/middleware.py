"""Edge middleware: request correlation, caller identity and size limits.

The API gateway in front of this service authenticates users and forwards
who they are in two headers. This module turns those headers, plus the
correlation id, into attributes on the request:

- ``request.request_id`` from ``X-Request-ID`` (generated when absent),
  also stored in ``REQUEST_ID_CTX`` so logging filters and outbound HTTP
  clients can read it without the request object.
- ``request.caller`` from ``X-User-Id`` / ``X-User-Role``. Anonymous
  requests get ``request.caller = None``.

The response always echoes ``X-Request-ID``.
"""

import contextvars
import os
import uuid
from dataclasses import dataclass

from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")
MAX_API_BYTES = int(os.getenv("API_MAX_BYTES", str(1 * 1024 * 1024)))


@dataclass(frozen=True)
class Caller:
    user_id: str
    role: str = "customer"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class RequestIdMiddleware(MiddlewareMixin):
    """Sets and returns a per-request identifier."""

    HEADER = "HTTP_X_REQUEST_ID"       # incoming header as found in request.META
    RESPONSE_HEADER = "X-Request-ID"

    def process_request(self, request):
        rid = request.META.get(self.HEADER)
        if not rid:
            rid = str(uuid.uuid4())
        request.request_id = rid
        REQUEST_ID_CTX.set(rid)

    def process_response(self, request, response):
        rid = getattr(request, "request_id", REQUEST_ID_CTX.get())
        response[self.RESPONSE_HEADER] = rid
        return response


class CallerMiddleware(MiddlewareMixin):
    """Attach the gateway-authenticated caller to ``request.caller``.

    Roles other than ``admin`` are treated as ``customer``.
    """

    USER_HEADER = "HTTP_X_USER_ID"
    ROLE_HEADER = "HTTP_X_USER_ROLE"

    def process_request(self, request):
        user_id = (request.META.get(self.USER_HEADER) or "").strip()
        if not user_id:
            request.caller = None
            return
        role = (request.META.get(self.ROLE_HEADER) or "customer").strip().lower()
        request.caller = Caller(user_id=user_id, role="admin" if role == "admin" else "customer")


class ApiSizeLimitMiddleware(MiddlewareMixin):
    def process_request(self, request):
        if request.path.startswith("/api/"):
            clen = request.META.get("CONTENT_LENGTH")
            if clen and clen.isdigit() and int(clen) > MAX_API_BYTES:
                return JsonResponse({"detail": "PAYLOAD_TOO_LARGE"}, status=413)
