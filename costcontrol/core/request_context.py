import uuid

from fastapi import Request

REQUEST_ID_HEADER = "X-Request-ID"


def assign_request_id(request: Request) -> str:
    """Reuse the caller's request id when sent so ledger log lines can be correlated."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
    request.state.request_id = request_id
    return request_id
