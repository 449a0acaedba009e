import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from aiohttp import web

from datahub.broker.app.config import SessionIssuerAppKey
from datahub.broker.auth.errors import Unauthenticated
from datahub.broker.auth.session import SessionClaims
from datahub.broker.model.credentials import Provider

logger = logging.getLogger(__name__)

DEFAULT_ERROR_MESSAGES: Dict[int, str] = {
    400: "Bad Request",
    401: "Unauthorized",
    403: "Forbidden",
    404: "Not Found",
    500: "Internal Server Error",
}


def error_body(
    status: int,
    message: Optional[str] = None,
    details: Any = None,
    code: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Build the uniform error envelope.

    An empty message is replaced by the default for the status code.
    """
    error: Dict[str, Any] = {
        "message": message or DEFAULT_ERROR_MESSAGES.get(status, "An error occurred")
    }
    if code is not None:
        error["code"] = code
    if details is not None:
        error["details"] = details
    return {"error": error, "success": False, "status": status}


def error_response(
    status: int,
    message: Optional[str] = None,
    details: Any = None,
    code: Optional[str] = None,
) -> web.Response:
    return web.json_response(error_body(status, message, details, code), status=status)


@dataclass(frozen=True)
class CodeAndState:
    code: str
    state: str


async def read_code_and_state(request: web.Request) -> CodeAndState:
    """
    Parse a `{"code": ..., "state": ...}` request body.

    Raises:
        web.HTTPBadRequest: With the error envelope if the body is not a JSON object
            holding non-empty string `code` and `state` fields.
    """
    try:
        body = await request.json()
    except ValueError as e:
        raise web.HTTPBadRequest(
            text=json.dumps(error_body(400, "Incorrect body structure", str(e))),
            content_type="application/json",
        )

    missing = [
        field
        for field in ("code", "state")
        if not isinstance(body, dict)
        or not isinstance(body.get(field), str)
        or not body.get(field)
    ]
    if missing:
        raise web.HTTPBadRequest(
            text=json.dumps(
                error_body(
                    400,
                    "Incorrect body structure",
                    f"missing required field(s): {', '.join(missing)}",
                )
            ),
            content_type="application/json",
        )
    return CodeAndState(code=body["code"], state=body["state"])


def provider_from_request(request: web.Request) -> Provider:
    """
    Resolve the `{provider}` path segment.

    Raises:
        web.HTTPNotFound: With the error envelope for an unknown provider.
    """
    slug = request.match_info.get("provider", "")
    provider = Provider.from_slug(slug)
    if provider is None:
        raise web.HTTPNotFound(
            text=json.dumps(error_body(404, f"Unknown provider: {slug}")),
            content_type="application/json",
        )
    return provider


def bearer_token(request: web.Request) -> str:
    """
    Extract the bearer token from the Authorization header.

    Raises:
        Unauthenticated: If the header is missing, is not a bearer header or
            carries an empty token.
    """
    header = request.headers.get("Authorization", "")
    if not header:
        raise Unauthenticated("Authorization header required")
    if not header.startswith("Bearer "):
        raise Unauthenticated("Authorization header must start with 'Bearer '")
    token = header[len("Bearer "):].strip()
    if not token:
        raise Unauthenticated("JWT token required")
    return token


def authenticate(request: web.Request) -> SessionClaims:
    """
    Verify the request's session credential.

    This is a precondition of every storage-provider route and runs before any
    request body is read or state token consumed.
    """
    return request.app[SessionIssuerAppKey].verify(bearer_token(request))
