"""
HTTP handlers for the sign-in and account linking flows.

Routes:
- GET  /auth/{provider}/oauth-url    authorization URL with a fresh state token
- POST /auth/primary, /auth/google   complete primary sign-in, returns a session token
- POST /auth/{provider}/accounts     link a storage-provider account
- GET  /auth/{provider}/accounts     list linked storage-provider accounts

Storage-provider routes verify the bearer session credential before doing anything
else, so an unauthenticated request never consumes a state token.

AuthError subclasses raised by the orchestrator propagate to the error middleware,
which renders them with their own status and code.
"""

import json
import logging

from aiohttp import web

from datahub.broker.app.config import AuthOrchestratorAppKey
from datahub.broker.app.handlers.helpers import (
    authenticate,
    error_body,
    error_response,
    provider_from_request,
    read_code_and_state,
)
from datahub.broker.auth.errors import PersistFailed
from datahub.broker.model.credentials import Provider

logger = logging.getLogger(__name__)

PROVIDER_DISPLAY_NAMES = {
    Provider.GOOGLE: "Google",
    Provider.GITHUB: "GitHub",
}


def _not_found(message: str) -> web.HTTPNotFound:
    return web.HTTPNotFound(
        text=json.dumps(error_body(404, message)),
        content_type="application/json",
    )


def _storage_provider(request: web.Request) -> Provider:
    provider = provider_from_request(request)
    if not provider.requires_account_identifier:
        raise _not_found(f"{PROVIDER_DISPLAY_NAMES[provider]} accounts cannot be linked")
    return provider


async def handle_oauth_url(request: web.Request) -> web.Response:
    orchestrator = request.app[AuthOrchestratorAppKey]
    provider = provider_from_request(request)

    if provider.requires_account_identifier:
        authenticate(request)
    elif provider is not orchestrator.primary_provider:
        raise _not_found(f"{PROVIDER_DISPLAY_NAMES[provider]} is not a sign-in provider")

    auth_url = await orchestrator.authorization_url(provider)
    return web.json_response({"authURL": auth_url, "success": True})


async def handle_sign_in(request: web.Request) -> web.Response:
    orchestrator = request.app[AuthOrchestratorAppKey]
    if "provider" in request.match_info:
        provider = provider_from_request(request)
        if provider is not orchestrator.primary_provider:
            raise _not_found(
                f"{PROVIDER_DISPLAY_NAMES[provider]} is not a sign-in provider"
            )

    body = await read_code_and_state(request)
    result = await orchestrator.sign_in(body.code, body.state)
    return web.json_response(
        {
            "message": "Authentication successful",
            "success": True,
            "token": result.token,
        }
    )


async def handle_link_account(request: web.Request) -> web.Response:
    orchestrator = request.app[AuthOrchestratorAppKey]
    provider = _storage_provider(request)
    claims = authenticate(request)

    body = await read_code_and_state(request)
    account_identifier = await orchestrator.link_account(
        claims.guid, provider, body.code, body.state
    )
    display_name = PROVIDER_DISPLAY_NAMES[provider]
    return web.json_response(
        {
            "message": f"{display_name} account linked successfully",
            "success": True,
            f"{provider.slug}Username": account_identifier,
        }
    )


async def handle_list_accounts(request: web.Request) -> web.Response:
    orchestrator = request.app[AuthOrchestratorAppKey]
    provider = _storage_provider(request)
    claims = authenticate(request)

    try:
        accounts = await orchestrator.list_accounts(claims.guid, provider)
    except PersistFailed as e:
        return error_response(500, e.message, e.details, e.code)
    return web.json_response({"success": True, "accounts": accounts})
