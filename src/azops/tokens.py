"""
OAuth2 client-credentials token acquisition against the Microsoft
identity platform (v2.0 endpoint).
"""

import logging
from typing import Any, Optional

import requests

logger = logging.getLogger(__name__)

TOKEN_ENDPOINT = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"


class TokenRequestError(Exception):
    """Raised when the token endpoint cannot be reached or rejects the request."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_body: Any = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_body = error_body


def scope_from_resource(resource: str) -> str:
    """
    Derive the scope for a resource URI.

    'https://vault.azure.net'  -> 'https://vault.azure.net/.default'
    'https://api.contoso.com/' -> 'https://api.contoso.com/default'
    """
    if resource.endswith("/"):
        return resource + "default"
    return resource + "/.default"


def _error_body(response: Optional[requests.Response]) -> Any:
    if response is None:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def get_access_token(
    tenant_id: str,
    application_id: str,
    application_secret: str,
    scope: Optional[str] = None,
    resource: Optional[str] = None,
    timeout: Optional[float] = None,
    session: Optional[requests.Session] = None,
) -> dict[str, Any]:
    """
    Exchange an application id/secret for an access token.

    Exactly one of `scope` or `resource` must be given; a resource URI is
    turned into a scope with `scope_from_resource`.

    Args:
        tenant_id: Directory (tenant) id or domain. Required.
        application_id: Client (application) id.
        application_secret: Client secret.
        scope: Explicit scope, e.g. 'https://graph.microsoft.com/.default'.
        resource: Resource URI, e.g. 'https://management.azure.com/'.
        timeout: Passed to requests; None means no timeout.
        session: Optional requests session to send the request with.

    Returns:
        The parsed JSON token response (contains 'access_token').

    Raises:
        ValueError: On missing tenant or an invalid scope/resource combination.
        TokenRequestError: On transport failures and non-2xx responses.
    """
    if not tenant_id:
        raise ValueError("tenant_id is required")
    if (scope is None) == (resource is None):
        raise ValueError("Pass exactly one of 'scope' or 'resource'")

    if scope is None:
        scope = scope_from_resource(resource)

    url = TOKEN_ENDPOINT.format(tenant=tenant_id)
    payload = {
        "scope": scope,
        "client_id": application_id,
        "grant_type": "client_credentials",
        "client_secret": application_secret,
    }

    logger.debug(f"Requesting token for scope {scope} from {url}")
    http = session or requests
    response = None
    try:
        response = http.post(url, data=payload, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as e:
        if e.response is not None:
            response = e.response
        body = _error_body(response)
        status = response.status_code if response is not None else None
        logger.error(f"Token request for app {application_id} failed: {e}. {body}")
        raise TokenRequestError(
            f"Token request failed: {e}", status_code=status, error_body=body
        ) from e

    try:
        token = response.json()
    except ValueError as e:
        raise TokenRequestError(
            f"Token endpoint returned a non-JSON body: {e}",
            status_code=response.status_code,
            error_body=response.text,
        ) from e

    if "access_token" not in token:
        raise TokenRequestError(
            "Token response has no access_token",
            status_code=response.status_code,
            error_body=token,
        )

    logger.info(f"Acquired access token for app {application_id} ({scope})")
    return token
