from ipaddress import ip_address

from fastapi import Request

from errors import AuthenticationMissing, AuthenticationRequired, AuthorizationDenied
from schemas import ApiKeyPurpose

API_KEY_HEADER = "x-api-key"
API_KEY_ADMIN_PATH = "/admin/api-keys"


# =========================
# API KEY EXTRACTION
# =========================

def extract_api_key(request: Request) -> str:
    """
    Extract API key from request headers.
    Header: X-API-Key
    """
    api_key = request.headers.get(API_KEY_HEADER)
    if not api_key:
        raise AuthenticationMissing()
    return api_key


# =========================
# PUBLIC ROUTES
# =========================

def is_loopback(host: str) -> bool:
    try:
        return ip_address(host).is_loopback
    except ValueError:
        return False


def is_public_route(path: str, method: str, client_ip: str) -> bool:
    """
    Routes served without an API key:
    - GET / (health)
    - POST /admin/api-keys from the local machine (bootstrap the first key)
    """
    if path == "/":
        return True

    return path == API_KEY_ADMIN_PATH and method == "POST" and is_loopback(client_ip)


# =========================
# AUTHORIZATION
# =========================

def assert_api_key_purpose(request: Request, wanted_purpose: ApiKeyPurpose) -> None:
    """
    Gate a route on the purpose of the authenticated key.
    Does not touch the data a handler returns.
    """
    api_key = getattr(request.state, "api_key", None)
    if api_key is None:
        raise AuthenticationRequired()

    if api_key.purpose != wanted_purpose:
        raise AuthorizationDenied()


def require_purpose(wanted_purpose: ApiKeyPurpose):
    """
    Dependency form of assert_api_key_purpose, resolved before the handler body runs.
    """

    def dependency(request: Request) -> None:
        assert_api_key_purpose(request, wanted_purpose)

    return dependency
