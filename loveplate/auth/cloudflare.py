import json
import logging
from functools import lru_cache

import jwt
from fastapi import HTTPException, Depends
from jwt import PyJWKClient
from starlette.requests import Request

from loveplate.utils import get_settings

log = logging.getLogger(__name__)


@lru_cache
def _pyjwk_client(certs_url: str, lifespan: int) -> PyJWKClient:
    """
    Get public keys from the specified URL.

    Args:
        certs_url: URL to fetch the public keys from.
        lifespan: Cache lifespan in seconds.

    Returns:
        A PyJWKClient instance
    """
    return PyJWKClient(
        certs_url,
        lifespan=lifespan,
    )


async def verify_token(request: Request) -> None:
    """
    Validate the Cloudflare CF_Authorization token.

    This is a Cloudflare Zero Trust Access token; the claims are stored on
    ``request.state`` for the dependencies below.
    """

    token = request.cookies.get("CF_Authorization") or request.headers.get(
        "Cf-Access-Jwt-Assertion"
    )
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized")
    try:
        signing_key = _pyjwk_client(
            get_settings().certs_url,
            lifespan=get_settings().pyjwk_cache_lifespan,
        ).get_signing_key_from_jwt(token)
        claims = jwt.decode(
            token,
            key=signing_key,
            audience=get_settings().policy_aud,
            algorithms=["RS256"],
        )
    except jwt.PyJWTError as e:
        log.debug(f"Rejected access token: {e}")
        raise HTTPException(status_code=401, detail="Unauthorized")
    request.state.jwt_claims = claims


def get_claims(request: Request) -> dict:
    """
    Get JWT claims from the request state.

    Args:
        request: The FastAPI request object.

    Returns:
        The JWT claims if available, otherwise raises an HTTPException.
    """
    if not hasattr(request.state, "jwt_claims"):
        raise HTTPException(status_code=401, detail="Unauthorized")
    return request.state.jwt_claims


def current_user(
    _: None = Depends(verify_token), claims: dict = Depends(get_claims)
) -> str:
    """
    The signed-in user's id. Cloudflare Access identifies users by email.
    """
    email = claims.get("email")
    if not email:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return email


def admin_emails() -> set[str]:
    """
    Get the set of admin emails from the admin file.

    A missing file means there are no admins.
    """
    admin_file = get_settings().admin_file
    try:
        with open(admin_file, "r") as f:
            return set(json.load(f))
    except FileNotFoundError:
        log.warning(f"Admin file {admin_file} not found, no admins configured")
        return set()
    except json.JSONDecodeError:
        log.error(f"Admin file {admin_file} is not valid JSON")
        raise HTTPException(
            status_code=500,
            detail="Internal Server Error",
        )


def is_admin(
    user: str = Depends(current_user), admins: set[str] = Depends(admin_emails)
) -> bool:
    return user in admins


def require_admin(admin: bool = Depends(is_admin)) -> None:
    """Only admins may use this route."""
    if not admin:
        raise HTTPException(status_code=403, detail="Admin access required")
