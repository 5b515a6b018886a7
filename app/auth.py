# app/auth.py
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlencode

import bcrypt
import httpx
from fastapi import Header, HTTPException
from itsdangerous import BadSignature, URLSafeTimedSerializer
from jose import JWTError, jwt

import config

logger = logging.getLogger(__name__)

BCRYPT_ROUNDS = 10
GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"
OAUTH_STATE_MAX_AGE = 300


# -------------------------------
# Passwords
# -------------------------------
def hash_password(plain: str) -> str:
    raw = plain.encode("utf-8")
    if len(raw) > 72:
        raise ValueError("Password must be at most 72 bytes")
    return bcrypt.hashpw(raw, bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(plain: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# -------------------------------
# JWT
# -------------------------------
def _secret() -> str:
    if not config.JWT_SECRET:
        raise ValueError("Missing JWT_SECRET in .env")
    return config.JWT_SECRET


def create_access_token(user, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=config.JWT_EXPIRE_HOURS))
    claims = {"userId": user.id, "username": user.username, "exp": expire}
    if user.email:
        claims["email"] = user.email
    return jwt.encode(claims, _secret(), algorithm=config.JWT_ALGORITHM)


def decode_access_token(token: str) -> dict:
    try:
        return jwt.decode(token, _secret(), algorithms=[config.JWT_ALGORITHM])
    except JWTError as e:
        raise ValueError(f"Invalid token: {e}") from e


def get_current_user(authorization: Optional[str] = Header(None)) -> dict:
    """FastAPI dependency: decoded claims of the bearer token, or 401."""
    if not authorization:
        raise HTTPException(status_code=401, detail="No authorization header")

    parts = authorization.split(" ")
    token = parts[1] if len(parts) > 1 else ""
    try:
        return decode_access_token(token)
    except ValueError as e:
        logger.info("Rejected token: %s", e)
        raise HTTPException(status_code=401, detail="Invalid token")


# -------------------------------
# Google OAuth
# -------------------------------
def google_enabled() -> bool:
    return bool(config.GOOGLE_CLIENT_ID and config.GOOGLE_CLIENT_SECRET)


def google_redirect_uri() -> str:
    return f"{config.BACKEND_URL}/auth/google/callback"


def _state_serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(_secret(), salt="google-oauth-state")


def google_authorize_url() -> str:
    state = _state_serializer().dumps("google-login")
    params = {
        "client_id": config.GOOGLE_CLIENT_ID,
        "redirect_uri": google_redirect_uri(),
        "response_type": "code",
        "scope": "openid email profile",
        "state": state,
        "prompt": "select_account",
    }
    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


def verify_state(state: str):
    try:
        _state_serializer().loads(state, max_age=OAUTH_STATE_MAX_AGE)
    except BadSignature as e:
        # SignatureExpired is a BadSignature too
        raise ValueError("Invalid state or state expired") from e


async def exchange_google_code(code: str, transport: httpx.AsyncBaseTransport = None) -> dict:
    """Swap an authorization code for the user's Google profile (sub, email, name)."""
    async with httpx.AsyncClient(timeout=30.0, transport=transport) as client:
        token_response = await client.post(
            GOOGLE_TOKEN_URL,
            data={
                "client_id": config.GOOGLE_CLIENT_ID,
                "client_secret": config.GOOGLE_CLIENT_SECRET,
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": google_redirect_uri(),
            },
            headers={"Accept": "application/json"},
        )
        token_response.raise_for_status()
        access_token = token_response.json().get("access_token")
        if not access_token:
            raise ValueError("Could not retrieve access token")

        user_response = await client.get(
            GOOGLE_USERINFO_URL, headers={"Authorization": f"Bearer {access_token}"}
        )
        user_response.raise_for_status()
        profile = user_response.json()

    if not profile.get("sub"):
        raise ValueError("Google profile is missing an id")
    return profile
