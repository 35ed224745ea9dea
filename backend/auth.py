# auth.py - Authentication for the Taskboard API
# Features:
# - Passwordless sign-in with emailed 6-digit codes (bcrypt-hashed at rest)
# - JWT access + refresh tokens with JTI
# - Identity verification that distinguishes missing, malformed and expired tokens

import os
import uuid
import secrets
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

import bcrypt
from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel

from errors import Unauthorized
from services import Services, get_services

logger = logging.getLogger("taskboard.auth")

# ============================================================
# CONFIGURATION
# ============================================================

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
if not SECRET_KEY:
    SECRET_KEY = secrets.token_urlsafe(64)
    logger.warning(
        "⚠️  JWT_SECRET_KEY not set. Generated ephemeral key. "
        "Set JWT_SECRET_KEY in production!"
    )

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))
REFRESH_TOKEN_EXPIRE_DAYS = int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", "7"))
VERIFICATION_CODE_EXPIRY_MINUTES = int(os.getenv("VERIFICATION_CODE_EXPIRY_MINUTES", "10"))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

security = HTTPBearer(auto_error=False)


# ============================================================
# SCHEMAS
# ============================================================

class Identity(BaseModel):
    user_id: str
    email: str
    email_verified: bool = False
    display_name: str = ""


class CurrentUser(BaseModel):
    id: str
    email: str
    display_name: str
    email_verified: bool


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:
    """Token issuing and sign-in code handling"""

    @staticmethod
    def generate_verification_code() -> str:
        return f"{secrets.randbelow(1_000_000):06d}"

    @staticmethod
    def hash_code(code: str) -> str:
        salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
        return bcrypt.hashpw(code.encode("utf-8"), salt).decode("utf-8")

    @staticmethod
    def verify_code(code: str, code_hash: str) -> bool:
        return bcrypt.checkpw(code.encode("utf-8"), code_hash.encode("utf-8"))

    @staticmethod
    def _create_token(data: Dict[str, Any], token_type: str, expires_delta: timedelta) -> str:
        to_encode = data.copy()
        now = datetime.now(timezone.utc)
        to_encode.update({
            "exp": now + expires_delta,
            "iat": now,
            "type": token_type,
            "jti": str(uuid.uuid4()),
        })
        return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

    @staticmethod
    def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        delta = expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
        return AuthService._create_token(data, "access", delta)

    @staticmethod
    def create_refresh_token(data: Dict[str, Any]) -> str:
        return AuthService._create_token(data, "refresh", timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS))

    @staticmethod
    def token_claims(user: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "sub": user["id"],
            "email": user.get("email", ""),
            "email_verified": bool(user.get("emailVerified")),
            "name": user.get("displayName") or "",
        }

    @staticmethod
    def issue_tokens(user: Dict[str, Any]) -> Dict[str, Any]:
        claims = AuthService.token_claims(user)
        return {
            "access_token": AuthService.create_access_token(claims),
            "refresh_token": AuthService.create_refresh_token(claims),
            "token_type": "bearer",
            "expires_in": ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        }

    @staticmethod
    def verify_token(token: Optional[str], expected_type: str = "access") -> Dict[str, Any]:
        if not token:
            raise Unauthorized("Authentication required", reason="missing")
        try:
            payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        except ExpiredSignatureError:
            raise Unauthorized("Token expired", reason="expired")
        except JWTError:
            raise Unauthorized("Invalid token", reason="malformed")
        if payload.get("type") != expected_type or not payload.get("sub"):
            raise Unauthorized("Invalid token type", reason="malformed")
        return payload


def verify_identity(token: Optional[str]) -> Identity:
    payload = AuthService.verify_token(token)
    return Identity(
        user_id=payload["sub"],
        email=payload.get("email", ""),
        email_verified=bool(payload.get("email_verified")),
        display_name=payload.get("name") or "",
    )


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    services: Services = Depends(get_services),
) -> CurrentUser:
    identity = verify_identity(credentials.credentials if credentials else None)

    user = await services.store.get(f"users/{identity.user_id}")
    if not user:
        raise Unauthorized("User not found", reason="malformed")

    request.state.user_id = identity.user_id
    return CurrentUser(
        id=user["id"],
        email=user.get("email") or identity.email,
        display_name=user.get("displayName") or "",
        email_verified=bool(user.get("emailVerified")),
    )
