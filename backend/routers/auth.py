# routers/auth.py - Email-code sign-in, tokens and profile
import hashlib
import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import EmailStr, Field

from auth import AuthService, CurrentUser, VERIFICATION_CODE_EXPIRY_MINUTES, get_current_user
from errors import BadRequest, Unauthorized
from invitations import normalize_email
from mailer import verification_code_email
from models import CamelModel, iso_now, utcnow
from services import Services, get_services

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])
logger = logging.getLogger("taskboard.auth")

MAX_CODE_ATTEMPTS = 5


# --- Schemas ---

class SendCodeRequest(CamelModel):
    email: EmailStr


class VerifyCodeRequest(CamelModel):
    email: EmailStr
    code: str = Field(..., min_length=6, max_length=6, pattern=r"^\d{6}$")
    display_name: Optional[str] = Field(None, max_length=100)


class RefreshRequest(CamelModel):
    refresh_token: str


class ProfileUpdate(CamelModel):
    display_name: Optional[str] = Field(None, min_length=1, max_length=100)
    photo_url: Optional[str] = Field(None, max_length=2000)


def _code_path(email: str) -> str:
    return f"verification_codes/{hashlib.sha256(email.encode('utf-8')).hexdigest()[:40]}"


def public_user(user: dict) -> dict:
    return {
        "id": user["id"],
        "email": user.get("email"),
        "displayName": user.get("displayName"),
        "photoURL": user.get("photoURL"),
        "emailVerified": bool(user.get("emailVerified")),
        "githubProfile": user.get("githubProfile"),
        "createdAt": user.get("createdAt"),
    }


# ============================================================
# SIGN-IN
# ============================================================

@router.post("/send-verification-code")
async def send_verification_code(data: SendCodeRequest, services: Services = Depends(get_services)):
    email = normalize_email(data.email)
    code = AuthService.generate_verification_code()
    expires_at = utcnow() + timedelta(minutes=VERIFICATION_CODE_EXPIRY_MINUTES)
    await services.store.set(_code_path(email), {
        "email": email,
        "codeHash": AuthService.hash_code(code),
        "attempts": 0,
        "expiresAt": expires_at.isoformat(),
        "createdAt": iso_now(),
    })
    await services.mailer.send(verification_code_email(email, code, VERIFICATION_CODE_EXPIRY_MINUTES))
    return {"message": "Verification code sent to your email", "email": email}


@router.post("/verify-code")
async def verify_code(data: VerifyCodeRequest, services: Services = Depends(get_services)):
    email = normalize_email(data.email)
    path = _code_path(email)
    record = await services.store.get(path)
    if not record:
        raise BadRequest("No verification code found for this email")
    if datetime.fromisoformat(record["expiresAt"]) < utcnow():
        await services.store.delete(path)
        raise BadRequest("Verification code expired")
    if not AuthService.verify_code(data.code, record["codeHash"]):
        attempts = record.get("attempts", 0) + 1
        if attempts >= MAX_CODE_ATTEMPTS:
            await services.store.delete(path)
        else:
            await services.store.update(path, {"attempts": attempts})
        raise BadRequest("Invalid verification code")
    await services.store.delete(path)

    matches = await services.store.query_by_field("users", "email", email)
    is_new_user = not matches
    if matches:
        user = matches[0]
        if not user.get("emailVerified"):
            user = await services.store.update(f"users/{user['id']}", {"emailVerified": True, "updatedAt": iso_now()})
    else:
        now = iso_now()
        user_id = services.store.push_id("users")
        user = await services.store.set(f"users/{user_id}", {
            "email": email,
            "displayName": (data.display_name or "").strip() or email.split("@")[0],
            "photoURL": None,
            "emailVerified": True,
            "githubAccessToken": None,
            "githubProfile": None,
            "createdAt": now,
            "updatedAt": now,
        })
        logger.info(f"New user {user_id[:8]} signed up")
        await services.invitations.resolve_email_invitations(user_id, email)

    return {
        "message": "Account created and signed in" if is_new_user else "Signed in",
        "isNewUser": is_new_user,
        "user": public_user(user),
        **AuthService.issue_tokens(user),
    }


@router.post("/refresh-token")
async def refresh_token(data: RefreshRequest, services: Services = Depends(get_services)):
    payload = AuthService.verify_token(data.refresh_token, expected_type="refresh")
    user = await services.store.get(f"users/{payload['sub']}")
    if not user:
        raise Unauthorized("User not found", reason="malformed")
    return AuthService.issue_tokens(user)


@router.post("/logout")
async def logout(user: CurrentUser = Depends(get_current_user)):
    # Tokens are stateless; the client drops them
    return {"message": "Logged out"}


# ============================================================
# PROFILE
# ============================================================

@router.get("/profile")
async def get_profile(
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return public_user(await services.store.get(f"users/{user.id}"))


@router.put("/profile")
async def update_profile(
    data: ProfileUpdate,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    fields = {}
    if data.display_name is not None:
        fields["displayName"] = data.display_name.strip()
    if data.photo_url is not None:
        fields["photoURL"] = data.photo_url
    fields["updatedAt"] = iso_now()
    return public_user(await services.store.update(f"users/{user.id}", fields))
