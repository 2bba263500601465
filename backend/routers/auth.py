# Auth: register, login, /auth/me
import logging
import re
from datetime import datetime, timezone, timedelta

from fastapi import Depends, HTTPException
from pydantic import BaseModel, EmailStr, field_validator
from pymongo.errors import DuplicateKeyError

from config import STARTING_BALANCE_CENTS
from levels import level_stats_view
from money import from_cents
from security import sanitize_username

logger = logging.getLogger(__name__)

LOGIN_MAX_ATTEMPTS = 3
LOGIN_LOCKOUT_MINUTES = 5


class UserRegister(BaseModel):
    email: EmailStr
    username: str
    password: str

    @field_validator("username")
    @classmethod
    def username_chars(cls, v: str) -> str:
        v = (v or "").strip()
        if not (3 <= len(v) <= 30) or sanitize_username(v) != v:
            raise ValueError("Username must be 3-30 letters, digits, '_' or '-'")
        return v

    @field_validator("password")
    @classmethod
    def password_length(cls, v: str) -> str:
        if len(v or "") < 8:
            raise ValueError("Password must be at least 8 characters")
        return v


class UserLogin(BaseModel):
    email: EmailStr
    password: str


def register(router):
    """Register auth routes. Dependencies from server to avoid circular imports."""
    import server as srv

    get_casino = srv.get_casino
    get_current_user = srv.get_current_user

    def _user_response(account: dict) -> dict:
        return {
            "id": account["id"],
            "email": account["email"],
            "username": account["username"],
            "balance": from_cents(account.get("balance_cents") or 0),
            **level_stats_view(account.get("lifetime_xp_milli") or 0),
            "is_admin": srv.is_admin(account),
            "created_at": account.get("created_at"),
        }

    @router.post("/auth/register")
    async def register_user(user_data: UserRegister, c=Depends(get_casino)):
        email_clean = str(user_data.email).strip().lower()
        username_pattern = re.compile("^" + re.escape(user_data.username) + "$", re.IGNORECASE)
        existing = await c.ledger.find_account({"$or": [{"email": email_clean}, {"username": username_pattern}]})
        if existing:
            raise HTTPException(status_code=400, detail="Email or username already registered")
        try:
            account = await c.ledger.create_account(
                email_clean, user_data.username, srv.get_password_hash(user_data.password), STARTING_BALANCE_CENTS,
            )
        except DuplicateKeyError:
            raise HTTPException(status_code=400, detail="Email or username already registered")
        logger.info("Registered account %s (%s)", account["id"], account["username"])
        token = srv.create_access_token({"sub": account["id"], "username": account["username"]})
        return {"token": token, "user": _user_response(account)}

    @router.post("/auth/login")
    async def login(user_data: UserLogin, c=Depends(get_casino)):
        email_clean = str(user_data.email).strip().lower()
        now = datetime.now(timezone.utc)
        if not (user_data.password or "").strip():
            raise HTTPException(status_code=422, detail="Password is required.")

        lockout = await c.db.login_lockouts.find_one({"email": email_clean}, {"_id": 0, "locked_until": 1})
        if lockout and lockout.get("locked_until"):
            locked_until = datetime.fromisoformat(lockout["locked_until"].replace("Z", "+00:00"))
            if locked_until > now:
                wait_min = (int((locked_until - now).total_seconds()) + 59) // 60
                raise HTTPException(
                    status_code=429,
                    detail=f"Too many failed login attempts. Try again in {wait_min} minute(s).",
                )

        account = await c.ledger.find_account({"email": email_clean})
        if not account or not srv.verify_password(user_data.password, account["password_hash"]):
            doc = await c.db.login_lockouts.find_one({"email": email_clean}, {"_id": 0, "failed_count": 1})
            count = ((doc or {}).get("failed_count") or 0) + 1
            locked_until = now + timedelta(minutes=LOGIN_LOCKOUT_MINUTES) if count >= LOGIN_MAX_ATTEMPTS else None
            await c.db.login_lockouts.update_one(
                {"email": email_clean},
                {"$set": {
                    "email": email_clean,
                    "failed_count": count,
                    "locked_until": locked_until.isoformat() if locked_until else None,
                    "updated_at": now.isoformat(),
                }},
                upsert=True,
            )
            raise HTTPException(status_code=401, detail="Invalid email or password")
        await c.db.login_lockouts.delete_one({"email": email_clean})
        token = srv.create_access_token({"sub": account["id"], "username": account["username"]})
        return {"token": token, "user": _user_response(account)}

    @router.get("/auth/me")
    async def get_me(current_user: dict = Depends(get_current_user)):
        return _user_response(current_user)
