import os
import hashlib
import hmac
import logging
import secrets
from datetime import timedelta
from typing import Any, Dict, List, Optional

import jwt
from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel
from pymongo.database import Database

from database import get_db, create_document, oid, utcnow
from errors import Forbidden, NotFound, Unauthorized, ValidationError
from schemas import Credentials, RoleUpdate, User

logger = logging.getLogger(__name__)

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret")
JWT_ALGORITHM = "HS256"
JWT_EXPIRES_DAYS = int(os.getenv("JWT_EXPIRES_DAYS", 7))
ADMIN_USERNAMES = {u.strip() for u in os.getenv("ADMIN_USERNAMES", "").split(",") if u.strip()}

ROLES = ("customer", "admin")

router = APIRouter()


# -------------------------------
# Passwords and tokens
# -------------------------------

def hash_password(password: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), 100_000)
    return f"{salt}${digest.hex()}"


def verify_password(password: str, stored: str) -> bool:
    salt, _, _ = stored.partition("$")
    return hmac.compare_digest(hash_password(password, salt), stored)


def issue_token(user: Dict[str, Any]) -> str:
    payload = {
        "id": str(user["_id"]),
        "username": user["username"],
        "role": user.get("role", "customer"),
        "exp": utcnow() + timedelta(days=JWT_EXPIRES_DAYS),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.PyJWTError:
        raise Unauthorized("Invalid token")


# -------------------------------
# Request context
# -------------------------------

class RequestContext(BaseModel):
    """Who is calling. Built per request and handed to every handler."""
    user_id: str
    username: str = ""
    role: str = "customer"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def require_user(authorization: Optional[str] = Header(None)) -> RequestContext:
    if not authorization or not authorization.startswith("Bearer "):
        raise Unauthorized("No token")
    claims = decode_token(authorization.split(" ", 1)[1].strip())
    if not claims.get("id"):
        raise Unauthorized("Invalid token")
    return RequestContext(
        user_id=str(claims["id"]),
        username=claims.get("username", ""),
        role=claims.get("role", "customer"),
    )


def require_admin(
    ctx: RequestContext = Depends(require_user),
    db: Database = Depends(get_db),
) -> RequestContext:
    # the token may predate a role change, the user store has the last word
    user = db["user"].find_one({"_id": oid(ctx.user_id)}, {"role": 1})
    if not user or user.get("role") != "admin":
        raise Forbidden("Admin only")
    return ctx.model_copy(update={"role": "admin"})


def user_to_dto(user: Dict[str, Any]) -> Dict[str, Any]:
    return {"id": str(user["_id"]), "username": user["username"], "role": user.get("role", "customer")}


# -------------------------------
# Auth routes
# -------------------------------

@router.post("/api/auth/register", status_code=201)
def register(payload: Credentials, db: Database = Depends(get_db)):
    if db["user"].find_one({"username": payload.username}):
        raise ValidationError("username already exists")

    role = "admin" if payload.username in ADMIN_USERNAMES else "customer"
    user_id = create_document(
        db, "user", User(username=payload.username, password_hash=hash_password(payload.password), role=role)
    )
    logger.info("Registered user %s (%s)", payload.username, role)
    return {"message": "user created", "user": {"id": user_id, "username": payload.username, "role": role}}


@router.post("/api/auth/login")
def login(payload: Credentials, db: Database = Depends(get_db)):
    user = db["user"].find_one({"username": payload.username})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise Unauthorized("Wrong username or password")
    return {"token": issue_token(user), "user": user_to_dto(user)}


@router.get("/api/auth/me")
def me(ctx: RequestContext = Depends(require_user), db: Database = Depends(get_db)):
    user = db["user"].find_one({"_id": oid(ctx.user_id)}, {"username": 1, "role": 1})
    if not user:
        raise NotFound("User not found")
    return user_to_dto(user)


# -------------------------------
# Admin: users
# -------------------------------

@router.get("/api/admin/users")
def list_users(_: RequestContext = Depends(require_admin), db: Database = Depends(get_db)) -> List[Dict[str, Any]]:
    return [user_to_dto(u) for u in db["user"].find({}, {"username": 1, "role": 1}).sort("created_at", -1)]


@router.patch("/api/admin/users/{user_id}/role")
def change_role(
    user_id: str,
    payload: RoleUpdate,
    _: RequestContext = Depends(require_admin),
    db: Database = Depends(get_db),
):
    if payload.role not in ROLES:
        raise ValidationError("Invalid role")
    result = db["user"].update_one(
        {"_id": oid(user_id)}, {"$set": {"role": payload.role, "updated_at": utcnow()}}
    )
    if result.matched_count == 0:
        raise NotFound("User not found")
    return user_to_dto(db["user"].find_one({"_id": oid(user_id)}))
