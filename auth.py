import os
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List

import jwt
from fastapi import Depends, Header, HTTPException
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, get_db, paginate, to_object_id, utcnow
from errors import ConflictError, NotFoundError
from schemas import User, UserFilter, UserRole, UserStatus, UserUpdate

logger = logging.getLogger("cartflow.auth")

# Security
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
JWT_SECRET = os.getenv("JWT_SECRET", "devsecret_change_me")
JWT_EXP_MIN = int(os.getenv("JWT_EXP_MIN", "60"))


class TokenData(BaseModel):
    user_id: str
    email: EmailStr
    role: str


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def create_token(user_doc: Dict[str, Any]) -> str:
    payload = {
        "sub": str(user_doc.get("_id")),
        "email": user_doc.get("email"),
        "role": user_doc.get("role", UserRole.USER.value),
        "exp": datetime.now(timezone.utc) + timedelta(minutes=JWT_EXP_MIN),
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def decode_token(token: str) -> TokenData:
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=["HS256"])
        return TokenData(user_id=payload["sub"], email=payload["email"], role=payload.get("role", "user"))
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except (jwt.InvalidTokenError, KeyError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid token")


# -------------------- Accounts --------------------

def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(user["_id"]),
        "email": user["email"],
        "first_name": user.get("first_name", ""),
        "last_name": user.get("last_name", ""),
        "phone": user.get("phone"),
        "role": user.get("role", UserRole.USER.value),
        "status": user.get("status", UserStatus.ACTIVE.value),
    }


def find_user(db: Database, user_id: str) -> Dict[str, Any]:
    user = db["user"].find_one({"_id": to_object_id(user_id)})
    if not user:
        raise NotFoundError("User", user_id)
    return user


def create_user(db: Database, email: str, password: str, first_name: str, last_name: str,
                phone: Optional[str] = None, role: UserRole = UserRole.USER) -> Dict[str, Any]:
    if db["user"].find_one({"email": email}):
        raise ConflictError("Email already registered")
    user = User(
        email=email,
        password_hash=hash_password(password),
        first_name=first_name,
        last_name=last_name,
        phone=phone,
        role=role,
        status=UserStatus.ACTIVE,
    )
    try:
        user_id = create_document(db, "user", user)
    except DuplicateKeyError:
        raise ConflictError("Email already registered")
    return db["user"].find_one({"_id": to_object_id(user_id)})


def list_users(db: Database, filters: UserFilter) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if filters.role:
        query["role"] = filters.role.value
    if filters.status:
        query["status"] = filters.status.value
    if filters.search:
        pattern = {"$regex": re.escape(filters.search), "$options": "i"}
        query["$or"] = [{"first_name": pattern}, {"last_name": pattern}, {"email": pattern}]
    users, pagination = paginate(db, "user", query, filters.page, filters.limit, sort=[("created_at", -1)])
    return {"users": [public_user(u) for u in users], "pagination": pagination}


def update_user(db: Database, user_id: str, data: UserUpdate) -> Dict[str, Any]:
    user = find_user(db, user_id)
    changes = data.model_dump(mode="json", exclude_none=True)
    if changes:
        changes["updated_at"] = utcnow()
        db["user"].update_one({"_id": user["_id"]}, {"$set": changes})
        logger.info("User %s updated: %s", user_id, ", ".join(sorted(changes)))
    return find_user(db, user_id)


def delete_user(db: Database, user_id: str) -> None:
    result = db["user"].delete_one({"_id": to_object_id(user_id)})
    if result.deleted_count == 0:
        raise NotFoundError("User", user_id)


def authenticate(db: Database, email: str, password: str) -> Dict[str, Any]:
    user = db["user"].find_one({"email": email})
    if not user or not verify_password(password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if user.get("status", UserStatus.ACTIVE.value) != UserStatus.ACTIVE.value:
        raise HTTPException(status_code=403, detail="Account is not active")
    return user


# -------------------- Dependencies --------------------

def get_optional_user(authorization: Optional[str] = Header(default=None),
                      db: Database = Depends(get_db)) -> Optional[Dict[str, Any]]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Invalid authorization header")
    token_data = decode_token(token)
    user = db["user"].find_one({"_id": to_object_id(token_data.user_id)})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def get_current_user(user: Optional[Dict[str, Any]] = Depends(get_optional_user)) -> Dict[str, Any]:
    if not user:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


def require_role(user: Dict[str, Any], roles: List[str]):
    if user.get("role") not in roles:
        raise HTTPException(status_code=403, detail="Forbidden")


def is_admin(user: Dict[str, Any]) -> bool:
    return user.get("role") == UserRole.ADMIN.value


def get_admin_user(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    require_role(user, [UserRole.ADMIN.value])
    return user
