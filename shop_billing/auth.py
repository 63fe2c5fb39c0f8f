import os
from datetime import datetime, timedelta, timezone
from typing import Callable

from fastapi import Request, HTTPException
from jose import jwt, JWTError
from passlib.context import CryptContext

SECRET_KEY = os.getenv("SECRET_KEY", "CHANGE_ME_SECRET")
ALGO = "HS256"
ACCESS_TOKEN_MIN = int(os.getenv("ACCESS_TOKEN_MIN", str(60 * 24)))  # 1 day

pwd = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_pw(p: str) -> str:
    return pwd.hash(p)


def verify_pw(p: str, h: str) -> bool:
    return pwd.verify(p, h)


def create_token(user_id: int, username: str, role: str) -> str:
    exp = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_MIN)
    return jwt.encode({"sub": username, "uid": user_id, "role": role, "exp": exp}, SECRET_KEY, algorithm=ALGO)


def decode_token(token: str) -> dict:
    return jwt.decode(token, SECRET_KEY, algorithms=[ALGO])


def _token_from(request: Request):
    header = request.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return request.cookies.get("token")


def require_roles(*roles: str) -> Callable:
    def guard(request: Request):
        token = _token_from(request)
        if not token:
            raise HTTPException(401, "Login required")
        try:
            data = decode_token(token)
        except JWTError:
            raise HTTPException(401, "Invalid login")
        if roles and data.get("role") not in roles:
            raise HTTPException(403, "Not allowed")
        request.state.user = data
        return data
    return guard
