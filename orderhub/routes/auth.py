"""
Order Hub - Auth Router

Login and identity. The token's subject is recorded as the submitter of
corrections, selections and approvals.
"""

from fastapi import APIRouter, Header, HTTPException
from pydantic import BaseModel
from datetime import datetime, timezone
from typing import Optional
import jwt as pyjwt
import os

router = APIRouter(prefix="/auth", tags=["auth"])

# JWT Config
JWT_SECRET = os.environ.get('JWT_SECRET', 'order-hub-secret-key')
JWT_TTL_SECONDS = int(os.environ.get('JWT_TTL_SECONDS', '86400'))

# Single operator account until SSO is wired in
TEST_USER = {
    "username": os.environ.get('ORDERHUB_ADMIN_USER', 'admin'),
    "password": os.environ.get('ORDERHUB_ADMIN_PASSWORD', 'admin'),
    "display_name": "Order Desk",
    "role": "administrator"
}


class LoginRequest(BaseModel):
    username: str
    password: str


def create_token(username: str) -> str:
    payload = {"sub": username, "exp": datetime.now(timezone.utc).timestamp() + JWT_TTL_SECONDS}
    return pyjwt.encode(payload, JWT_SECRET, algorithm="HS256")


def decode_token(token: str) -> str:
    """Return the token subject. Raises 401 on an invalid or expired token."""
    try:
        payload = pyjwt.decode(token, JWT_SECRET, algorithms=["HS256"])
    except pyjwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except pyjwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")
    return payload["sub"]


def get_current_username(authorization: Optional[str] = Header(None)) -> Optional[str]:
    """Submitter from a `Bearer` token, or None when the request carries none."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Invalid authorization header")
    return decode_token(token)


@router.post("/login")
async def login(req: LoginRequest):
    """Authenticate user and return JWT token."""
    if req.username == TEST_USER["username"] and req.password == TEST_USER["password"]:
        token = create_token(req.username)
        return {
            "token": token,
            "user": {
                "username": TEST_USER["username"],
                "display_name": TEST_USER["display_name"],
                "role": TEST_USER["role"]
            }
        }
    raise HTTPException(status_code=401, detail="Invalid credentials")


@router.get("/me")
async def get_me(authorization: Optional[str] = Header(None)):
    """Current user from the bearer token."""
    username = get_current_username(authorization)
    if username is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    if username != TEST_USER["username"]:
        return {"username": username, "display_name": username, "role": "user"}
    return {
        "username": TEST_USER["username"],
        "display_name": TEST_USER["display_name"],
        "role": TEST_USER["role"]
    }
