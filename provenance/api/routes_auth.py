"""
Auth API Routes

Wallet login and credential lifecycle.

- POST /api/auth/login    - Prove wallet ownership, get a credential
- POST /api/auth/refresh  - Swap a valid credential for a fresh one
- GET  /api/auth/verify   - Describe a credential

There is no logout: credentials are stateless and expire on their own.
"""

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from ..core.identity import AuthDisabled, IdentityError
from .deps import bearer_token, get_verifier, http_error


router = APIRouter(prefix="/api/auth", tags=["Auth API"])


# ============================================================
# Request/Response Models
# ============================================================

class LoginRequest(BaseModel):
    wallet_identity: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    signature: str = Field(..., min_length=1, description="Base58 detached Ed25519 signature")


class LoginResponse(BaseModel):
    success: bool
    credential: str
    wallet_identity: str
    expires_in: int


class RefreshResponse(BaseModel):
    success: bool
    credential: str
    expires_in: int


class VerifyResponse(BaseModel):
    valid: bool
    wallet_identity: str | None = None
    issued_at: int | None = None
    expires_at: int | None = None
    error: str | None = None


# ============================================================
# Endpoints
# ============================================================

@router.post("/login", response_model=LoginResponse)
async def login(request: Request, body: LoginRequest):
    """
    Verify a signed login message and issue a credential.

    The client signs `message` with the wallet's key; the server checks the
    signature against `wallet_identity`.
    """
    verifier = get_verifier(request)
    try:
        credential = verifier.authenticate(
            body.wallet_identity,
            body.message,
            body.signature,
        )
    except IdentityError as e:
        raise http_error(e)

    return LoginResponse(
        success=True,
        credential=credential.token,
        wallet_identity=credential.wallet_identity,
        expires_in=credential.expires_in,
    )


@router.post("/refresh", response_model=RefreshResponse)
async def refresh(request: Request):
    """Issue a new credential for the wallet behind a still-valid one."""
    verifier = get_verifier(request)
    try:
        credential = verifier.refresh(bearer_token(request))
    except IdentityError as e:
        raise http_error(e)

    return RefreshResponse(
        success=True,
        credential=credential.token,
        expires_in=credential.expires_in,
    )


@router.get("/verify", response_model=VerifyResponse, response_model_exclude_none=True)
async def verify(request: Request):
    """
    Report whether the presented credential is valid.

    Returns 200 with valid=false for a bad credential; 401 only when none
    is presented at all.
    """
    verifier = get_verifier(request)
    if not verifier.enabled:
        raise HTTPException(status_code=503, detail="Authentication is disabled")

    token = bearer_token(request)
    if not token:
        raise HTTPException(
            status_code=401,
            detail="No credential presented",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        result = verifier.introspect(token)
    except AuthDisabled as e:
        raise http_error(e)

    return VerifyResponse(**result)
