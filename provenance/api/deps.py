"""
Request dependencies for the API routers.

Resolves the bearer credential to a wallet identity and maps domain
errors to HTTP responses.
"""

from typing import Optional

from fastapi import HTTPException, Request

from ..core.identity import (
    AuthDisabled,
    CredentialError,
    IdentityError,
    IdentityVerifier,
    InvalidSignature,
)
from ..core.ledger import (
    DuplicateProduct,
    OwnershipMismatch,
    ProductRetired,
    ProvenanceLedger,
    UnknownProduct,
    ValidationError,
)
from ..observability import get_logger, wallet_identity_var

logger = get_logger(__name__)

BEARER_PREFIX = "Bearer "


def get_ledger(request: Request) -> ProvenanceLedger:
    """Get ledger from app state."""
    return request.app.state.ledger


def get_verifier(request: Request) -> IdentityVerifier:
    """Get identity verifier from app state."""
    return request.app.state.verifier


def bearer_token(request: Request) -> Optional[str]:
    """The raw bearer credential, or None if no Authorization header."""
    header = request.headers.get("Authorization")
    if not header:
        return None
    if not header.startswith(BEARER_PREFIX):
        raise HTTPException(
            status_code=401,
            detail="Authorization header must use the Bearer scheme",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return header[len(BEARER_PREFIX):].strip()


def require_wallet(request: Request, claimed: Optional[str] = None) -> str:
    """
    Require a valid credential and return its wallet identity.

    If the request body also names an acting identity, it must be the
    credential's wallet.
    """
    verifier = get_verifier(request)
    try:
        wallet = verifier.validate(bearer_token(request))
    except IdentityError as e:
        raise http_error(e)

    if claimed and claimed != wallet:
        logger.warning(
            "Wallet ownership verification failed",
            credential_wallet=wallet,
            claimed_wallet=claimed,
        )
        raise HTTPException(status_code=403, detail="Wallet ownership verification failed")

    wallet_identity_var.set(wallet)
    return wallet


def http_error(e: Exception) -> HTTPException:
    """
    Translate a domain error to an HTTPException.

    Must be called from inside the except block handling e, so that
    unexpected errors are logged with their traceback.
    """
    if isinstance(e, AuthDisabled):
        return HTTPException(status_code=503, detail="Authentication is disabled")
    if isinstance(e, (InvalidSignature, CredentialError)):
        return HTTPException(
            status_code=401,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )
    if isinstance(e, OwnershipMismatch):
        return HTTPException(
            status_code=403,
            detail={
                "error": "Ownership verification failed",
                "required": e.required,
                "supplied": e.supplied,
            },
        )
    if isinstance(e, UnknownProduct):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (DuplicateProduct, ProductRetired)):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, ValidationError):
        return HTTPException(status_code=400, detail=str(e))

    logger.exception("Unhandled error", error_type=type(e).__name__)
    return HTTPException(status_code=500, detail="Internal server error")
