"""
Identity Verifier

Proves wallet ownership and mints short-lived session credentials.

Flow:
1. The wallet signs a login message client-side (detached Ed25519).
2. authenticate() checks the signature against the claimed wallet key.
3. A sealed credential is issued, binding the wallet to a time window.
4. Every later request presents the credential; validate() returns the
   wallet identity or rejects.

Credentials are stateless. Nothing is stored per credential; validity is
fully determined by the HMAC seal, the issuer tag and expires_at. There
is no revocation list: a credential lives until it expires.

TOKEN FORMAT:
    itsdangerous URLSafeSerializer output (HMAC-SHA256, salted):
    base64url(compact JSON claims) "." base64url(seal)
    A leading "." marks a zlib-compressed claims segment.

Claims: {"exp": int, "iat": int, "iss": str, "wal": str}

Both segments must be canonical base64url. A token whose characters decode
to the same bytes under a lenient decoder is rejected, so changing any one
character of a token always fails validation.
"""

import hashlib
import string
import time
from dataclasses import dataclass
from typing import Callable, Optional, Union

from itsdangerous import BadData, BadPayload, BadSignature, URLSafeSerializer
from itsdangerous.encoding import base64_decode, base64_encode

from ..config import IdentityConfig
from ..observability import get_logger, get_metrics
from .wallet import Signer, is_valid_wallet

logger = get_logger(__name__)

CREDENTIAL_SALT = "provenance-credential-v1"
_CLAIM_KEYS = frozenset(("exp", "iat", "iss", "wal"))
_B64URL_CHARS = frozenset(string.ascii_letters + string.digits + "-_")


class IdentityError(Exception):
    """Base exception for identity errors."""
    pass


class AuthDisabled(IdentityError):
    """Raised when no sealing secret is configured."""
    pass


class InvalidSignature(IdentityError):
    """Raised when a wallet signature does not verify."""
    pass


class CredentialError(IdentityError):
    """Base for credential validation failures."""
    pass


class CredentialMissing(CredentialError):
    pass


class CredentialMalformed(CredentialError):
    pass


class CredentialInvalid(CredentialError):
    pass


@dataclass(frozen=True)
class Credential:
    """A sealed, time-bounded proof of a verified wallet identity."""
    wallet_identity: str
    issued_at: int
    expires_at: int
    issuer: str
    token: str

    @property
    def expires_in(self) -> int:
        return self.expires_at - self.issued_at


class IdentityVerifier:
    """
    Verifies wallet signatures and issues/validates credentials.

    Construct one per deployment from an IdentityConfig. Instances share
    nothing, so tests can run verifiers with different secrets side by side.
    """

    def __init__(
        self,
        config: IdentityConfig,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._config = config
        self._clock = clock or time.time
        self._serializer: Optional[URLSafeSerializer] = None

        if config.sealing_secret:
            self._serializer = URLSafeSerializer(
                config.sealing_secret,
                salt=CREDENTIAL_SALT,
                signer_kwargs={"digest_method": hashlib.sha256},
            )
            logger.info("Identity verifier initialized", issuer=config.issuer)
        else:
            logger.warning(
                "Sealing secret not configured, authentication will be disabled",
                issuer=config.issuer,
            )

    @property
    def enabled(self) -> bool:
        return self._serializer is not None

    @property
    def issuer(self) -> str:
        return self._config.issuer

    @property
    def default_ttl(self) -> int:
        return self._config.default_ttl

    def _require_enabled(self) -> URLSafeSerializer:
        if self._serializer is None:
            raise AuthDisabled("Sealing secret not configured; authentication is disabled")
        return self._serializer

    def _now(self) -> int:
        return int(self._clock())

    # ================================================================
    # ISSUANCE
    # ================================================================

    def authenticate(
        self,
        wallet_identity: str,
        message: Union[str, bytes],
        signature: Union[str, bytes],
        ttl: Optional[int] = None,
    ) -> Credential:
        """
        Prove wallet ownership and issue a credential.

        The signature must verify over exactly these message bytes with
        wallet_identity as the key.

        Raises:
            AuthDisabled: no sealing secret
            InvalidSignature: verification failed or inputs did not decode
        """
        self._require_enabled()

        if not wallet_identity or not message or not signature:
            self._reject_login(
                "missing_fields",
                wallet_identity,
                "wallet_identity, message and signature are required",
            )

        if not is_valid_wallet(wallet_identity) or not Signer.verify(
            message, signature, wallet_identity
        ):
            self._reject_login("invalid_signature", wallet_identity, "Invalid signature")

        credential = self._issue(wallet_identity, ttl)
        get_metrics().record_login(True)
        logger.info("Login succeeded", wallet_identity=wallet_identity)
        return credential

    @staticmethod
    def _reject_login(reason: str, wallet_identity, detail: str):
        get_metrics().record_login(False)
        logger.warning("Login failed", reason=reason, wallet_identity=wallet_identity or None)
        raise InvalidSignature(detail)

    def refresh(self, token: Optional[str]) -> Credential:
        """
        Issue a fresh credential for the wallet bound to a still-valid one.

        An expired credential can never be refreshed.
        """
        self._require_enabled()
        try:
            current = self.inspect(token)
        except CredentialError as e:
            raise CredentialInvalid(f"Cannot refresh credential: {e}") from e

        credential = self._issue(current.wallet_identity, None)
        logger.info("Credential refreshed", wallet_identity=current.wallet_identity)
        return credential

    def _issue(self, wallet_identity: str, ttl: Optional[int]) -> Credential:
        serializer = self._require_enabled()
        ttl = self._config.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError(f"ttl must be positive, got {ttl}")

        issued_at = self._now()
        claims = {
            "exp": issued_at + ttl,
            "iat": issued_at,
            "iss": self._config.issuer,
            "wal": wallet_identity,
        }
        token = serializer.dumps(claims)

        return Credential(
            wallet_identity=wallet_identity,
            issued_at=issued_at,
            expires_at=claims["exp"],
            issuer=self._config.issuer,
            token=token,
        )

    # ================================================================
    # VALIDATION
    # ================================================================

    def validate(self, token: Optional[str]) -> str:
        """
        Validate a credential and return the wallet identity it is bound to.

        Raises:
            AuthDisabled, CredentialMissing, CredentialMalformed, CredentialInvalid
        """
        return self.inspect(token).wallet_identity

    def inspect(self, token: Optional[str]) -> Credential:
        """Validate a credential and return its decoded claims."""
        serializer = self._require_enabled()

        if token is None or token == "":
            raise CredentialMissing("No credential presented")

        self._check_transport(token)

        try:
            claims = serializer.loads(token)
        except BadSignature:
            raise CredentialInvalid("Credential seal verification failed")
        except BadPayload:
            raise CredentialMalformed("Credential claims could not be decoded")

        self._check_claims(claims)

        if claims["iss"] != self._config.issuer:
            raise CredentialInvalid(
                f"Credential issuer {claims['iss']!r} is not accepted here"
            )

        # exp is whole seconds; compare against the unrounded clock
        if self._clock() > claims["exp"]:
            raise CredentialInvalid("Credential has expired")

        return Credential(
            wallet_identity=claims["wal"],
            issued_at=claims["iat"],
            expires_at=claims["exp"],
            issuer=claims["iss"],
            token=token,
        )

    def introspect(self, token: Optional[str]) -> dict:
        """
        Describe a credential without raising for credential errors.

        AuthDisabled still propagates: a disabled verifier cannot vouch
        for anything.
        """
        try:
            credential = self.inspect(token)
        except CredentialError as e:
            return {"valid": False, "error": str(e)}

        return {
            "valid": True,
            "wallet_identity": credential.wallet_identity,
            "issued_at": credential.issued_at,
            "expires_at": credential.expires_at,
        }

    @staticmethod
    def _check_transport(token) -> None:
        """Reject anything that is not two canonical base64url segments."""
        if not isinstance(token, str):
            raise CredentialMalformed("Credential must be a string")

        # Compressed claims are marked with a leading "."
        segments = token[1:].split(".") if token.startswith(".") else token.split(".")
        if len(segments) != 2 or not all(segments):
            raise CredentialMalformed("Credential must have exactly two segments")

        for segment in segments:
            if not set(segment) <= _B64URL_CHARS:
                raise CredentialMalformed("Credential segment is not base64url")
            try:
                canonical = base64_encode(base64_decode(segment)).decode("ascii")
            except BadData:
                raise CredentialMalformed("Credential segment is not base64url")
            if canonical != segment:
                raise CredentialMalformed("Credential segment is not canonical base64url")

    @staticmethod
    def _check_claims(claims) -> None:
        if not isinstance(claims, dict) or set(claims) != _CLAIM_KEYS:
            raise CredentialMalformed("Credential claims have an unexpected shape")

        for key in ("exp", "iat"):
            if not isinstance(claims[key], int) or isinstance(claims[key], bool):
                raise CredentialMalformed(f"Credential claim {key!r} must be an integer")
        for key in ("iss", "wal"):
            if not isinstance(claims[key], str) or not claims[key]:
                raise CredentialMalformed(f"Credential claim {key!r} must be a string")
