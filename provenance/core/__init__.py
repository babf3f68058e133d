# Core provenance services
from .hasher import Hasher, CanonicalSerializationError
from .wallet import Signer, decode_wallet, is_valid_wallet
from .identity import (
    IdentityVerifier,
    Credential,
    IdentityError,
    AuthDisabled,
    InvalidSignature,
    CredentialError,
    CredentialMissing,
    CredentialMalformed,
    CredentialInvalid,
)
from .anchor import LedgerAnchor, LocalAnchor
from .ledger import (
    ProvenanceLedger,
    FeedView,
    LedgerError,
    ValidationError,
    InvalidProductId,
    InvalidIdentity,
    InvalidTarget,
    MissingRepairDetail,
    DuplicateProduct,
    UnknownProduct,
    OwnershipMismatch,
    ProductRetired,
    ChainError,
)

__all__ = [
    "Hasher",
    "CanonicalSerializationError",
    "Signer",
    "decode_wallet",
    "is_valid_wallet",
    "IdentityVerifier",
    "Credential",
    "IdentityError",
    "AuthDisabled",
    "InvalidSignature",
    "CredentialError",
    "CredentialMissing",
    "CredentialMalformed",
    "CredentialInvalid",
    "LedgerAnchor",
    "LocalAnchor",
    "ProvenanceLedger",
    "FeedView",
    "LedgerError",
    "ValidationError",
    "InvalidProductId",
    "InvalidIdentity",
    "InvalidTarget",
    "MissingRepairDetail",
    "DuplicateProduct",
    "UnknownProduct",
    "OwnershipMismatch",
    "ProductRetired",
    "ChainError",
]
