"""
Wallet Keys

Wallet identities are Ed25519 public keys, base58-encoded the way
Solana wallets present them. There is no registration step: any string
that decodes to a 32-byte key can present itself.

Signatures are detached. The message is never recovered from the
signature; the caller supplies it separately and it must match exactly,
byte for byte, what the wallet signed.
"""

from typing import Tuple, Union

import base58
from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey


PUBLIC_KEY_LENGTH = 32
SIGNATURE_LENGTH = 64

Message = Union[str, bytes]


def _message_bytes(message: Message) -> bytes:
    if isinstance(message, bytes):
        return message
    return message.encode("utf-8")


def decode_wallet(identity: str) -> bytes:
    """
    Decode a wallet identity to its raw public key bytes.

    Raises:
        ValueError: if the identity is empty, not base58, or not 32 bytes
    """
    if not identity or not isinstance(identity, str):
        raise ValueError("Wallet identity is empty")
    raw = base58.b58decode(identity)
    if len(raw) != PUBLIC_KEY_LENGTH:
        raise ValueError(
            f"Wallet identity decodes to {len(raw)} bytes, "
            f"expected {PUBLIC_KEY_LENGTH}"
        )
    return raw


def is_valid_wallet(identity: str) -> bool:
    """Check that an identity decodes to a well-formed public key."""
    try:
        decode_wallet(identity)
        return True
    except (ValueError, TypeError):
        return False


def _signature_bytes(signature: Union[str, bytes]) -> bytes:
    if isinstance(signature, bytes):
        raw = signature
    else:
        if not signature:
            raise ValueError("Signature is empty")
        raw = base58.b58decode(signature)
    if len(raw) != SIGNATURE_LENGTH:
        raise ValueError(
            f"Signature is {len(raw)} bytes, expected {SIGNATURE_LENGTH}"
        )
    return raw


class Signer:
    """
    Ed25519 detached signatures for wallet proofs.

    The server only ever verifies. generate_keypair and sign exist for
    the management CLI and tests, standing in for a browser wallet.
    """

    @staticmethod
    def generate_keypair() -> Tuple[str, str]:
        """
        Generate a new wallet keypair.

        Returns:
            Tuple of (seed_b58, public_key_b58)
        """
        signing_key = SigningKey.generate()
        seed = base58.b58encode(bytes(signing_key)).decode("ascii")
        public = base58.b58encode(bytes(signing_key.verify_key)).decode("ascii")
        return seed, public

    @staticmethod
    def sign(message: Message, seed_b58: str) -> str:
        """
        Sign a message, returning a base58 detached signature.
        """
        signing_key = SigningKey(base58.b58decode(seed_b58))
        signed = signing_key.sign(_message_bytes(message))
        return base58.b58encode(signed.signature).decode("ascii")

    @staticmethod
    def verify(
        message: Message,
        signature: Union[str, bytes],
        public_key_b58: str,
    ) -> bool:
        """
        Verify a detached signature.

        Returns False for a bad signature and for any input that does not
        decode to the key/signature lengths of the scheme.
        """
        try:
            verify_key = VerifyKey(decode_wallet(public_key_b58))
            verify_key.verify(_message_bytes(message), _signature_bytes(signature))
            return True
        except (BadSignatureError, ValueError, TypeError):
            return False
