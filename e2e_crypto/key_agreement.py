"""
Ephemeral ECDH key agreement on P-256.

Each session generates one keypair, sends the raw public point to its peer
through the relay, and derives a 256-bit AES-GCM key from its own private
scalar and the peer's public point.
"""

import hmac
from dataclasses import dataclass, field
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .errors import KeyGenerationFailure, InvalidKeyEncoding, DerivationFailure


CURVE = ec.SECP256R1
PUBLIC_KEY_SIZE = 65  # 0x04 || X (32) || Y (32)
SHARED_KEY_SIZE = 32

DERIVE_HKDF = "hkdf"
DERIVE_RAW = "raw"
HKDF_INFO = b"secure-chat/aes-256-gcm"


@dataclass(frozen=True)
class Keypair:
    """
    Ephemeral P-256 keypair restricted to key agreement.

    Attributes:
        private_key: Local private scalar, never exported
        public_key: Public point sent to the peer
    """
    private_key: ec.EllipticCurvePrivateKey = field(repr=False)
    public_key: ec.EllipticCurvePublicKey = field(repr=False)


@dataclass(frozen=True)
class PeerPublicKey:
    """Peer public point imported from its raw encoding"""
    key: ec.EllipticCurvePublicKey = field(repr=False)
    raw: bytes


class SharedKey:
    """
    Symmetric AES-256-GCM key derived from an ECDH exchange.

    The key bytes are never printed and equality is constant-time.
    """

    __slots__ = ("_key",)

    def __init__(self, key: bytes):
        if len(key) != SHARED_KEY_SIZE:
            raise DerivationFailure(f"Shared key must be {SHARED_KEY_SIZE} bytes, got {len(key)}")
        self._key = bytes(key)

    def __bytes__(self) -> bytes:
        return self._key

    def __eq__(self, other) -> bool:
        if not isinstance(other, SharedKey):
            return NotImplemented
        return hmac.compare_digest(self._key, other._key)

    def __repr__(self) -> str:
        return "SharedKey(<redacted>)"


class KeyAgreement:
    """
    Generates keypairs, moves public keys to and from their wire encoding,
    and derives the shared session key.
    """

    def __init__(self, derivation: str = DERIVE_HKDF):
        """
        Args:
            derivation: DERIVE_HKDF (HKDF-SHA256 over the ECDH secret) or
                DERIVE_RAW (ECDH secret used as the key, as browser
                WebCrypto does). Both peers must agree.
        """
        if derivation not in (DERIVE_HKDF, DERIVE_RAW):
            raise ValueError(f"Unknown key derivation mode: {derivation!r}")
        self.derivation = derivation

    def generate(self) -> Keypair:
        """
        Generate a new ephemeral P-256 keypair.

        Raises:
            KeyGenerationFailure: If the provider cannot produce a key
        """
        try:
            private_key = ec.generate_private_key(CURVE())
        except Exception as e:
            raise KeyGenerationFailure(f"Key generation failed: {e}") from e
        return Keypair(private_key=private_key, public_key=private_key.public_key())

    def export_public(self, keypair: Keypair) -> bytes:
        """Raw uncompressed point encoding of our public key (65 bytes)"""
        return keypair.public_key.public_bytes(
            encoding=serialization.Encoding.X962,
            format=serialization.PublicFormat.UncompressedPoint
        )

    def import_peer_public(self, data: bytes) -> PeerPublicKey:
        """
        Parse a peer's raw public point.

        Args:
            data: Uncompressed point encoding received from the peer

        Returns:
            PeerPublicKey usable for derivation

        Raises:
            InvalidKeyEncoding: Wrong length, wrong prefix, or not on P-256
        """
        data = bytes(data)
        if len(data) != PUBLIC_KEY_SIZE:
            raise InvalidKeyEncoding(
                f"Public key must be {PUBLIC_KEY_SIZE} bytes, got {len(data)}"
            )
        if data[0] != 0x04:
            raise InvalidKeyEncoding("Public key is not an uncompressed point")
        try:
            key = ec.EllipticCurvePublicKey.from_encoded_point(CURVE(), data)
        except ValueError as e:
            raise InvalidKeyEncoding(f"Public key is not a valid P-256 point: {e}") from e
        return PeerPublicKey(key=key, raw=data)

    def derive_shared(self, keypair: Keypair, peer: PeerPublicKey) -> SharedKey:
        """
        Run ECDH between our private scalar and the peer point, then derive
        the AES-256-GCM key.

        Raises:
            DerivationFailure: If the exchange fails
        """
        try:
            secret = keypair.private_key.exchange(ec.ECDH(), peer.key)
        except Exception as e:
            raise DerivationFailure(f"ECDH exchange failed: {e}") from e

        if self.derivation == DERIVE_RAW:
            return SharedKey(secret)

        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=SHARED_KEY_SIZE,
            salt=None,
            info=HKDF_INFO
        )
        return SharedKey(hkdf.derive(secret))
