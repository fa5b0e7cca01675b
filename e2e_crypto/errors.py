"""
Error taxonomy for the encrypted chat session.

Cryptographic failures are resolved to one of these kinds so that a broken
peer or a corrupted frame never crashes the process.
"""


class SecureChatError(Exception):
    """Base exception for session and cryptographic errors"""
    pass


class CryptoError(SecureChatError):
    """Base exception for cryptographic errors"""
    pass


class KeyGenerationFailure(CryptoError):
    """The ephemeral keypair could not be generated. Fatal to session init."""
    pass


class InvalidKeyEncoding(CryptoError):
    """Peer public key bytes are not a valid P-256 point encoding."""
    pass


class DerivationFailure(CryptoError):
    """ECDH or key derivation failed on otherwise accepted inputs."""
    pass


class AuthenticationFailure(CryptoError):
    """
    AES-GCM tag did not verify.

    The message is tampered, corrupted or was encrypted under another key.
    Only that single message is dropped; the session stays alive.
    """
    pass


class SessionClosed(SecureChatError):
    """Operation attempted on a session that has been torn down."""
    pass


class SessionNotReady(SecureChatError):
    """Operation needs a shared key but the handshake has not completed."""
    pass


class TransportError(SecureChatError):
    """Opaque failure surfaced from the transport collaborator."""
    pass


class FrameError(SecureChatError, ValueError):
    """A wire frame could not be decoded."""
    pass
