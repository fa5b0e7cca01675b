#!/usr/bin/env python3
"""
Tests for the key agreement, message encryption and wire frames.
"""

import sys
from e2e_crypto.key_agreement import KeyAgreement, SharedKey, DERIVE_RAW
from e2e_crypto.cipher import CipherSession, EncryptedEnvelope, encrypt, decrypt
from e2e_crypto.frames import KeyFrame, DataFrame, encode_frame, decode_frame
from e2e_crypto.errors import (
    AuthenticationFailure,
    InvalidKeyEncoding,
    FrameError,
    SessionClosed
)


def _flip_bit(data: bytes, index: int) -> bytes:
    flipped = bytearray(data)
    flipped[index] ^= 0x01
    return bytes(flipped)


def _derive_pair(agreement: KeyAgreement):
    alice = agreement.generate()
    bob = agreement.generate()
    alice_shared = agreement.derive_shared(alice, agreement.import_peer_public(agreement.export_public(bob)))
    bob_shared = agreement.derive_shared(bob, agreement.import_peer_public(agreement.export_public(alice)))
    return alice_shared, bob_shared


def test_ecdh_symmetry():
    """Test that both peers derive the same key"""
    print("Testing ECDH key agreement...")

    alice_shared, bob_shared = _derive_pair(KeyAgreement())
    assert alice_shared == bob_shared, "ECDH key agreement failed"
    assert len(bytes(alice_shared)) == 32, "Wrong shared key length"

    print("✓ ECDH key agreement works")


def test_raw_derivation_matches_and_differs_from_hkdf():
    """Test the WebCrypto-compatible derivation"""
    agreement = KeyAgreement(DERIVE_RAW)
    alice = agreement.generate()
    bob = agreement.generate()
    bob_peer = agreement.import_peer_public(agreement.export_public(bob))
    alice_peer = agreement.import_peer_public(agreement.export_public(alice))

    raw_a = agreement.derive_shared(alice, bob_peer)
    raw_b = agreement.derive_shared(bob, alice_peer)
    assert raw_a == raw_b

    hkdf_a = KeyAgreement().derive_shared(alice, bob_peer)
    assert hkdf_a != raw_a


def test_unknown_derivation_rejected():
    try:
        KeyAgreement("md5")
        assert False, "Should have raised ValueError"
    except ValueError:
        pass


def test_export_public_encoding():
    """Test raw uncompressed point export"""
    agreement = KeyAgreement()
    keypair = agreement.generate()
    raw = agreement.export_public(keypair)

    assert len(raw) == 65, "Wrong public key length"
    assert raw[0] == 0x04, "Public key should be an uncompressed point"
    assert raw == agreement.export_public(keypair), "Export should be deterministic"
    assert raw != agreement.export_public(agreement.generate()), "Keypairs should differ"


def test_import_rejects_malformed_keys():
    """Test peer key validation"""
    print("Testing peer key validation...")

    agreement = KeyAgreement()
    valid = agreement.export_public(agreement.generate())

    malformed = [
        b"",
        valid[:-1],
        valid + b"\x00",
        b"\x02" + valid[1:33],
        b"\x05" + valid[1:],
        b"\x04" + b"\xff" * 64,
        b"\x04" + b"\x00" * 64,
    ]
    for data in malformed:
        try:
            agreement.import_peer_public(data)
            assert False, f"Should have rejected {data.hex()}"
        except InvalidKeyEncoding:
            pass

    peer = agreement.import_peer_public(valid)
    assert peer.raw == valid

    print("✓ Peer key validation works")


def test_shared_key_is_redacted():
    key = SharedKey(b"k" * 32)
    assert "k" * 8 not in repr(key)
    assert key == SharedKey(b"k" * 32)
    assert key != SharedKey(b"j" * 32)

    try:
        hash(key)
        assert False, "SharedKey should not be hashable"
    except TypeError:
        pass


def test_encryption():
    """Test symmetric encryption"""
    print("Testing encryption...")

    key, _ = _derive_pair(KeyAgreement())
    plaintext = "Hello, World! ✓".encode()

    envelope = encrypt(key, plaintext)
    assert decrypt(key, envelope) == plaintext, "Decryption failed"
    assert len(envelope.nonce) == 12, "Wrong nonce length"
    assert len(envelope.ciphertext) == len(plaintext) + 16, "Missing authentication tag"
    assert plaintext not in envelope.ciphertext, "Ciphertext contains plaintext"

    assert decrypt(key, encrypt(key, b"")) == b"", "Empty message round trip failed"

    print("✓ Encryption/decryption works")


def test_fresh_nonce_per_message():
    key, _ = _derive_pair(KeyAgreement())
    first = encrypt(key, b"same message")
    second = encrypt(key, b"same message")

    assert first.nonce != second.nonce, "Nonce reused"
    assert first.ciphertext != second.ciphertext, "Ciphertexts should differ"

    nonces = {encrypt(key, b"x").nonce for _ in range(200)}
    assert len(nonces) == 200


def test_wrong_key_fails_authentication():
    """Test authentication with an unrelated key"""
    key, _ = _derive_pair(KeyAgreement())
    other_key, _ = _derive_pair(KeyAgreement())
    envelope = encrypt(key, b"secret")

    try:
        decrypt(other_key, envelope)
        assert False, "Should have raised AuthenticationFailure"
    except AuthenticationFailure:
        pass  # Expected


def test_tampering_fails_authentication():
    """Test that a flipped bit anywhere is detected"""
    print("Testing tamper detection...")

    key, _ = _derive_pair(KeyAgreement())
    envelope = encrypt(key, b"attack at dawn")

    tampered = [
        EncryptedEnvelope(envelope.nonce, _flip_bit(envelope.ciphertext, 0)),
        EncryptedEnvelope(envelope.nonce, _flip_bit(envelope.ciphertext, len(envelope.ciphertext) - 1)),
        EncryptedEnvelope(_flip_bit(envelope.nonce, 5), envelope.ciphertext),
        EncryptedEnvelope(envelope.nonce, envelope.ciphertext[:10]),
    ]
    for candidate in tampered:
        try:
            decrypt(key, candidate)
            assert False, "Should have raised AuthenticationFailure"
        except AuthenticationFailure:
            pass

    print("✓ Tamper detection works")


def test_envelope_rejects_wrong_nonce_size():
    try:
        EncryptedEnvelope(nonce=b"\x00" * 8, ciphertext=b"\x00" * 16)
        assert False, "Should have raised ValueError"
    except ValueError:
        pass


def test_cipher_session():
    """Test the key-bound cipher and its teardown"""
    alice_key, bob_key = _derive_pair(KeyAgreement())
    alice = CipherSession(alice_key)
    bob = CipherSession(bob_key)

    envelope = alice.encrypt(b"hi bob")
    assert bob.decrypt(envelope) == b"hi bob"

    alice.close()
    assert alice.closed
    for operation in (lambda: alice.encrypt(b"late"), lambda: alice.decrypt(envelope)):
        try:
            operation()
            assert False, "Should have raised SessionClosed"
        except SessionClosed:
            pass


def test_two_peer_scenario():
    """Test the full exchange between two peers"""
    print("Testing two-peer exchange...")

    agreement = KeyAgreement()
    peer_a = agreement.generate()
    peer_b = agreement.generate()
    k_a = agreement.export_public(peer_a)
    k_b = agreement.export_public(peer_b)

    s_a = agreement.derive_shared(peer_a, agreement.import_peer_public(k_b))
    s_b = agreement.derive_shared(peer_b, agreement.import_peer_public(k_a))
    assert s_a == s_b, "Shared keys don't match"

    envelope = encrypt(s_a, "hello".encode())
    assert decrypt(s_b, envelope).decode() == "hello", "Peer could not decrypt"

    print("✓ Two-peer exchange works")


def test_frames():
    """Test the wire frame format"""
    key, _ = _derive_pair(KeyAgreement())
    envelope = encrypt(key, b"framed")

    text = encode_frame(DataFrame(envelope))
    frame = decode_frame(text)
    assert isinstance(frame, DataFrame)
    assert decrypt(key, frame.envelope) == b"framed"

    frame = decode_frame(b'{"type": "public-key", "key": [4, 1, 2]}')
    assert frame == KeyFrame(key=b"\x04\x01\x02")

    assert '"type": "public-key"' in encode_frame(KeyFrame(b"\x04"))


def test_malformed_frames():
    """Test that malformed frames raise FrameError"""
    malformed = [
        "not json",
        "[1, 2, 3]",
        '{"type": "chat"}',
        '{"type": "public-key", "key": "BAE="}',
        '{"type": "public-key", "key": [256]}',
        '{"type": "public-key", "key": [true]}',
        '{"type": "message"}',
        '{"type": "message", "payload": {"iv": [1, 2, 3], "data": [0]}}',
        '{"type": "message", "payload": {"iv": [0,0,0,0,0,0,0,0,0,0,0,0], "data": null}}',
        "[" * 100000 + "]" * 100000,
    ]
    for text in malformed:
        try:
            decode_frame(text)
            assert False, f"Should have rejected {text}"
        except FrameError:
            pass


def run_all_tests():
    """Run all tests"""
    print("\n" + "="*50)
    print("Running Cryptographic Tests")
    print("="*50 + "\n")

    try:
        test_ecdh_symmetry()
        test_raw_derivation_matches_and_differs_from_hkdf()
        test_unknown_derivation_rejected()
        test_export_public_encoding()
        test_import_rejects_malformed_keys()
        test_shared_key_is_redacted()
        test_encryption()
        test_fresh_nonce_per_message()
        test_wrong_key_fails_authentication()
        test_tampering_fails_authentication()
        test_envelope_rejects_wrong_nonce_size()
        test_cipher_session()
        test_two_peer_scenario()
        test_frames()
        test_malformed_frames()

        print("\n" + "="*50)
        print("✓ All tests passed!")
        print("="*50 + "\n")
        return 0

    except AssertionError as e:
        print(f"\n✗ Test failed: {e}")
        return 1
    except Exception as e:
        print(f"\n✗ Unexpected error: {e}")
        import traceback
        traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(run_all_tests())
