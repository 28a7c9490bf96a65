# tests/test_crypto.py — At-rest encryption of agent tokens, registry passwords and TOTP seeds
import base64

import pytest

from crypto import Crypto, CryptoError, decrypt_with_password, encrypt_with_password, sha256_hex


class TestCrypto:
    def test_round_trip(self):
        crypto = Crypto("0123456789abcdef")
        token = crypto.encrypt("registry-password")
        assert token != "registry-password"
        assert crypto.decrypt(token) == "registry-password"

    def test_nonce_is_random(self):
        crypto = Crypto("0123456789abcdef")
        assert crypto.encrypt("same") != crypto.encrypt("same")

    def test_empty_values_pass_through(self):
        crypto = Crypto("0123456789abcdef")
        assert crypto.encrypt("") == ""
        assert crypto.decrypt("") == ""

    def test_wrong_key_rejected(self):
        token = Crypto("0123456789abcdef").encrypt("secret")
        with pytest.raises(CryptoError):
            Crypto("fedcba9876543210").decrypt(token)

    def test_tampered_ciphertext_rejected(self):
        crypto = Crypto("0123456789abcdef")
        raw = bytearray(base64.b64decode(crypto.encrypt("secret")))
        raw[-1] ^= 0x01
        with pytest.raises(CryptoError):
            crypto.decrypt(base64.b64encode(bytes(raw)).decode("ascii"))

    @pytest.mark.parametrize("token", ["not base64!!", base64.b64encode(b"short").decode()])
    def test_malformed_ciphertext_rejected(self, token):
        with pytest.raises(CryptoError):
            Crypto("0123456789abcdef").decrypt(token)

    def test_sha256_hex(self):
        assert sha256_hex("abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


class TestPasswordBundles:
    def test_bundle_shape_and_open(self):
        bundle = encrypt_with_password(b'{"servers": []}', "bundle-pass")
        assert set(bundle) == {"salt", "iv", "data"}
        assert len(base64.b64decode(bundle["salt"])) == 32
        assert decrypt_with_password(bundle, "bundle-pass") == b'{"servers": []}'

    def test_wrong_password(self):
        bundle = encrypt_with_password(b"payload", "bundle-pass")
        with pytest.raises(CryptoError):
            decrypt_with_password(bundle, "other-pass")

    def test_malformed_bundle(self):
        with pytest.raises(CryptoError):
            decrypt_with_password({"salt": "x"}, "bundle-pass")
