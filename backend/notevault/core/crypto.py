import secrets
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from notevault.core.errors import DecryptionError, ValidationError
from notevault.models import EncryptionEnvelope

# --- Parameters ---
KDF_NAME = "pbkdf2-sha256"
KDF_ITERS = 100_000
KEY_LEN = 32
SALT_LEN = 16
NONCE_LEN = 12
DEFAULT_MIME = "application/octet-stream"


@dataclass(frozen=True)
class EncryptedBlob:
    ciphertext: bytes
    nonce: bytes
    salt: bytes
    mime_type: str

    @property
    def envelope(self) -> EncryptionEnvelope:
        return EncryptionEnvelope(ciphertext=self.ciphertext, nonce=self.nonce, salt=self.salt)


@dataclass(frozen=True)
class DecryptedBlob:
    data: bytes
    mime_type: str


def generate_nonce() -> bytes:
    return secrets.token_bytes(NONCE_LEN)


def generate_salt() -> bytes:
    return secrets.token_bytes(SALT_LEN)


def derive_key(passphrase: str, salt: bytes) -> bytes:
    """
    PBKDF2-HMAC-SHA256 -> 256-bit AES key. Deterministic for a given
    (passphrase, salt) so nothing but the salt has to be stored.
    """
    if not passphrase:
        raise ValidationError("vault code required")
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=KEY_LEN, salt=salt, iterations=KDF_ITERS)
    return kdf.derive(passphrase.encode("utf-8"))


def _key_salt(nonce: bytes, salt: Optional[bytes]) -> bytes:
    # legacy envelopes reused the nonce as the KDF salt
    return salt if salt else nonce


def _seal(data: bytes, passphrase: str, nonce: bytes, salt: bytes) -> bytes:
    if len(nonce) != NONCE_LEN:
        raise ValidationError("invalid nonce length")
    aes = AESGCM(derive_key(passphrase, salt))
    return aes.encrypt(nonce, data, None)  # includes tag


def _open(ciphertext: bytes, passphrase: str, nonce: bytes, salt: Optional[bytes]) -> bytes:
    if len(nonce) != NONCE_LEN:
        raise DecryptionError("invalid nonce length")
    aes = AESGCM(derive_key(passphrase, _key_salt(nonce, salt)))
    try:
        return aes.decrypt(nonce, ciphertext, None)
    except InvalidTag as exc:
        raise DecryptionError("decryption failed") from exc


# --- Text ---

def encrypt_text(plaintext: str, passphrase: str) -> EncryptionEnvelope:
    nonce = generate_nonce()
    salt = generate_salt()
    ct = _seal(plaintext.encode("utf-8"), passphrase, nonce, salt)
    return EncryptionEnvelope(ciphertext=ct, nonce=nonce, salt=salt)


def decrypt_text(envelope: EncryptionEnvelope, passphrase: str) -> str:
    pt = _open(envelope.ciphertext, passphrase, envelope.nonce, envelope.salt)
    try:
        return pt.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecryptionError("note is not valid utf-8") from exc


# --- Files ---

def encrypt_file(blob: bytes, passphrase: str, nonce: Optional[bytes] = None, mime_type: str = "") -> EncryptedBlob:
    """
    Encrypt a binary blob. A caller-supplied nonce is honoured (it must be
    fresh); otherwise one is generated. The MIME type is carried alongside
    the ciphertext since it cannot be recovered from it.
    """
    nonce = nonce or generate_nonce()
    salt = generate_salt()
    ct = _seal(bytes(blob), passphrase, nonce, salt)
    return EncryptedBlob(ciphertext=ct, nonce=nonce, salt=salt, mime_type=mime_type or DEFAULT_MIME)


def decrypt_file(
    ciphertext: bytes,
    nonce: bytes,
    passphrase: str,
    mime_type: str = "",
    salt: Optional[bytes] = None,
) -> DecryptedBlob:
    data = _open(bytes(ciphertext), passphrase, nonce, salt)
    return DecryptedBlob(data=data, mime_type=mime_type or DEFAULT_MIME)
