"""Passphrase sealing for backup archives (PBKDF2 + AES-256-GCM)."""
from __future__ import annotations
import secrets
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from config.settings import (
	DEFAULT_ITERATIONS, SALT_LENGTH, KEY_LENGTH, IV_LENGTH, AUTH_TAG_LENGTH, ARCHIVE_MAGIC
)

class CryptoError(Exception):
	pass

class ArchiveCrypto:
	def __init__(self, iterations: int = DEFAULT_ITERATIONS):
		self.iterations = iterations

	def generate_salt(self) -> bytes:
		return secrets.token_bytes(SALT_LENGTH)

	def derive_key(self, passphrase: str, salt: bytes) -> bytes:
		if not passphrase:
			raise CryptoError("Passphrase empty")
		kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=KEY_LENGTH, salt=salt, iterations=self.iterations)
		return kdf.derive(passphrase.encode())

	def encrypt(self, data: bytes, key: bytes) -> bytes:
		if len(key) != KEY_LENGTH: raise CryptoError("Bad key length")
		iv = secrets.token_bytes(IV_LENGTH)
		enc = Cipher(algorithms.AES(key), modes.GCM(iv)).encryptor()
		ct = enc.update(data) + enc.finalize()
		return iv + ct + enc.tag

	def decrypt(self, blob: bytes, key: bytes) -> bytes:
		if len(key) != KEY_LENGTH: raise CryptoError("Bad key length")
		if len(blob) < IV_LENGTH + AUTH_TAG_LENGTH: raise CryptoError("Ciphertext too short")
		iv = blob[:IV_LENGTH]; tag = blob[-AUTH_TAG_LENGTH:]; ct = blob[IV_LENGTH:-AUTH_TAG_LENGTH]
		dec = Cipher(algorithms.AES(key), modes.GCM(iv, tag)).decryptor()
		try:
			return dec.update(ct) + dec.finalize()
		except Exception as e:
			raise CryptoError(f"Decrypt failed: {e!r}")

	def seal(self, data: bytes, passphrase: str) -> bytes:
		"""Return MAGIC + salt + iv + ciphertext + tag."""
		salt = self.generate_salt()
		return ARCHIVE_MAGIC + salt + self.encrypt(data, self.derive_key(passphrase, salt))

	def unseal(self, blob: bytes, passphrase: str) -> bytes:
		if not is_sealed(blob): raise CryptoError("Not a sealed archive")
		body = blob[len(ARCHIVE_MAGIC):]
		if len(body) < SALT_LENGTH: raise CryptoError("Sealed archive truncated")
		salt = body[:SALT_LENGTH]
		return self.decrypt(body[SALT_LENGTH:], self.derive_key(passphrase, salt))

def is_sealed(blob: bytes) -> bool:
	return blob[:len(ARCHIVE_MAGIC)] == ARCHIVE_MAGIC
