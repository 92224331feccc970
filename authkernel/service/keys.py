"""RSA signing key material and the published key set.

Keys are loaded once per process. The key id (``kid``) is derived from a
hash of the public key so tokens signed under a retired key still verify as
long as that public key stays in the ring.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from authkernel.config import Settings
from authkernel.logging import get_logger
from authkernel.service.errors import InternalFailureError

logger = get_logger(__name__)

PRIVATE_KEY_FILENAME = "jwt_private.pem"


def _public_pem(public_key: rsa.RSAPublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def compute_kid(public_key: rsa.RSAPublicKey) -> str:
    return hashlib.sha256(_public_pem(public_key)).hexdigest()[:16]


def _int_to_b64url(value: int) -> str:
    raw = value.to_bytes((value.bit_length() + 7) // 8 or 1, "big")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


@dataclass(frozen=True)
class VerificationKey:
    kid: str
    public_key: rsa.RSAPublicKey

    def to_jwk(self) -> Dict[str, str]:
        numbers = self.public_key.public_numbers()
        return {
            "kty": "RSA",
            "use": "sig",
            "alg": "RS256",
            "kid": self.kid,
            "n": _int_to_b64url(numbers.n),
            "e": _int_to_b64url(numbers.e),
        }


class KeyRing:
    """Current signing key plus every public key still accepted for verification."""

    def __init__(
        self,
        private_key: rsa.RSAPrivateKey,
        public_key: Optional[rsa.RSAPublicKey] = None,
        retired_public_keys: Optional[List[rsa.RSAPublicKey]] = None,
    ) -> None:
        self.private_key = private_key
        public_key = public_key or private_key.public_key()
        if public_key.public_numbers() != private_key.public_key().public_numbers():
            raise InternalFailureError("signing key pair mismatch")
        self.current = VerificationKey(compute_kid(public_key), public_key)
        self._keys: Dict[str, VerificationKey] = {self.current.kid: self.current}
        for retired in retired_public_keys or []:
            key = VerificationKey(compute_kid(retired), retired)
            self._keys.setdefault(key.kid, key)

    @property
    def kid(self) -> str:
        return self.current.kid

    def public_key_for(self, kid: Optional[str]) -> Optional[rsa.RSAPublicKey]:
        if not kid:
            return None
        key = self._keys.get(kid)
        return key.public_key if key else None

    def jwks(self) -> Dict[str, List[Dict[str, Any]]]:
        ordered = [self.current] + [k for k in self._keys.values() if k.kid != self.current.kid]
        return {"keys": [key.to_jwk() for key in ordered]}

    @classmethod
    def from_settings(cls, settings: Settings) -> "KeyRing":
        private_key = _load_private_key(settings)
        public_key = _load_public_key(settings)
        retired = [_read_public_pem(Path(p)) for p in settings.retired_public_key_paths]
        ring = cls(private_key, public_key, retired)
        logger.info("jwt_keys_loaded", kid=ring.kid, retired_keys=len(retired))
        return ring


def _decode_base64_pem(value: str, label: str) -> bytes:
    try:
        return base64.b64decode(value.strip(), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InternalFailureError(f"{label} is not valid base64") from exc


def _parse_private_pem(data: bytes) -> rsa.RSAPrivateKey:
    try:
        key = serialization.load_pem_private_key(data, password=None)
    except (ValueError, TypeError) as exc:
        raise InternalFailureError("unable to load signing key") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise InternalFailureError("signing key must be RSA")
    return key


def _parse_public_pem(data: bytes) -> rsa.RSAPublicKey:
    try:
        key = serialization.load_pem_public_key(data)
    except (ValueError, TypeError) as exc:
        raise InternalFailureError("unable to load verification key") from exc
    if not isinstance(key, rsa.RSAPublicKey):
        raise InternalFailureError("verification key must be RSA")
    return key


def _read_public_pem(path: Path) -> rsa.RSAPublicKey:
    try:
        return _parse_public_pem(path.read_bytes())
    except OSError as exc:
        logger.error("jwt_public_key_read_failed", path=str(path), error_type=type(exc).__name__)
        raise InternalFailureError("unable to read verification key") from exc


def _load_private_key(settings: Settings) -> rsa.RSAPrivateKey:
    if settings.jwt_private_key_base64:
        return _parse_private_pem(
            _decode_base64_pem(settings.jwt_private_key_base64, "JWT_PRIVATE_KEY_BASE64")
        )
    if settings.jwt_private_key_path:
        path = Path(settings.jwt_private_key_path)
        try:
            return _parse_private_pem(path.read_bytes())
        except OSError as exc:
            logger.error("jwt_private_key_read_failed", path=str(path), error_type=type(exc).__name__)
            raise InternalFailureError("unable to read signing key") from exc
    return _ensure_persisted_private_key(Path(settings.keys_dir))


def _load_public_key(settings: Settings) -> Optional[rsa.RSAPublicKey]:
    if settings.jwt_public_key_base64:
        return _parse_public_pem(
            _decode_base64_pem(settings.jwt_public_key_base64, "JWT_PUBLIC_KEY_BASE64")
        )
    if settings.jwt_public_key_path:
        return _read_public_pem(Path(settings.jwt_public_key_path))
    return None


def _ensure_persisted_private_key(keys_dir: Path) -> rsa.RSAPrivateKey:
    """Load or generate the signing key so tokens stay valid across restarts."""
    key_path = keys_dir / PRIVATE_KEY_FILENAME
    try:
        keys_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(keys_dir, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass
    except OSError as exc:
        logger.warning("jwt_key_dir_setup", error=str(exc), path=str(keys_dir))

    if key_path.exists() and not key_path.is_symlink():
        try:
            return _parse_private_pem(key_path.read_bytes())
        except OSError as exc:
            logger.error("jwt_private_key_read_failed", path=str(key_path), error_type=type(exc).__name__)
            raise InternalFailureError("unable to read signing key") from exc

    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    tmp_path: Optional[str] = None
    try:
        # Atomic write: temp file with restrictive mode, then rename
        fd, tmp_path = tempfile.mkstemp(dir=str(keys_dir), prefix=".jwt_private_", suffix=".tmp")
        try:
            os.fchmod(fd, 0o600)
            os.write(fd, pem)
        finally:
            os.close(fd)
        os.replace(tmp_path, key_path)
        tmp_path = None
    except OSError as exc:
        logger.error("jwt_private_key_persist_failed", path=str(key_path), error_type=type(exc).__name__)
        raise InternalFailureError(
            "unable to persist signing key; set JWT_PRIVATE_KEY_PATH or make KEYS_DIR writable"
        ) from exc
    finally:
        if tmp_path:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
    logger.info("jwt_private_key_generated", path=str(key_path))
    return private_key
