from __future__ import annotations

import base64
import hashlib
import json
from pathlib import Path
from typing import Protocol

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from .errors import ConfigurationError, FileSystemError, ValidationError

_JWK_FIELDS = ("n", "e", "d", "p", "q", "dp", "dq", "qi")


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def _b64url_int(value: str) -> int:
    return int.from_bytes(b64url_decode(value), "big")


class Signer(Protocol):
    """Anything that can sign uploads and registry messages on behalf of a wallet."""

    @property
    def address(self) -> str: ...

    @property
    def owner(self) -> str: ...

    def sign(self, message: bytes) -> bytes: ...


class JwkSigner:
    """RSA-PSS/SHA-256 signer backed by a JWK private key."""

    def __init__(self, jwk: dict[str, str]) -> None:
        missing = [k for k in _JWK_FIELDS if not isinstance(jwk.get(k), str)]
        if missing or jwk.get("kty", "RSA") != "RSA":
            raise ValidationError(
                "Wallet file is not a valid RSA JWK" + (f" (missing: {', '.join(missing)})." if missing else "."),
                hint="Use a JWK wallet file exported by your wallet software.",
            )
        try:
            public = rsa.RSAPublicNumbers(e=_b64url_int(jwk["e"]), n=_b64url_int(jwk["n"]))
            numbers = rsa.RSAPrivateNumbers(
                p=_b64url_int(jwk["p"]),
                q=_b64url_int(jwk["q"]),
                d=_b64url_int(jwk["d"]),
                dmp1=_b64url_int(jwk["dp"]),
                dmq1=_b64url_int(jwk["dq"]),
                iqmp=_b64url_int(jwk["qi"]),
                public_numbers=public,
            )
            self._key = numbers.private_key()
        except ValueError as e:
            raise ValidationError(f"Wallet key is invalid: {e}") from e
        self._owner = jwk["n"]
        self._address = b64url_encode(hashlib.sha256(b64url_decode(jwk["n"])).digest())

    @property
    def address(self) -> str:
        return self._address

    @property
    def owner(self) -> str:
        return self._owner

    def sign(self, message: bytes) -> bytes:
        return self._key.sign(
            message,
            padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=32),
            hashes.SHA256(),
        )

    @classmethod
    def generate(cls, key_size: int = 4096) -> "JwkSigner":
        """Fresh throwaway key; used by tests and for local experiments."""
        key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
        return cls(private_key_to_jwk(key))


def private_key_to_jwk(key: rsa.RSAPrivateKey) -> dict[str, str]:
    nums = key.private_numbers()
    pub = nums.public_numbers

    def enc(i: int) -> str:
        return b64url_encode(i.to_bytes((i.bit_length() + 7) // 8, "big"))

    return {
        "kty": "RSA",
        "n": enc(pub.n),
        "e": enc(pub.e),
        "d": enc(nums.d),
        "p": enc(nums.p),
        "q": enc(nums.q),
        "dp": enc(nums.dmp1),
        "dq": enc(nums.dmq1),
        "qi": enc(nums.iqmp),
    }


def load_wallet(path: str | Path) -> JwkSigner:
    p = Path(path).expanduser()
    if not p.exists():
        raise ConfigurationError(
            f"Wallet file not found: {p}",
            key="wallet",
            hint="Pass --wallet with the path to your JWK wallet file.",
        )
    try:
        raw = json.loads(p.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValidationError(f"Wallet file {p.name} is not valid JSON.", hint="Check the wallet file contents.") from e
    except OSError as e:
        raise FileSystemError(f"Could not read wallet file {p}: {e}", path=str(p)) from e
    if not isinstance(raw, dict):
        raise ValidationError(f"Wallet file {p.name} must contain a JSON object.")
    return JwkSigner(raw)
