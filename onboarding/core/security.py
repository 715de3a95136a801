"""Field codecs and blind indexes applied at the persistence boundary.

Repositories call ``encode`` before writing a contact field and ``decode``
after reading it.  Services and tests never see ciphertext, and nothing
outside the repository layer depends on an encryption library.

Lookups and uniqueness use ``blind_index`` (salted SHA-256 of the
normalized value), which stays deterministic even when the codec is not.
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Protocol

from cryptography.fernet import Fernet


class FieldCodec(Protocol):
    def encode(self, value: str) -> str:
        ...

    def decode(self, token: str) -> str:
        ...


class IdentityCodec:
    """Stores values as-is.  Default when no key is configured."""

    def encode(self, value: str) -> str:
        return value

    def decode(self, token: str) -> str:
        return token


class FernetFieldCodec:
    def __init__(self, key: str):
        self._fernet = Fernet(key.encode("utf-8"))

    def encode(self, value: str) -> str:
        return self._fernet.encrypt(value.encode("utf-8")).decode("utf-8")

    def decode(self, token: str) -> str:
        return self._fernet.decrypt(token.encode("utf-8")).decode("utf-8")


@dataclass(slots=True)
class SecurityService:
    tenant_salt: str
    codec: FieldCodec

    def blind_index(self, value: str) -> str:
        payload = f"{self.tenant_salt}:{value}".encode("utf-8")
        return hashlib.sha256(payload).hexdigest()

    def encode(self, value: str | None) -> str | None:
        if value is None:
            return None
        return self.codec.encode(value)

    def decode(self, token: str | None) -> str | None:
        if token is None:
            return None
        return self.codec.decode(token)


def build_security_service(tenant_salt: str, fernet_key: str | None = None) -> SecurityService:
    codec: FieldCodec = FernetFieldCodec(fernet_key) if fernet_key else IdentityCodec()
    return SecurityService(tenant_salt=tenant_salt, codec=codec)
