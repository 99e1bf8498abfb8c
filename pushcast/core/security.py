from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from cryptography.fernet import Fernet, InvalidToken

from pushcast.core.errors import ConfigurationError


class EncryptionProvider(Protocol):
    def encrypt(self, value: str) -> str:
        ...

    def decrypt(self, token: str) -> str:
        ...


class FernetEncryptionProvider:
    def __init__(self, key: str):
        self._fernet = Fernet(key.encode("utf-8"))

    def encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode("utf-8")).decode("utf-8")

    def decrypt(self, token: str) -> str:
        return self._fernet.decrypt(token.encode("utf-8")).decode("utf-8")


@dataclass(slots=True)
class SecurityService:
    """Seals and opens site VAPID private keys.

    Without an encryption provider keys are stored and returned as-is, which
    is what local development databases seeded by hand contain.
    """

    encryption_provider: EncryptionProvider | None = None

    @classmethod
    def from_key(cls, fernet_key: str | None) -> SecurityService:
        if not fernet_key:
            return cls()
        return cls(FernetEncryptionProvider(fernet_key))

    def seal_private_key(self, value: str) -> str:
        if self.encryption_provider is None:
            return value
        return self.encryption_provider.encrypt(value)

    def open_private_key(self, token: str) -> str:
        if self.encryption_provider is None:
            return token
        try:
            return self.encryption_provider.decrypt(token)
        except InvalidToken as exc:
            raise ConfigurationError("VAPID private key cannot be decrypted with the configured key") from exc
