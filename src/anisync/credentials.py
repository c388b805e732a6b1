"""Secret storage consumed by the provider adapters.

Adapters only see the two-method :class:`CredentialStore` protocol.  Keys
are ``"<provider>/<username>"``; AniList additionally keeps its access token
under ``"<provider>/<username>#token"``.  Encryption, if any, belongs to
whoever implements the protocol.
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Protocol, runtime_checkable

from anisync.config import format_toml_value


@runtime_checkable
class CredentialStore(Protocol):
    def get_secret(self, key: str) -> str: ...

    def set_secret(self, key: str, value: str) -> None: ...


def credential_key(provider: str, username: str) -> str:
    return f"{provider}/{username}"


class MemoryCredentialStore:
    """Keeps secrets in a dict; used by tests and one-shot runs."""

    def __init__(self, secrets: dict[str, str] | None = None) -> None:
        self._secrets = dict(secrets or {})

    def get_secret(self, key: str) -> str:
        return self._secrets.get(key, "")

    def set_secret(self, key: str, value: str) -> None:
        if value:
            self._secrets[key] = value
        else:
            self._secrets.pop(key, None)


class FileCredentialStore:
    """Secrets in a flat owner-only TOML file.

    Values are written as given; an encrypting caller hands over ciphertext.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def _read(self) -> dict[str, str]:
        if not self.path.is_file():
            return {}
        with open(self.path, "rb") as f:
            raw = tomllib.load(f)
        return {str(k): str(v) for k, v in raw.get("secrets", {}).items()}

    def _write(self, secrets: dict[str, str]) -> None:
        self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        lines = ["[secrets]"]
        for key in sorted(secrets):
            lines.append(f"{format_toml_value(key)} = {format_toml_value(secrets[key])}")
        self.path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        os.chmod(self.path, 0o600)

    def get_secret(self, key: str) -> str:
        return self._read().get(key, "")

    def set_secret(self, key: str, value: str) -> None:
        secrets = self._read()
        if value:
            secrets[key] = value
        else:
            secrets.pop(key, None)
        self._write(secrets)
