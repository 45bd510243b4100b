from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from dcabot.errors import CorruptStoreError
from dcabot.storage.files import parse_json, read_text

CREDENTIALS_FILE_NAME = "credentials.json"


@dataclass(slots=True, frozen=True)
class Credentials:
    client_id: str | None
    password: str | None

    def __repr__(self) -> str:
        masked = "***" if self.password else None
        return f"Credentials(client_id={self.client_id!r}, password={masked!r})"


class CredentialSource(Protocol):
    def read(self) -> Credentials:
        ...


def _clean(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class FileCredentialSource:
    """Reads ``{"clientId": ..., "password": ...}``; never writes it."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    @classmethod
    def in_dir(cls, data_dir: str | Path, file_name: str = CREDENTIALS_FILE_NAME) -> "FileCredentialSource":
        return cls(Path(data_dir) / file_name)

    def read(self) -> Credentials:
        if not self.path.exists():
            return Credentials(client_id=None, password=None)
        content = read_text(self.path)
        if not content.strip():
            return Credentials(client_id=None, password=None)
        raw = parse_json(self.path, content)
        if not isinstance(raw, dict):
            raise CorruptStoreError(f"{self.path} must hold a JSON object")
        return Credentials(client_id=_clean(raw.get("clientId")), password=_clean(raw.get("password")))


class EnvCredentialSource:
    def __init__(self, client_id_var: str = "BROKER_CLIENT_ID", password_var: str = "BROKER_PASSWORD"):
        self.client_id_var = client_id_var
        self.password_var = password_var

    def read(self) -> Credentials:
        return Credentials(
            client_id=_clean(os.getenv(self.client_id_var)),
            password=_clean(os.getenv(self.password_var)),
        )


class ChainedCredentialSource:
    """First source that knows a value wins, field by field."""

    def __init__(self, *sources: CredentialSource):
        self.sources = sources

    def read(self) -> Credentials:
        client_id: str | None = None
        password: str | None = None
        for source in self.sources:
            creds = source.read()
            client_id = client_id or creds.client_id
            password = password or creds.password
        return Credentials(client_id=client_id, password=password)
