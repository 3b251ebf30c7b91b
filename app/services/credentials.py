from __future__ import annotations

import json
import logging
import os
from threading import Lock
from typing import Any

from jsonschema import Draft202012Validator

from app.repositories.systems import SystemRecord
from app.vendors.base import CredentialField, VendorAdapter


class CredentialsError(RuntimeError):
    def __init__(self, *, system_id: int, detail: str):
        self.system_id = system_id
        self.detail = detail
        super().__init__(f"credentials for system {system_id}: {detail}")


def credentials_schema(fields: tuple[CredentialField, ...]) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            field.name: {"type": ["string", "integer"], "minLength": 1}
            for field in fields
        },
        "required": [field.name for field in fields if field.required],
    }


class FileCredentialsProvider:
    def __init__(self, *, path: str):
        self._path = path
        self._lock = Lock()
        self._cache: dict[str, Any] | None = None
        self._cache_mtime: float | None = None
        self._logger = logging.getLogger("app.credentials")

    def get(self, system: SystemRecord, adapter: VendorAdapter) -> dict[str, Any]:
        if not adapter.credential_fields:
            return {}
        document = self._load(system.id)
        entry = document.get(str(system.id))
        if entry is None:
            raise CredentialsError(system_id=system.id, detail="no entry in credentials file")
        if not isinstance(entry, dict):
            raise CredentialsError(system_id=system.id, detail="entry must be a JSON object")

        validator = Draft202012Validator(credentials_schema(adapter.credential_fields))
        errors = sorted(validator.iter_errors(entry), key=lambda item: list(item.path))
        if errors:
            messages = []
            for schema_error in errors:
                path = ".".join(str(part) for part in schema_error.path)
                messages.append(f"{path or '$'}: {schema_error.message}")
            raise CredentialsError(system_id=system.id, detail="; ".join(messages))
        return dict(entry)

    def _load(self, system_id: int) -> dict[str, Any]:
        try:
            mtime = os.path.getmtime(self._path)
        except OSError as exc:
            raise CredentialsError(system_id=system_id, detail=f"cannot read {self._path}: {exc}") from exc

        with self._lock:
            if self._cache is not None and self._cache_mtime == mtime:
                return self._cache
            try:
                with open(self._path, "r", encoding="utf-8") as handle:
                    document = json.load(handle)
            except (OSError, json.JSONDecodeError) as exc:
                raise CredentialsError(system_id=system_id, detail=f"cannot parse {self._path}: {exc}") from exc
            if not isinstance(document, dict):
                raise CredentialsError(system_id=system_id, detail="credentials file must hold a JSON object")
            self._cache = document
            self._cache_mtime = mtime
            self._logger.info("loaded credentials file path=%s systems=%s", self._path, len(document))
            return document
