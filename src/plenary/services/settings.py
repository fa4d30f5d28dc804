"""Settings dataclass and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

__all__ = [
    "Settings",
    "SettingsStore",
    "SecretVault",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".plenary"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_ENV_OVERRIDES: Mapping[str, tuple[str, str]] = {
    "PLENARY_API_KEY": ("api_key", "str"),
    "PLENARY_BASE_URL": ("base_url", "str"),
    "PLENARY_MODEL": ("model", "str"),
    "PLENARY_BACKEND_URL": ("backend_url", "str"),
    "PLENARY_AUTH_TOKEN": ("auth_token", "str"),
    "PLENARY_CREATE_CHAT": ("create_chat", "bool"),
    "PLENARY_SAVE_MESSAGES": ("save_messages", "bool"),
    "PLENARY_SAVE_FILES": ("save_files", "bool"),
    "PLENARY_USE_TOOLS": ("use_tools", "bool"),
    "PLENARY_DEBUG_LOGGING": ("debug_logging", "bool"),
    "PLENARY_REQUEST_TIMEOUT": ("request_timeout", "float"),
    "PLENARY_BACKEND_TIMEOUT": ("backend_timeout", "float"),
    "PLENARY_TEMPERATURE": ("temperature", "float"),
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
# Plaintext field -> ciphertext field written to disk.
_SECRET_FIELDS: Mapping[str, str] = {
    "api_key": "api_key_ciphertext",
    "auth_token": "auth_token_ciphertext",
}


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    organization: str | None = None
    request_timeout: float = 90.0
    temperature: float | None = None
    backend_url: str = ""
    auth_token: str = ""
    backend_timeout: float = 30.0
    create_chat: bool = False
    save_messages: bool = False
    save_files: bool = False
    use_tools: bool = False
    max_upload_bytes: int = 20_000_000
    upload_poll_interval: float = 2.0
    upload_poll_attempts: int = 30
    thinking_marker: str = "..."
    failure_notice: str = "Sorry, something went wrong. Please try again."
    debug_logging: bool = False


class SecretVault:
    """Encrypts secrets as ``fernet:<token>`` strings with a key stored on disk."""

    strategy = "fernet"

    def __init__(self, *, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._fernet: Fernet | None = None

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        token = self._get_fernet().encrypt(secret.encode("utf-8")).decode("ascii")
        return f"{self.strategy}:{token}"

    def decrypt(self, token: str | None) -> str:
        if not token:
            return ""
        prefix, _, payload = token.partition(":")
        if not payload:
            prefix, payload = "", token
        if prefix and prefix != self.strategy:
            LOGGER.warning("Unknown secret token prefix %s; returning ciphertext.", prefix)
            return token
        try:
            return self._get_fernet().decrypt(payload.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("Invalid Fernet token") from exc

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._load_or_create_key())
        return self._fernet

    def _load_or_create_key(self) -> bytes:
        path = self._key_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            return path.read_bytes().strip()
        key = Fernet.generate_key()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(tmp_path, 0o600)
        tmp_path.replace(path)
        return key


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, then apply CLI and environment overrides.

        Plaintext secrets found on disk are re-saved encrypted.
        """

        payload = self._read_payload()
        settings = Settings()
        needs_migration = False

        if payload:
            secrets: Dict[str, str] = {}
            for plain_field, cipher_field in _SECRET_FIELDS.items():
                value, migrated = self._decrypt_secret(
                    payload.pop(cipher_field, None),
                    payload.pop(plain_field, None),
                    field_name=plain_field,
                )
                needs_migration = needs_migration or migrated
                if value:
                    secrets[plain_field] = value
            try:
                settings = Settings(**_filter_fields(payload))
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            if secrets:
                settings = replace(settings, **secrets)

        version_mismatch = bool(payload) and payload.get("version") != _SETTINGS_VERSION
        if needs_migration or version_mismatch:
            try:
                self.save(settings)
            except OSError as exc:
                LOGGER.warning("Failed to migrate settings payload: %s", exc)

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="CLI")
        return self._apply_env_overrides(settings)

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes."""

        body = json.dumps(self._serialize(settings), indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _serialize(self, settings: Settings) -> Dict[str, Any]:
        data = asdict(settings)
        for plain_field, cipher_field in _SECRET_FIELDS.items():
            secret = data.pop(plain_field, "") or ""
            if secret:
                data[cipher_field] = self._vault.encrypt(secret)
        data["version"] = _SETTINGS_VERSION
        data["secret_backend"] = self._vault.strategy
        return data

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Settings file %s does not contain an object", self._path)
            return {}
        return payload

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> Settings:
        allowed = {field.name for field in fields(Settings)}
        filtered = {key: value for key, value in overrides.items() if key in allowed and value is not None}
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, (field_name, kind) in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            if kind == "bool":
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
            elif kind == "float":
                try:
                    overrides[field_name] = float(value)
                except ValueError:
                    LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
            else:
                overrides[field_name] = value
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings

    def _decrypt_secret(
        self,
        ciphertext: str | None,
        legacy_plaintext: str | None,
        *,
        field_name: str,
    ) -> tuple[str, bool]:
        if ciphertext:
            try:
                return self._vault.decrypt(ciphertext), False
            except ValueError as exc:
                LOGGER.warning("Unable to decrypt %s: %s", field_name, exc)
                return "", False
        if legacy_plaintext:
            LOGGER.info("Detected plaintext %s; migrating to encrypted storage.", field_name)
            return str(legacy_plaintext), True
        return "", False


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {field.name for field in fields(Settings)} - set(_SECRET_FIELDS)
    return {key: value for key, value in payload.items() if key in allowed}


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"
