"""Engine settings and their on-disk store.

Settings live in ``~/.parley/settings.json``. The provider API key never
touches that file in clear text: it is stored as a Fernet token whose key sits
next to the settings file. ``PARLEY_*`` environment variables win over both the
file and runtime overrides.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

from ..ai.providers import DEFAULT_PROVIDER, ProviderParams, ProviderType
from ..ai.services.summarizer import DEFAULT_SUMMARY_MAX_LENGTH

__all__ = [
    "Settings",
    "SettingsStore",
    "SecretVault",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)

_HOME = Path.home() / ".parley"
_FORMAT_VERSION = 1
_CIPHERTEXT_KEY = "api_key_ciphertext"
_FERNET_PREFIX = "fernet"
_TRUTHY = frozenset({"1", "true", "yes", "on", "debug"})


def _env_bool(raw: str) -> bool:
    return raw.strip().lower() in _TRUTHY


def _env_int(raw: str) -> int:
    return int(raw, 10)


# Environment variable -> (settings field, converter)
_ENV_FIELDS: Mapping[str, tuple[str, Callable[[str], Any]]] = {
    "PARLEY_PROVIDER": ("provider_type", str),
    "PARLEY_API_KEY": ("api_key", str),
    "PARLEY_BASE_URL": ("base_url", str),
    "PARLEY_MODEL": ("model", str),
    "PARLEY_SYSTEM_PROMPT": ("system_prompt", str),
    "PARLEY_DEBUG_LOGGING": ("debug_logging", _env_bool),
    "PARLEY_AUTO_SUMMARY": ("auto_summary", _env_bool),
    "PARLEY_REQUEST_TIMEOUT": ("request_timeout", float),
    "PARLEY_TEMPERATURE": ("temperature", float),
    "PARLEY_TOKEN_LIMIT": ("token_limit", _env_int),
    "PARLEY_MAX_TOOL_ITERATIONS": ("max_tool_iterations", _env_int),
    "PARLEY_SUMMARY_MAX_LENGTH": ("summary_max_length", _env_int),
    "PARLEY_MAX_RETRIES": ("max_retries", _env_int),
}


@dataclass(slots=True)
class Settings:
    """Provider and exchange configuration for one assistant deployment."""

    provider_type: str = DEFAULT_PROVIDER.value
    base_url: str | None = None
    api_key: str = ""
    model: str = "gpt-4o-mini"
    system_prompt: str = ""
    temperature: float | None = None
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    token_limit: int = 4_000
    max_tool_iterations: int = 0
    auto_summary: bool = True
    summary_max_length: int = DEFAULT_SUMMARY_MAX_LENGTH
    debug_logging: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    def provider_params(self) -> ProviderParams:
        """Return the backend credentials described by these settings."""

        return ProviderParams(
            provider_type=ProviderType.parse(self.provider_type) or self.provider_type,
            api_key=self.api_key,
            base_url=self.base_url,
            request_timeout=self.request_timeout,
            max_retries=self.max_retries,
            retry_min_seconds=self.retry_min_seconds,
            retry_max_seconds=self.retry_max_seconds,
            debug_logging=self.debug_logging,
        )


class SecretVault:
    """Fernet encryption for the API key, keyed by a file created on first use."""

    def __init__(self, *, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_HOME / "settings.key")
        self._cipher: Fernet | None = None

    @property
    def strategy(self) -> str:
        return _FERNET_PREFIX

    @property
    def key_path(self) -> Path:
        return self._key_path

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        token = self._fernet().encrypt(secret.encode("utf-8"))
        return f"{_FERNET_PREFIX}:{token.decode('ascii')}"

    def decrypt(self, token: str | None) -> str:
        """Return the clear text of *token*.

        Tokens tagged with another backend are returned untouched; a Fernet
        token that fails authentication raises ``ValueError``.
        """

        if not token:
            return ""
        prefix, _, body = token.partition(":")
        if not body:
            prefix, body = _FERNET_PREFIX, token
        if prefix != _FERNET_PREFIX:
            LOGGER.warning("Secret uses unsupported backend %r; leaving it encrypted.", prefix)
            return token
        try:
            return self._fernet().decrypt(body.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("API key token could not be decrypted") from exc

    def _fernet(self) -> Fernet:
        if self._cipher is None:
            self._cipher = Fernet(self._read_or_create_key())
        return self._cipher

    def _read_or_create_key(self) -> bytes:
        if self._key_path.exists():
            return self._key_path.read_bytes().strip()
        self._key_path.parent.mkdir(parents=True, exist_ok=True)
        key = Fernet.generate_key()
        staging = self._key_path.with_suffix(".tmp")
        staging.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(staging, 0o600)
        staging.replace(self._key_path)
        LOGGER.info("Created settings encryption key at %s", self._key_path)
        return key


class SettingsStore:
    """Reads and writes :class:`Settings` as versioned JSON."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or (_HOME / "settings.json")
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Return stored settings with *overrides*, then the environment, applied.

        A file written by an older format, or one still holding a clear-text
        key, is rewritten in the current format.
        """

        raw = self._read()
        settings, stale = self._decode(raw) if raw else (Settings(), False)
        if stale:
            try:
                self.save(settings)
                LOGGER.info("Migrated settings file %s to format %s", self._path, _FORMAT_VERSION)
            except OSError as exc:  # pragma: no cover - filesystem dependent
                LOGGER.warning("Could not rewrite settings file %s: %s", self._path, exc)
        if overrides:
            settings = _merge(settings, overrides, source="runtime")
        return _merge(settings, _environment_overrides(), source="environment")

    def save(self, settings: Settings) -> Path:
        """Write *settings* atomically and return the file path."""

        record = asdict(settings)
        secret = record.pop("api_key", "")
        if secret:
            record[_CIPHERTEXT_KEY] = self._vault.encrypt(secret)
        record["version"] = _FORMAT_VERSION
        record["secret_backend"] = self._vault.strategy

        self._path.parent.mkdir(parents=True, exist_ok=True)
        staging = self._path.with_suffix(".tmp")
        staging.write_text(json.dumps(record, indent=2, sort_keys=True), encoding="utf-8")
        staging.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _read(self) -> Dict[str, Any]:
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            LOGGER.warning("Ignoring malformed settings file %s: %s", self._path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _decode(self, raw: Dict[str, Any]) -> tuple[Settings, bool]:
        """Build settings from a stored record; the flag asks for a rewrite."""

        stale = raw.get("version") != _FORMAT_VERSION
        secret = ""
        ciphertext = raw.get(_CIPHERTEXT_KEY)
        if ciphertext:
            try:
                secret = self._vault.decrypt(ciphertext)
            except ValueError as exc:
                LOGGER.warning("Dropping stored API key: %s", exc)
        elif raw.get("api_key"):
            LOGGER.info("Found clear-text API key in %s; it will be encrypted.", self._path)
            secret = str(raw["api_key"])
            stale = True

        known = {item.name for item in fields(Settings)} - {"api_key"}
        values = {key: value for key, value in raw.items() if key in known}
        try:
            settings = Settings(**values)
        except TypeError as exc:
            LOGGER.warning("Settings file %s has unexpected values: %s", self._path, exc)
            settings = Settings()
        if secret:
            settings = replace(settings, api_key=secret)
        LOGGER.debug("Settings loaded from %s", self._path)
        return settings, stale


def _environment_overrides() -> Dict[str, Any]:
    found: Dict[str, Any] = {}
    for variable, (name, convert) in _ENV_FIELDS.items():
        raw = os.environ.get(variable)
        if raw is None:
            continue
        try:
            found[name] = convert(raw)
        except ValueError:
            LOGGER.warning("Ignoring %s=%r: expected %s", variable, raw, getattr(convert, "__name__", "value"))
    return found


def _merge(settings: Settings, overrides: Mapping[str, Any], *, source: str) -> Settings:
    known = {item.name for item in fields(Settings)}
    changes = {key: value for key, value in overrides.items() if key in known and value is not None}
    if isinstance(changes.get("metadata"), Mapping):
        changes["metadata"] = {**settings.metadata, **changes["metadata"]}
    if not changes:
        return settings
    LOGGER.debug("Applying %s settings overrides: %s", source, sorted(changes))
    return replace(settings, **changes)


def redact_secret(value: str) -> str:
    """Mask all but the first and last two characters of *value*."""

    secret = (value or "").strip()
    if len(secret) <= 4:
        return "*" * len(secret)
    return secret[:2] + "*" * (len(secret) - 4) + secret[-2:]
