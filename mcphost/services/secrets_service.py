"""Secrets service.

Durable key/value store for provider credentials (API keys, tokens).
Each secret is one file in a private directory: the directory is kept at
mode 0700 and every file at 0600. Values are Fernet-encrypted at rest when
an encryption key is configured.
"""

import os
import re
import stat
import threading
from pathlib import Path
from uuid import UUID

import structlog

from mcphost.core.encryption import DecryptionError, SecretEncryption

logger = structlog.get_logger()

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")
_SECRET_SUFFIX = ".secret"


class SecretsError(Exception):
    """Error in secrets operations."""

    pass


class SecretNotFoundError(SecretsError):
    """No secret stored under the requested key."""

    def __init__(self, key: UUID | str, message: str | None = None) -> None:
        self.key = key
        if message is None:
            if isinstance(key, UUID):
                message = f"Secret not found for MCP {key}"
            else:
                message = f"Secret not found: {key}"
        super().__init__(message)


class InvalidSecretKeyError(SecretsError):
    """Key is empty or contains characters that are not allowed."""

    pass


class KeyfileNotFoundError(SecretsError):
    """Configured keyfile does not exist."""

    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(f"Keyfile not found: {path}")


class SecretsPermissionError(SecretsError):
    """Owner-only access could not be enforced or the file is unreadable."""

    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(f"Permission denied: {path}")


class SecretsIOError(SecretsError):
    """Underlying filesystem failure."""

    pass


class SecretsManager:
    """File-backed secrets store.

    Provider API keys live under the ``mcp_<id>`` namespace: the default
    key is ``mcp_<id>`` and a key for a specific environment variable is
    ``mcp_<id>_<VAR_NAME>``.

    Example usage:
        secrets = SecretsManager(Path("~/.local/share/mcphost/mcp_secrets"))
        secrets.store_api_key(config.id, "sk-...")
        key = secrets.load_api_key(config.id)
    """

    def __init__(
        self,
        secrets_dir: Path,
        encryption: SecretEncryption | None = None,
    ) -> None:
        """Initialize secrets manager.

        Args:
            secrets_dir: Directory holding secret files (created on first write)
            encryption: Optional encryption for values at rest
        """
        self._dir = Path(secrets_dir).expanduser()
        self._encryption = encryption
        self._lock = threading.Lock()

    @property
    def secrets_dir(self) -> Path:
        return self._dir

    # Generic key/value API

    def store(self, key: str, value: str) -> None:
        """Store a secret, replacing any previous value.

        Raises:
            InvalidSecretKeyError: If key is malformed
            SecretsPermissionError: If owner-only access cannot be enforced
            SecretsIOError: If the file cannot be written
        """
        self._validate_key(key)
        payload = self._encryption.encrypt(value) if self._encryption else value
        path = self._path(key)
        tmp_path = path.with_name(path.name + ".tmp")

        with self._lock:
            self._ensure_dir()
            try:
                fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                self._restrict(tmp_path, 0o600)
                os.replace(tmp_path, path)
            except SecretsPermissionError:
                tmp_path.unlink(missing_ok=True)
                raise
            except PermissionError as e:
                raise SecretsPermissionError(path) from e
            except OSError as e:
                tmp_path.unlink(missing_ok=True)
                raise SecretsIOError(f"Failed to write secret: {e}") from e

        logger.debug("secret_stored", key=key)

    def get(self, key: str) -> str | None:
        """Get a secret value, or None if the key is absent."""
        self._validate_key(key)
        path = self._path(key)

        with self._lock:
            if not path.exists():
                return None
            try:
                payload = path.read_text(encoding="utf-8")
            except PermissionError as e:
                raise SecretsPermissionError(path) from e
            except OSError as e:
                raise SecretsIOError(f"Failed to read secret: {e}") from e

        if self._encryption is None:
            return payload
        try:
            return self._encryption.decrypt(payload)
        except DecryptionError as e:
            logger.error("secret_decryption_failed", key=key)
            raise SecretsError(f"Failed to decrypt secret: {key}") from e

    def delete(self, key: str) -> None:
        """Delete a secret.

        Raises:
            SecretNotFoundError: If no secret is stored under key
        """
        self._validate_key(key)
        path = self._path(key)

        with self._lock:
            if not path.exists():
                raise SecretNotFoundError(key)
            try:
                path.unlink()
            except PermissionError as e:
                raise SecretsPermissionError(path) from e
            except OSError as e:
                raise SecretsIOError(f"Failed to delete secret: {e}") from e

        logger.debug("secret_deleted", key=key)

    def list_keys(self) -> list[str]:
        """List stored secret keys, sorted."""
        with self._lock:
            if not self._dir.exists():
                return []
            try:
                return sorted(
                    p.name[: -len(_SECRET_SUFFIX)]
                    for p in self._dir.iterdir()
                    if p.is_file() and p.name.endswith(_SECRET_SUFFIX)
                )
            except OSError as e:
                raise SecretsIOError(f"Failed to read secrets directory: {e}") from e

    def exists(self, key: str) -> bool:
        self._validate_key(key)
        return self._path(key).exists()

    # Provider API keys

    @staticmethod
    def api_key_name(mcp_id: UUID, var_name: str | None = None) -> str:
        """Storage key for a provider's default or per-variable API key."""
        if var_name is None:
            return f"mcp_{mcp_id}"
        return f"mcp_{mcp_id}_{var_name}"

    def store_api_key(self, mcp_id: UUID, value: str, var_name: str | None = None) -> None:
        self.store(self.api_key_name(mcp_id, var_name), value)

    def load_api_key(self, mcp_id: UUID, var_name: str | None = None) -> str:
        """Load a provider API key.

        Raises:
            SecretNotFoundError: If no key is stored for the provider
        """
        value = self.get(self.api_key_name(mcp_id, var_name))
        if value is None:
            raise SecretNotFoundError(mcp_id)
        return value.strip()

    def delete_api_key(self, mcp_id: UUID) -> int:
        """Delete the default and every named API key of a provider.

        Returns:
            Number of secrets removed
        """
        prefix = self.api_key_name(mcp_id)
        removed = 0
        for key in self.list_keys():
            if key == prefix or key.startswith(prefix + "_"):
                try:
                    self.delete(key)
                    removed += 1
                except SecretNotFoundError:
                    continue
        if removed:
            logger.info("mcp_secrets_deleted", mcp_id=str(mcp_id), count=removed)
        return removed

    def read_keyfile(self, path: Path) -> str:
        """Read a token from a user-provided keyfile.

        Raises:
            KeyfileNotFoundError: If the file does not exist
            SecretsPermissionError: If the file cannot be read
        """
        path = Path(path).expanduser()
        if not path.exists():
            raise KeyfileNotFoundError(path)
        try:
            return path.read_text(encoding="utf-8").strip()
        except PermissionError as e:
            raise SecretsPermissionError(path) from e
        except OSError as e:
            raise SecretsIOError(f"Failed to read keyfile {path}: {e}") from e

    # Internals

    def _path(self, key: str) -> Path:
        return self._dir / f"{key}{_SECRET_SUFFIX}"

    @staticmethod
    def _validate_key(key: str) -> None:
        if not key:
            raise InvalidSecretKeyError("Key cannot be empty")
        if ".." in key or not _KEY_PATTERN.match(key):
            raise InvalidSecretKeyError(f"Key contains invalid characters: {key!r}")

    def _ensure_dir(self) -> None:
        try:
            self._dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        except PermissionError as e:
            raise SecretsPermissionError(self._dir) from e
        except OSError as e:
            raise SecretsIOError(f"Failed to create secrets directory: {e}") from e
        self._restrict(self._dir, 0o700)

    @staticmethod
    def _restrict(path: Path, mode: int) -> None:
        """Apply an owner-only mode and verify it took effect."""
        if os.name != "posix":
            return
        try:
            os.chmod(path, mode)
            actual = stat.S_IMODE(os.stat(path).st_mode)
        except OSError as e:
            logger.error("secrets_permissions_failed", path=str(path), error=str(e))
            raise SecretsPermissionError(path) from e
        if actual & 0o077:
            logger.error("secrets_permissions_not_enforced", path=str(path), mode=oct(actual))
            raise SecretsPermissionError(path)
