"""Configuration Manager for Strongbox"""

import copy
import logging
import os
from pathlib import Path
from typing import Any

import yaml
from cryptography.fernet import Fernet, InvalidToken

from .errors import ValidationError

DEFAULT_SETTINGS: dict[str, Any] = {
    "storage": {
        "destination": str(Path.home() / "backups" / "strongbox"),
    },
    "backup": {
        "chunk_size": 16 * 1024,
        "compression": {"enabled": True, "level": 6},
        "encryption": {"enabled": False, "key_file": None, "password": None},
    },
    "retention": {"days": 30},
    "scheduler": {
        "retry_attempts": 3,
        "retry_delay_seconds": 60,
        "poll_interval_seconds": 1,
    },
    "logging": {
        "level": "INFO",
        "max_bytes": 10 * 1024 * 1024,
        "backup_count": 5,
    },
}


class ConfigManager:
    """Loads settings.yaml and layers it over the built-in defaults"""

    def __init__(self, config_dir: str | Path | None = None):
        self.config_dir = Path(config_dir or Path(__file__).parent.parent.parent / "config")
        self.settings_file = self.config_dir / "settings.yaml"
        self.logger = logging.getLogger("ConfigManager")
        self._cipher: Fernet | None = None

        self.settings = self._load_yaml(self.settings_file)

        # Encrypt a plaintext password left in the settings file
        self._encrypt_password()

    def _load_yaml(self, file_path: Path) -> dict[str, Any]:
        """Load YAML configuration file"""
        if not file_path.exists():
            self.logger.debug(f"No settings file at {file_path}, using defaults")
            return {}

        try:
            with open(file_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValidationError(f"Invalid settings file: {e}", str(file_path)) from e

        if not isinstance(data, dict):
            raise ValidationError("Settings file must contain a mapping", str(file_path))
        return data

    def save(self) -> None:
        """Save settings to YAML file"""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        with open(self.settings_file, "w") as f:
            yaml.dump(self.settings, f, default_flow_style=False, sort_keys=False)

    def _get_cipher(self) -> Fernet:
        """Load or create the Fernet key that protects secrets in settings.yaml"""
        if self._cipher is not None:
            return self._cipher

        key_file = self.config_dir / ".encryption_key"
        if key_file.exists():
            current_mode = os.stat(key_file).st_mode & 0o777
            if current_mode != 0o600:
                os.chmod(key_file, 0o600)
            with open(key_file, "rb") as f:
                self._cipher = Fernet(f.read())
        else:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            key = Fernet.generate_key()
            fd = os.open(str(key_file), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            try:
                os.write(fd, key)
            finally:
                os.close(fd)
            self._cipher = Fernet(key)
        return self._cipher

    def _encrypt_password(self) -> None:
        """Encrypt the backup password if stored in plaintext"""
        encryption = self.settings.get("backup", {}).get("encryption") or {}
        password = encryption.get("password")

        if password and not str(password).startswith("enc:"):
            encryption["password"] = f"enc:{self.encrypt_value(str(password))}"
            self.save()
            self.logger.info("Encrypted backup password in settings file")

    def encrypt_value(self, value: str) -> str:
        """Encrypt a string value"""
        return self._get_cipher().encrypt(value.encode()).decode()

    def decrypt_value(self, encrypted: str) -> str:
        """Decrypt an encrypted value"""
        if encrypted.startswith("enc:"):
            encrypted = encrypted[4:]
        try:
            return self._get_cipher().decrypt(encrypted.encode()).decode()
        except InvalidToken as e:
            raise ValidationError("Stored password cannot be decrypted with the local key") from e

    def set_encryption_password(self, password: str) -> None:
        backup = self.settings.setdefault("backup", {})
        encryption = backup.setdefault("encryption", {})
        encryption["password"] = f"enc:{self.encrypt_value(password)}"
        self.save()

    def get_encryption_password(self) -> str | None:
        password = self.get_setting("backup.encryption.password")
        if not password:
            return None
        return self.decrypt_value(str(password))

    def get_setting(self, key: str, default: Any = None) -> Any:
        """Get a setting value with optional default

        Args:
            key: Setting key (supports nested keys with dot notation, e.g., 'backup.compression.level')
            default: Default value if the setting is neither configured nor built in

        Returns:
            Setting value or default
        """
        for source in (self.settings, DEFAULT_SETTINGS):
            value = self._lookup(source, key)
            if value is not None:
                return value
        return default

    @staticmethod
    def _lookup(source: dict[str, Any], key: str) -> Any:
        value: Any = source
        for k in key.split("."):
            if not isinstance(value, dict):
                return None
            value = value.get(k)
            if value is None:
                return None
        return value

    def set_setting(self, key: str, value: Any) -> None:
        keys = key.split(".")
        node = self.settings
        for k in keys[:-1]:
            node = node.setdefault(k, {})
        node[keys[-1]] = value

    def as_dict(self) -> dict[str, Any]:
        """Effective settings with defaults applied"""
        merged = copy.deepcopy(DEFAULT_SETTINGS)
        _deep_update(merged, self.settings)
        return merged

    def get_destination(self) -> Path:
        return Path(self.get_setting("storage.destination")).expanduser()

    def backup_options(self, source_path: str, incremental: bool = False):
        """Build BackupOptions for a source from the configured defaults"""
        from .backup_engine import BackupOptions

        return BackupOptions(
            source_path=source_path,
            enable_compression=bool(self.get_setting("backup.compression.enabled")),
            compression_level=int(self.get_setting("backup.compression.level")),
            enable_encryption=bool(self.get_setting("backup.encryption.enabled")),
            key_file=self.get_setting("backup.encryption.key_file"),
            password=self.get_encryption_password(),
            incremental=incremental,
        )


def _deep_update(target: dict[str, Any], updates: dict[str, Any]) -> None:
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_update(target[key], value)
        else:
            target[key] = value
