"""
Configuration management for loopgate.
"""

import os
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings


def _default_hosts_file() -> str:
    if os.name == "nt":
        return os.path.join("C:\\", "Windows", "System32", "drivers", "etc", "hosts")
    return "/etc/hosts"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Storage
    data_dir: Path = Path.home() / ".loopgate"
    hosts_file: str = _default_hosts_file()

    # Admin API
    api_host: str = "127.0.0.1"
    api_port: int = 10191

    # HTTPS listener
    proxy_host: str = "0.0.0.0"
    default_proxy_port: int = 443
    shutdown_timeout: float = 5.0  # seconds in-flight requests may take to drain

    # Certificate authority
    signer: str = "cryptography"  # or "openssl"
    openssl_bin: str = "openssl"
    root_key_size: int = 4096
    ca_validity_days: int = 3650
    leaf_validity_days: int = 365

    # Logging
    log_level: str = "INFO"

    # Debug mode
    debug: bool = False

    model_config = {
        "env_prefix": "LOOPGATE_",
        "env_file": ".env",
        "extra": "ignore"
    }

    @property
    def certs_dir(self) -> Path:
        return self.data_dir / "certs"

    @property
    def routes_file(self) -> Path:
        return self.data_dir / "proxies.json"

    def validate_signer(self) -> bool:
        """Validate that the configured signing backend is known."""
        if self.signer not in ("cryptography", "openssl"):
            raise ValueError(
                f"LOOPGATE_SIGNER must be 'cryptography' or 'openssl', got {self.signer!r}"
            )
        return True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    settings = Settings()
    settings.validate_signer()
    return settings
