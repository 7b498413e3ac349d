"""
Configuration management for the policy viewer using Pydantic.
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Type

from pydantic import Field, field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


DEFAULT_CONFIG_FILE = "/etc/vapview/config.json"
SERVICE_ACCOUNT_DIR = Path("/var/run/secrets/kubernetes.io/serviceaccount")


class ServerConfig(BaseSettings):
    """Settings shared by every web server."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server configuration
    bind_address: str = Field(default="127.0.0.1", description="Address to bind the server to")
    port: int = Field(default=8080, ge=1, le=65535)
    uds_path: Optional[str] = Field(default=None, description="Serve on a Unix socket instead of TCP")

    # TLS configuration
    tls_cert_path: Optional[Path] = None
    tls_key_path: Optional[Path] = None

    # Debug mode
    debug: bool = False

    @field_validator("tls_cert_path", "tls_key_path")
    @classmethod
    def validate_paths(cls, v):
        """Validate that paths exist if specified."""
        if v is not None:
            path = Path(v) if not isinstance(v, Path) else v
            if not path.exists():
                raise ValueError(f"Path does not exist: {path}")
            return path
        return v

    def export_json(self) -> str:
        """Export configuration as JSON."""
        return self.model_dump_json(indent=2)

    def export_dict(self) -> dict:
        """Export configuration as dictionary."""
        return self.model_dump(mode="json")


class JsonConfigFileSource(PydanticBaseSettingsSource):
    """Settings read from a JSON config file, ranked below the environment."""

    def __init__(self, settings_cls: Type[BaseSettings], config_file: Optional[str]):
        super().__init__(settings_cls)
        self.config_file = config_file
        self.file_config: Dict[str, Any] = {}
        if config_file and Path(config_file).exists():
            with open(config_file, "r") as f:
                self.file_config = json.load(f)

    def get_field_value(self, field: FieldInfo, field_name: str) -> Tuple[Any, str, bool]:
        return self.file_config.get(field_name), field_name, False

    def __call__(self) -> Dict[str, Any]:
        return {
            key: value
            for key, value in self.file_config.items()
            if key in self.settings_cls.model_fields
        }


class PolicyViewerConfig(ServerConfig):
    """Configuration for the policy viewer service."""

    # Kubernetes API configuration
    kube_api_url: str = Field(default="https://kubernetes.default.svc")
    kube_token_path: Optional[Path] = Field(default=SERVICE_ACCOUNT_DIR / "token")
    kube_ca_path: Optional[Path] = Field(default=SERVICE_ACCOUNT_DIR / "ca.crt")
    kube_insecure_skip_tls_verify: bool = False
    kube_timeout: float = Field(default=10.0, gt=0)

    # Evaluation engine configuration
    engine_binary: Path = Field(default=Path("/usr/local/bin/vap-eval"))
    engine_timeout: float = Field(default=10.0, gt=0)

    # Session configuration
    max_sessions: int = Field(default=64, ge=1)

    # Config file support
    config_file: Optional[Path] = None

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        config_file = (
            init_settings.init_kwargs.get("config_file")
            or _environ_lookup("CONFIG_FILE")
            or DEFAULT_CONFIG_FILE
        )
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            JsonConfigFileSource(settings_cls, config_file),
            file_secret_settings,
        )

    def read_token(self) -> Optional[str]:
        """Return the service account bearer token, if one is mounted."""
        if self.kube_token_path and self.kube_token_path.exists():
            return self.kube_token_path.read_text().strip()
        return None

    def tls_verify(self):
        """Value for httpx's ``verify`` argument."""
        if self.kube_insecure_skip_tls_verify:
            return False
        if self.kube_ca_path and self.kube_ca_path.exists():
            return str(self.kube_ca_path)
        return True


def _environ_lookup(name: str) -> Optional[str]:
    for key, value in os.environ.items():
        if key.upper() == name:
            return value
    return None

def load_config(**kwargs) -> PolicyViewerConfig:
    """Load configuration with environment variables and optional overrides."""
    return PolicyViewerConfig(**kwargs)
