"""Configuration settings and models for the backup application."""

import json
import os
from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Union

import yaml
from pydantic import BaseModel, Field, validator

CHUNK_GRANULARITY = 256 * 1024  # resumable uploads require multiples of 256 KiB


class LogLevel(str, Enum):
    """Supported log levels for process and session logging."""
    INFO = "INFO"
    DEBUG = "DEBUG"


class UploadOptions(BaseModel):
    """Resumable upload tuning."""
    chunk_size: int = CHUNK_GRANULARITY
    chunk_retry_attempts: int = 3
    chunk_retry_delay: float = 0.5  # seconds, multiplied by attempt number
    timeout_retries: int = 3
    timeout_backoff: float = 1.0  # seconds, doubled per retry
    network_wait_attempts: int = 5
    network_wait_base: float = 2.0  # seconds, doubled per attempt
    network_wait_cap: float = 30.0
    auth_failure_threshold: int = 5
    progress_every_chunks: int = 4

    @validator('chunk_size')
    def validate_chunk_size(cls, v):
        if v <= 0 or v % CHUNK_GRANULARITY:
            raise ValueError(f'chunk_size must be a positive multiple of {CHUNK_GRANULARITY}')
        return v

    @validator('chunk_retry_attempts', 'auth_failure_threshold', 'progress_every_chunks')
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError('must be at least 1')
        return v


class BackupConfig(BaseModel):
    """Main configuration class."""
    root_path: Optional[str] = None
    max_file_size_mb: int = 200
    reverify: bool = False
    device_id: str = "unknown"
    state_dir: Path = Field(default_factory=lambda: Path.home() / ".drive_backup")
    log_level: LogLevel = LogLevel.INFO
    log_file: Optional[Path] = None
    heartbeat_interval: float = 30.0
    api_base_url: str = "https://www.googleapis.com/drive/v3"
    upload_base_url: str = "https://www.googleapis.com/upload/drive/v3"
    request_timeout: float = 60.0
    upload: UploadOptions = Field(default_factory=UploadOptions)

    @validator('max_file_size_mb')
    def validate_max_size(cls, v):
        if v <= 0:
            raise ValueError('max_file_size_mb must be positive')
        return v

    @property
    def session_log_dir(self) -> Path:
        return Path(self.state_dir) / "logs"

    @property
    def cache_dir(self) -> Path:
        return Path(self.state_dir) / "cache"

    @classmethod
    def from_yaml(cls, config_path: Union[str, Path]) -> "BackupConfig":
        """Load configuration from YAML file."""
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, 'r', encoding='utf-8') as f:
            config_data = yaml.safe_load(f) or {}

        return cls(**config_data)

    def to_yaml(self, config_path: Union[str, Path]) -> None:
        """Save configuration to YAML file."""
        config_path = Path(config_path)
        config_path.parent.mkdir(parents=True, exist_ok=True)

        # round-trip through JSON so enums and paths serialize as plain strings
        data = json.loads(self.json(exclude_none=True))
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(data, f, default_flow_style=False, indent=2)


class SessionRequest(BaseModel):
    """Parameters the launcher supplies for one backup session."""
    root_path: str
    max_file_size_mb: int = 200
    reverify: bool = False
    device_id: Optional[str] = None

    @property
    def max_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024


class CredentialsConfig(BaseModel):
    """Credentials configuration (stored separately for security)."""
    auth_headers: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_yaml(cls, credentials_path: Union[str, Path]) -> "CredentialsConfig":
        """Load credentials from YAML file."""
        credentials_path = Path(credentials_path)
        if not credentials_path.exists():
            return cls()  # Return empty config if file doesn't exist

        with open(credentials_path, 'r', encoding='utf-8') as f:
            creds_data = yaml.safe_load(f) or {}

        return cls(**creds_data)

    def to_yaml(self, credentials_path: Union[str, Path]) -> None:
        """Save credentials to YAML file."""
        credentials_path = Path(credentials_path)
        credentials_path.parent.mkdir(parents=True, exist_ok=True)

        with open(credentials_path, 'w', encoding='utf-8') as f:
            yaml.dump(self.dict(), f, default_flow_style=False, indent=2)

    @classmethod
    def from_env(cls) -> "CredentialsConfig":
        """Load credentials from environment variables."""
        headers: Dict[str, str] = {}
        raw_headers = os.getenv('DRIVE_BACKUP_AUTH_HEADERS')
        if raw_headers:
            headers.update(json.loads(raw_headers))
        token = os.getenv('DRIVE_BACKUP_ACCESS_TOKEN')
        if token:
            headers['Authorization'] = f"Bearer {token}"
        return cls(auth_headers=headers)
