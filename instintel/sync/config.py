"""
Configuration schema for the institution contact sync pipeline.

A single YAML file describes where the directory database lives, how pages are
fetched, which model extracts contacts and what it costs, and the default
budget and reconciliation policy.
"""

import yaml
from pathlib import Path
from typing import Dict, List, Optional, Union
from urllib.parse import urlparse
from pydantic import BaseModel, Field, field_validator

from .models import ApiBudgetSettings, ImportOptions


DEFAULT_HEADERS = {
    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
    'Accept-Language': 'en-US,en;q=0.9',
    'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
                  '(KHTML, like Gecko) Chrome/124.0 Safari/537.36',
}

DEFAULT_PROXY_PREFIXES = [
    'https://api.allorigins.win/raw?url=',
    'https://corsproxy.io/?',
]


def validate_source_url(v: str, allow_local_files: bool = False) -> str:
    """Validate a source URL; `file://` is only accepted when local files are allowed."""
    try:
        result = urlparse(v)
    except Exception:
        raise ValueError('Invalid URL format')
    if result.scheme == 'file':
        if not allow_local_files or not result.path:
            raise ValueError('Local file URLs are not enabled')
        return v
    if result.scheme not in ('http', 'https') or not result.netloc:
        raise ValueError('Invalid URL format')
    return v


class FetchConfig(BaseModel):
    """How source pages are retrieved."""
    timeout: int = Field(default=30, description="Request timeout in seconds")
    headers: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_HEADERS), description="HTTP headers")
    proxy_prefixes: List[str] = Field(
        default_factory=lambda: list(DEFAULT_PROXY_PREFIXES),
        description="Fallback proxy URL prefixes, tried in order after the direct fetch"
    )
    allow_local_files: bool = Field(default=False, description="Enable the file:// transport")

    @field_validator('proxy_prefixes')
    @classmethod
    def validate_proxy_prefixes(cls, v):
        for prefix in v:
            result = urlparse(prefix)
            if result.scheme not in ('http', 'https') or not result.netloc:
                raise ValueError(f'Invalid proxy prefix: {prefix}')
        return v


class ExtractionConfig(BaseModel):
    """Model used for contact extraction and its pricing."""
    model: str = Field(default="gpt-4.1", description="OpenAI model to use")
    max_tokens: int = Field(default=4096, description="Maximum output tokens")
    temperature: float = Field(default=0.0, description="Sampling temperature")
    max_input_chars: int = Field(default=100000, gt=0, description="Cleaned HTML is truncated to this length")
    cost_per_1m_input_tokens: float = Field(default=2.0, ge=0, description="USD per million input tokens")
    cost_per_1m_output_tokens: float = Field(default=8.0, ge=0, description="USD per million output tokens")


class SyncConfig(BaseModel):
    """Main configuration for the contact sync pipeline."""
    version: str = Field(default="1.0.0", description="Configuration version")
    name: str = Field(default="instintel", description="Configuration name")

    # Storage configuration
    database_path: str = Field(default="./cache/instintel.sqlite", description="SQLite directory database")
    checkpoint_directory: str = Field(default="./cache", description="Directory for phase checkpoint logs")

    # Logging configuration
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: Optional[str] = Field(None, description="Log file path")

    fetch: FetchConfig = Field(default_factory=FetchConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    budget: ApiBudgetSettings = Field(
        default_factory=ApiBudgetSettings,
        description="Budget settings used until settings are stored in the database"
    )
    import_options: ImportOptions = Field(default_factory=ImportOptions)

    lease_ttl_seconds: int = Field(default=900, gt=0, description="Lifetime of the per-institution sync lease")

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        v = v.upper()
        if v not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ValueError(f'Invalid log level: {v}')
        return v

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> 'SyncConfig':
        """Load configuration from YAML file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    def to_yaml(self, path: Union[str, Path]) -> None:
        """Save configuration to YAML file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(mode='json')

        with open(path, 'w', encoding='utf-8') as f:
            yaml.dump(data, f, default_flow_style=False, allow_unicode=True)
