"""
Configuration module for sift.

Provides strongly-typed configuration with pydantic, supporting both
file-based and environment variable configuration.
"""

from __future__ import annotations

import json
import tomllib
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_EXTENSIONS = [
    ".js",
    ".ts",
    ".jsx",
    ".tsx",
    ".mjs",
    ".cjs",
    ".py",
    ".java",
    ".cpp",
    ".c",
    ".h",
    ".go",
    ".rs",
    ".rb",
    ".php",
    ".html",
    ".xml",
    ".yaml",
    ".yml",
    ".json",
    ".toml",
    ".md",
    ".txt",
    ".rst",
    ".env.example",
    ".gitignore",
    "Dockerfile",
    "Makefile",
]

DEFAULT_IGNORE_PATTERNS = [
    "**/.git/**",
    "**/node_modules/**",
    "**/.sift/**",
    "*.min.js",
    "*.min.css",
    "**/*.map",
    "**/.env",
    "**/*.key",
    "**/*.pem",
    "**/dist/**",
    "**/build/**",
    "**/coverage/**",
]


class StorageConfig(BaseModel):
    """Storage layer configuration."""

    index_filename: str = Field(
        default="index.db",
        description="SQLite file name inside the data directory",
    )
    wal_mode: bool = Field(
        default=True,
        description="Enable WAL mode so searches read committed snapshots",
    )
    cache_size_mb: int = Field(
        default=64,
        ge=8,
        le=512,
        description="SQLite cache size in MB",
    )
    rebuild_on_model_change: bool = Field(
        default=False,
        description="Clear the index when the embedding model or dimension changes",
    )


class EmbeddingConfig(BaseModel):
    """Embedding generation configuration."""

    model_name: str = Field(
        default="all-MiniLM-L6-v2",
        description="Embedding model name",
    )
    model_path: Path | None = Field(
        default=None,
        description="Directory holding model.onnx and tokenizer.json",
    )
    dimension: int | None = Field(
        default=None,
        ge=1,
        le=8192,
        description="Embedding dimension; defaults to the model's known output size",
    )
    max_tokens: int = Field(
        default=256,
        ge=32,
        le=8192,
        description="Maximum tokens per text before truncation",
    )
    batch_size: int = Field(
        default=32,
        ge=1,
        le=256,
        description="Batch size for embedding generation",
    )
    cache_size: int = Field(
        default=10000,
        ge=0,
        description="Cached embeddings kept in memory (0 disables caching)",
    )


class IndexingConfig(BaseModel):
    """File selection and chunking configuration."""

    chunk_size: int = Field(
        default=30,
        ge=1,
        le=1000,
        description="Lines per chunk window",
    )
    min_chunk_chars: int = Field(
        default=10,
        ge=0,
        description="Windows whose trimmed text is shorter than this are dropped",
    )
    max_file_size_bytes: int = Field(
        default=10 * 1024 * 1024,
        ge=1,
        description="Files larger than this are skipped",
    )
    extensions: list[str] = Field(
        default_factory=lambda: list(DEFAULT_EXTENSIONS),
        description="Allowed extensions, or exact basenames for extensionless files",
    )
    ignore_patterns: list[str] = Field(
        default_factory=lambda: list(DEFAULT_IGNORE_PATTERNS),
        description="Glob patterns that are never indexed",
    )
    ignore_file: str = Field(
        default=".siftignore",
        description="Project-level override file (gitignore syntax, ! force-includes)",
    )
    git_timeout_seconds: int = Field(
        default=30,
        ge=1,
        le=600,
        description="Timeout for git ls-files",
    )


class SearchConfig(BaseModel):
    """Search defaults."""

    default_limit: int = Field(
        default=10,
        ge=1,
        le=1000,
        description="Results returned when no limit is given",
    )
    min_score: float = Field(
        default=0.3,
        ge=-1.0,
        le=1.0,
        description="Minimum dot-product similarity for a result",
    )


class NetworkConfig(BaseModel):
    """Network access configuration."""

    enabled: bool = Field(
        default=False,
        description="Allow downloading model files",
    )
    timeout_seconds: int = Field(
        default=30,
        ge=5,
        le=300,
        description="Request timeout in seconds",
    )


class Config(BaseSettings):
    """
    Main sift configuration.

    Can be configured via:
    1. Configuration file (sift.toml or sift.yaml)
    2. Environment variables with SIFT_ prefix
    3. Programmatic overrides
    """

    model_config = SettingsConfigDict(
        env_prefix="SIFT_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    project_root: Path = Field(
        default_factory=lambda: Path.cwd(),
        description="Project root directory",
    )
    data_dir: Path = Field(
        default=Path(".sift"),
        description="Data directory (relative to project_root)",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )

    storage: StorageConfig = Field(default_factory=StorageConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    indexing: IndexingConfig = Field(default_factory=IndexingConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    network: NetworkConfig = Field(default_factory=NetworkConfig)

    @field_validator("project_root", mode="before")
    @classmethod
    def resolve_project_root(cls, v: Path | str) -> Path:
        """Resolve project root to absolute path."""
        path = Path(v) if isinstance(v, str) else v
        return path.resolve()

    @property
    def absolute_data_dir(self) -> Path:
        """Get absolute path to data directory."""
        if self.data_dir.is_absolute():
            return self.data_dir
        return self.project_root / self.data_dir

    @property
    def db_path(self) -> Path:
        """Get absolute path to the index database."""
        return self.absolute_data_dir / self.storage.index_filename

    @property
    def ignore_file_path(self) -> Path:
        """Get absolute path to the project override file."""
        return self.project_root / self.indexing.ignore_file

    def ensure_directories(self) -> None:
        """Ensure all required directories exist."""
        self.absolute_data_dir.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_file(cls, path: Path, **overrides: object) -> "Config":
        """Load configuration from a TOML, YAML or JSON file."""
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        suffix = path.suffix.lower()
        content = path.read_text()

        if suffix == ".toml":
            data = tomllib.loads(content)
        elif suffix in (".yaml", ".yml"):
            data = yaml.safe_load(content) or {}
        elif suffix == ".json":
            data = json.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {suffix}")

        data.update(overrides)
        return cls(**data)


def load_config(
    config_path: Path | None = None,
    project_root: Path | None = None,
) -> Config:
    """
    Load configuration with automatic discovery.

    Priority:
    1. Explicit config_path if provided
    2. sift.toml in project_root
    3. .sift/config.toml in project_root
    4. sift.yaml / .sift/config.yaml in project_root
    5. Default configuration
    """
    root = (project_root or Path.cwd()).resolve()

    if config_path and config_path.exists():
        return Config.from_file(config_path, project_root=root)

    candidates = [
        root / "sift.toml",
        root / ".sift" / "config.toml",
        root / "sift.yaml",
        root / ".sift" / "config.yaml",
    ]

    for candidate in candidates:
        if candidate.exists():
            return Config.from_file(candidate, project_root=root)

    return Config(project_root=root)
