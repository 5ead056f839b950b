"""
Configuration — loads settings from .knowledge-sync.yaml, environment variables,
and built-in defaults (in that priority order: CLI args > env > YAML > defaults).
"""

import os

import yaml


_DEFAULTS = {
    "home": os.path.join(os.path.expanduser("~"), ".knowledge-sync"),
    "registry_ttl_seconds": 30.0,
    "walk_max_depth": 5,
    "chunk_size": 1000,
    "chunk_overlap": 100,
    "code_chunk_lines": 50,
    "code_chunk_overlap": 10,
    "max_file_bytes": 1_000_000,
    "search_top_k": 5,
    "index_stale_seconds": None,
    "embedder": "hashing",
    "embedding_model": "text-embedding-3-small",
    "embedding_dimensions": 256,
    "openai_api_key": "",
    "openai_base_url": "https://api.openai.com/v1",
}

# Config file search locations
_CONFIG_FILENAMES = [".knowledge-sync.yaml", ".knowledge-sync.yml"]


def _find_config_file(explicit_path: str | None = None) -> str | None:
    """Find the config file. Checks explicit path, CWD, then user home."""
    if explicit_path:
        if os.path.isfile(explicit_path):
            return explicit_path
        return None

    search_dirs = [os.getcwd(), os.path.expanduser("~")]
    for d in search_dirs:
        for name in _CONFIG_FILENAMES:
            path = os.path.join(d, name)
            if os.path.isfile(path):
                return path
    return None


def _load_yaml(path: str) -> dict:
    """Load YAML file, returns empty dict on failure."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return data if isinstance(data, dict) else {}
    except (OSError, yaml.YAMLError):
        return {}


def _optional_float(value) -> float | None:
    if value is None or value == "":
        return None
    return float(value)


class Config:
    """Application configuration.

    Settings are resolved in priority order:
    1. CLI arguments (handled by caller)
    2. Environment variables
    3. .knowledge-sync.yaml config file
    4. Built-in defaults
    """

    def __init__(self, yaml_data: dict | None = None):
        yd = yaml_data or {}

        # Helper: env var > yaml > default
        def _get(env_key: str, yaml_key: str, default, cast=str):
            env_val = os.getenv(env_key)
            if env_val is not None:
                return cast(env_val)
            yaml_val = yd.get(yaml_key)
            if yaml_val is not None:
                return cast(yaml_val)
            return default

        self.HOME = os.path.expanduser(
            _get("KNOWLEDGE_SYNC_HOME", "home", _DEFAULTS["home"]))

        # Project discovery
        self.REGISTRY_TTL_SECONDS = _get("KNOWLEDGE_SYNC_REGISTRY_TTL",
                                         "registry_ttl_seconds",
                                         _DEFAULTS["registry_ttl_seconds"],
                                         cast=float)
        self.WALK_MAX_DEPTH = _get("KNOWLEDGE_SYNC_WALK_DEPTH", "walk_max_depth",
                                   _DEFAULTS["walk_max_depth"], cast=int)

        # Chunking policy
        self.CHUNK_SIZE = _get("KNOWLEDGE_SYNC_CHUNK_SIZE", "chunk_size",
                               _DEFAULTS["chunk_size"], cast=int)
        self.CHUNK_OVERLAP = _get("KNOWLEDGE_SYNC_CHUNK_OVERLAP", "chunk_overlap",
                                  _DEFAULTS["chunk_overlap"], cast=int)
        self.CODE_CHUNK_LINES = _get("KNOWLEDGE_SYNC_CODE_CHUNK_LINES",
                                     "code_chunk_lines",
                                     _DEFAULTS["code_chunk_lines"], cast=int)
        self.CODE_CHUNK_OVERLAP = _get("KNOWLEDGE_SYNC_CODE_CHUNK_OVERLAP",
                                       "code_chunk_overlap",
                                       _DEFAULTS["code_chunk_overlap"], cast=int)
        self.MAX_FILE_BYTES = _get("KNOWLEDGE_SYNC_MAX_FILE_BYTES", "max_file_bytes",
                                   _DEFAULTS["max_file_bytes"], cast=int)

        self.SEARCH_TOP_K = _get("KNOWLEDGE_SYNC_TOP_K", "search_top_k",
                                 _DEFAULTS["search_top_k"], cast=int)

        # None keeps running jobs alive indefinitely
        self.INDEX_STALE_SECONDS = _get("KNOWLEDGE_SYNC_INDEX_STALE_SECONDS",
                                        "index_stale_seconds",
                                        _DEFAULTS["index_stale_seconds"],
                                        cast=_optional_float)

        # Embedding provider
        self.EMBEDDER = _get("KNOWLEDGE_SYNC_EMBEDDER", "embedder",
                             _DEFAULTS["embedder"])
        self.EMBEDDING_MODEL = _get("EMBEDDING_MODEL", "embedding_model",
                                    _DEFAULTS["embedding_model"])
        self.EMBEDDING_DIMENSIONS = _get("EMBEDDING_DIMENSIONS",
                                         "embedding_dimensions",
                                         _DEFAULTS["embedding_dimensions"],
                                         cast=int)

        openai_section = yd.get("openai", {}) if isinstance(yd.get("openai"), dict) else {}
        self.OPENAI_API_KEY = os.getenv("OPENAI_API_KEY") or openai_section.get(
            "api_key", _DEFAULTS["openai_api_key"])
        self.OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL") or openai_section.get(
            "base_url", _DEFAULTS["openai_base_url"])

    @property
    def WORKSPACES_DIR(self) -> str:
        """Global project store: one subdirectory per project."""
        return os.path.join(self.HOME, "workspaces")

    @classmethod
    def load(cls, config_path: str | None = None) -> "Config":
        """Load config from YAML file (if found) + env vars + defaults."""
        path = _find_config_file(config_path)
        yaml_data = _load_yaml(path) if path else {}
        return cls(yaml_data)
