"""Configuration for trackline.

Handles:
- .trackline/config.yaml parsing (user-facing settings)
- .trackline/metadata.json parsing (database and JSONL file names)
- Environment variable overrides
- .trackline/ directory discovery
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
from dataclasses import dataclass, field
from typing import Any

import yaml

from trackline.errors import ValidationError
from trackline.id_gen import IdConfig
from trackline.sync.export import ExportConfig, ExportErrorPolicy
from trackline.sync.history import HistoryConfig
from trackline.sync.importer import ImportConfig, OrphanMode

logger = logging.getLogger(__name__)

CONFIG_YAML = "config.yaml"
METADATA_JSON = "metadata.json"
DATA_DIR_NAME = ".trackline"
DEFAULT_DB_NAME = "trackline.db"
DEFAULT_JSONL_NAME = "issues.jsonl"

ENV_ACTOR = "TL_ACTOR"
ENV_DB = "TRACKLINE_DB"
ENV_JSON = "TL_JSON"

# yaml key -> (attribute, type)
_KEYS: dict[str, tuple[str, type]] = {
    "issue-prefix": ("issue_prefix", str),
    "actor": ("actor", str),
    "db": ("db", str),
    "json": ("json_output", bool),
    "no-auto-flush": ("no_auto_flush", bool),
    "no-auto-import": ("no_auto_import", bool),
    "lock-timeout-ms": ("lock_timeout_ms", int),
    "id-min-length": ("id_min_length", int),
    "id-max-length": ("id_max_length", int),
    "id-max-collision-prob": ("id_max_collision_prob", float),
    "tombstone-retention-days": ("tombstone_retention_days", int),
    "export-error-policy": ("export_error_policy", str),
    "orphan-mode": ("orphan_mode", str),
    "history-enabled": ("history_enabled", bool),
    "history-max-count": ("history_max_count", int),
    "history-max-age-days": ("history_max_age_days", int),
}


def _coerce(key: str, value: Any, kind: type) -> Any:
    if kind is bool:
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    try:
        return kind(value)
    except (TypeError, ValueError):
        raise ValidationError.single(key, f"expected {kind.__name__}, got {value!r}",
                                     "config") from None


@dataclass
class TracklineConfig:
    """User-facing config from config.yaml."""
    issue_prefix: str = ""
    actor: str = ""
    db: str = ""
    json_output: bool = False
    no_auto_flush: bool = False
    no_auto_import: bool = False
    lock_timeout_ms: int = 5000
    id_min_length: int = 3
    id_max_length: int = 8
    id_max_collision_prob: float = 0.25
    tombstone_retention_days: int = 30
    export_error_policy: str = ExportErrorPolicy.STRICT.value
    orphan_mode: str = OrphanMode.STRICT.value
    history_enabled: bool = True
    history_max_count: int = 100
    history_max_age_days: int = 30
    external_projects: dict[str, str] = field(default_factory=dict)

    @classmethod
    def load_file(cls, data_dir: str) -> TracklineConfig:
        """Load config.yaml from the data directory without env overrides."""
        config_path = os.path.join(data_dir, CONFIG_YAML)
        cfg = cls()
        if os.path.exists(config_path):
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise ValidationError.single(CONFIG_YAML, "expected a mapping", "config")
            for key, value in data.items():
                cfg.set(key, value)
        return cfg

    @classmethod
    def load(cls, data_dir: str) -> TracklineConfig:
        """Load config.yaml, then apply env overrides."""
        cfg = cls.load_file(data_dir)
        if os.environ.get(ENV_ACTOR):
            cfg.actor = os.environ[ENV_ACTOR]
        if os.environ.get(ENV_DB):
            cfg.db = os.environ[ENV_DB]
        if os.environ.get(ENV_JSON):
            cfg.json_output = os.environ[ENV_JSON].lower() in ("1", "true", "yes")
        return cfg

    def set(self, key: str, value: Any) -> None:
        if key == "external-projects":
            if not isinstance(value, dict):
                raise ValidationError.single(key, "expected a mapping of name to path", "config")
            self.external_projects = {str(k): str(v) for k, v in value.items()}
            return
        if key not in _KEYS:
            logger.warning("ignoring unknown config key %r", key)
            return
        attr, kind = _KEYS[key]
        value = _coerce(key, value, kind)
        if key == "export-error-policy":
            value = ExportErrorPolicy.parse(value).value
        elif key == "orphan-mode":
            value = OrphanMode.parse(value).value
        setattr(self, attr, value)

    @staticmethod
    def is_known_key(key: str) -> bool:
        return key in _KEYS or key == "external-projects"

    def get(self, key: str) -> Any:
        if key == "external-projects":
            return dict(self.external_projects)
        if key not in _KEYS:
            raise ValidationError.single("key", f"unknown config key {key!r}", "config")
        return getattr(self, _KEYS[key][0])

    def to_dict(self) -> dict[str, Any]:
        defaults = TracklineConfig()
        data: dict[str, Any] = {}
        for key, (attr, _) in _KEYS.items():
            value = getattr(self, attr)
            if value != getattr(defaults, attr):
                data[key] = value
        if self.external_projects:
            data["external-projects"] = dict(self.external_projects)
        return data

    def save(self, data_dir: str) -> None:
        """Save non-default settings to config.yaml."""
        config_path = os.path.join(data_dir, CONFIG_YAML)
        with open(config_path, "w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False)

    # --- Engine configs ---

    def id_config(self) -> IdConfig:
        return IdConfig(
            prefix=self.issue_prefix or IdConfig.prefix,
            min_length=self.id_min_length,
            max_length=self.id_max_length,
            max_collision_prob=self.id_max_collision_prob,
        )

    def history_config(self) -> HistoryConfig:
        return HistoryConfig(
            enabled=self.history_enabled,
            max_count=self.history_max_count,
            max_age_days=self.history_max_age_days,
        )

    def retention_days(self) -> int | None:
        return self.tombstone_retention_days if self.tombstone_retention_days > 0 else None

    def export_config(self, data_dir: str, **overrides: Any) -> ExportConfig:
        cfg = ExportConfig(
            error_policy=ExportErrorPolicy.parse(self.export_error_policy),
            retention_days=self.retention_days(),
            data_dir=data_dir,
            history=self.history_config(),
        )
        for name, value in overrides.items():
            setattr(cfg, name, value)
        return cfg

    def import_config(self, data_dir: str, actor: str = "import", **overrides: Any) -> ImportConfig:
        cfg = ImportConfig(
            orphan_mode=OrphanMode.parse(self.orphan_mode),
            data_dir=data_dir,
            retention_days=self.retention_days(),
            actor=actor,
        )
        for name, value in overrides.items():
            setattr(cfg, name, value)
        return cfg


@dataclass
class MetadataConfig:
    """Database and JSONL file names from metadata.json."""
    database: str = DEFAULT_DB_NAME
    jsonl_export: str = DEFAULT_JSONL_NAME

    @classmethod
    def load(cls, data_dir: str) -> MetadataConfig:
        meta_path = os.path.join(data_dir, METADATA_JSON)
        cfg = cls()
        if os.path.exists(meta_path):
            with open(meta_path) as f:
                data = json.load(f)
            cfg.database = data.get("database", DEFAULT_DB_NAME)
            cfg.jsonl_export = data.get("jsonl_export", DEFAULT_JSONL_NAME)
        return cfg

    def save(self, data_dir: str) -> None:
        meta_path = os.path.join(data_dir, METADATA_JSON)
        data = {
            "database": self.database,
            "jsonl_export": self.jsonl_export,
        }
        with open(meta_path, "w") as f:
            json.dump(data, f, indent=2)
            f.write("\n")


def find_data_dir(start: str | None = None) -> str | None:
    """Walk up from start directory to find the .trackline/ directory.

    Returns its absolute path, or None if not found.
    """
    if start is None:
        start = os.getcwd()
    current = os.path.abspath(start)
    while True:
        candidate = os.path.join(current, DATA_DIR_NAME)
        if os.path.isdir(candidate):
            return candidate
        parent = os.path.dirname(current)
        if parent == current:
            return None
        current = parent


def get_db_path(data_dir: str, config: TracklineConfig | None = None) -> str:
    """Get the full path to the SQLite database."""
    env_db = os.environ.get(ENV_DB)
    if env_db:
        return env_db
    if config and config.db:
        if os.path.isabs(config.db):
            return config.db
        return os.path.join(data_dir, config.db)
    meta = MetadataConfig.load(data_dir)
    return os.path.join(data_dir, meta.database)


def get_jsonl_path(data_dir: str) -> str:
    """Get the full path to the JSONL export file."""
    meta = MetadataConfig.load(data_dir)
    return os.path.join(data_dir, meta.jsonl_export)


def get_actor(config: TracklineConfig | None = None) -> str:
    """Get the actor name for audit trails."""
    if os.environ.get(ENV_ACTOR):
        return os.environ[ENV_ACTOR]
    if config and config.actor:
        return config.actor
    try:
        result = subprocess.run(
            ["git", "config", "user.email"],
            capture_output=True, text=True, timeout=5
        )
        if result.returncode == 0 and result.stdout.strip():
            return result.stdout.strip()
    except (FileNotFoundError, subprocess.TimeoutExpired):
        pass
    return os.environ.get("USER", "unknown")
