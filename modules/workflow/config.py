"""Configuration for the workflow automaton.

Loads from YAML config file with environment variable overrides.
Pattern: CONFIG__{SECTION}__{KEY} overrides nested YAML keys.
Example: CONFIG__RUN__MAX_CONCURRENCY=4

WORKFLOW_DATABASE_URL overrides database.url directly.
"""

import os
from enum import Enum
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

DEFAULT_DB_URL = "sqlite+aiosqlite:///data/kanzlei_pipeline.db"


class CandidateFilter(str, Enum):
    """Which projects a run fetches."""

    OPEN = "open"  # not "erledigt", bucket governed by a rule
    DUE_DATE_SET = "due_date_set"  # legacy: any project with a due date


class DatabaseConfig(BaseModel):
    url: str = DEFAULT_DB_URL
    echo: bool = False


class RunConfig(BaseModel):
    candidate_filter: CandidateFilter = CandidateFilter.OPEN
    project_timeout_seconds: float = Field(default=30.0, gt=0)
    max_concurrency: int = Field(default=1, ge=1, le=32)
    dry_run: bool = False


class WorkflowConfig(BaseModel):
    database: DatabaseConfig = DatabaseConfig()
    run: RunConfig = RunConfig()


def _apply_env_overrides(config_dict: dict, prefix: str = "CONFIG") -> dict:
    """Apply environment variable overrides to config dict.

    Pattern: CONFIG__SECTION__KEY=value maps to config[section][key] = value
    """
    for key, value in os.environ.items():
        if not key.startswith(f"{prefix}__"):
            continue
        parts = key[len(prefix) + 2 :].lower().split("__")
        target = config_dict
        for part in parts[:-1]:
            target = target.setdefault(part, {})
        # Type coercion for common cases
        if value.lower() in ("true", "false"):
            value = value.lower() == "true"
        elif value.isdigit():
            value = int(value)
        target[parts[-1]] = value
    return config_dict


def load_config(config_path: Optional[str] = None) -> WorkflowConfig:
    """Load configuration from YAML file with env overrides.

    Priority: env vars > YAML file > defaults
    """
    config_dict = {}

    # 1. Load YAML if exists
    if config_path is None:
        config_path = os.getenv("CONFIG_PATH", "config/workflow.yml")
    path = Path(config_path)
    if path.exists():
        with open(path) as f:
            config_dict = yaml.safe_load(f) or {}

    # 2. Apply env overrides
    config_dict = _apply_env_overrides(config_dict)

    # 3. Database URL from dedicated env var (common pattern)
    db_url = os.getenv("WORKFLOW_DATABASE_URL")
    if db_url:
        config_dict.setdefault("database", {})["url"] = db_url

    return WorkflowConfig(**config_dict)


_config: Optional[WorkflowConfig] = None


def get_config() -> WorkflowConfig:
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config(config_path: Optional[str] = None) -> WorkflowConfig:
    global _config
    _config = load_config(config_path)
    return _config
