"""Project configuration loaded from project.yml.

Environment overrides (``environments.<env>.database`` / ``.pipeline``) are
layered over the top-level sections before validation, so every value ends up
checked by the same pydantic models.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from livepipe.engine.utils import validate_identifier

_ENV_REF = re.compile(r"\$\{(\w+)\}")


class DatabaseConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    path: str = "warehouse.duckdb"  # relative to the project directory


class PipelineConfig(BaseModel):
    """Where definitions live and how runs are executed."""
    model_config = ConfigDict(extra="ignore")

    definitions: str = "pipelines"  # directory of .sql / .yml definitions
    output_schema: str = "live"  # schema holding dataset output tables
    max_workers: int = 4  # concurrent materializations per layer

    @field_validator("output_schema")
    @classmethod
    def _check_schema(cls, value: str) -> str:
        return validate_identifier(value, "output_schema")

    @field_validator("max_workers")
    @classmethod
    def _check_workers(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_workers must be at least 1")
        return value


class EnvironmentConfig(BaseModel):
    """Per-environment overrides, merged key by key over the base sections."""
    model_config = ConfigDict(extra="ignore")

    database: dict[str, Any] = Field(default_factory=dict)
    pipeline: dict[str, Any] = Field(default_factory=dict)


class ProjectConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = "default"
    description: str = ""
    log_level: str = "INFO"
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    environments: dict[str, EnvironmentConfig] = Field(default_factory=dict)
    active_environment: str | None = None
    project_dir: Path = Field(default_factory=Path.cwd)

    @property
    def db_path(self) -> Path:
        path = Path(self.database.path)
        if path.is_absolute():
            return path
        return self.project_dir / path

    @property
    def definitions_dir(self) -> Path:
        return self.project_dir / self.pipeline.definitions


def expand_env_vars(value: Any) -> Any:
    """Replace ${VAR} with the environment value; unknown variables stay as written."""
    if isinstance(value, dict):
        return {key: expand_env_vars(item) for key, item in value.items()}
    if isinstance(value, list):
        return [expand_env_vars(item) for item in value]
    if not isinstance(value, str):
        return value
    return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), m.group(0)), value)


def load_env(project_dir: Path) -> dict[str, str]:
    """Export KEY=value pairs from the project's .env file. Returns what was set."""
    env_file = project_dir / ".env"
    if not env_file.is_file():
        return {}

    exported: dict[str, str] = {}
    for raw_line in env_file.read_text().splitlines():
        line = raw_line.strip()
        if line.startswith("#") or "=" not in line:
            continue
        key, _, value = (part.strip() for part in line.partition("="))
        if len(value) >= 2 and value[0] in "\"'" and value[-1] == value[0]:
            value = value[1:-1]
        os.environ[key] = value
        exported[key] = value
    return exported


def _pick_environment(requested: str | None, available: dict[str, EnvironmentConfig]) -> str | None:
    if requested is None:
        return "dev" if "dev" in available else None
    return requested if requested in available else None


def load_project(project_dir: Path | None = None, env: str | None = None) -> ProjectConfig:
    """Read project.yml (defaults when absent) and apply an environment.

    Args:
        project_dir: Project directory; the current directory by default.
        env: Environment to activate. When omitted and the project defines a
            ``dev`` environment, ``dev`` is used.

    Raises:
        pydantic.ValidationError: a setting has an invalid value.
    """
    root = Path(project_dir) if project_dir else Path.cwd()
    load_env(root)

    config_file = root / "project.yml"
    if not config_file.exists():
        return ProjectConfig(project_dir=root)
    data: dict[str, Any] = expand_env_vars(yaml.safe_load(config_file.read_text()) or {})

    environments = {
        name: EnvironmentConfig.model_validate(section or {})
        for name, section in (data.get("environments") or {}).items()
    }
    active = _pick_environment(env, environments)

    database = dict(data.get("database") or {})
    pipeline = dict(data.get("pipeline") or {})
    if active:
        database.update(environments[active].database)
        pipeline.update(environments[active].pipeline)

    return ProjectConfig(
        name=str(data.get("name") or root.name),
        description=str(data.get("description") or ""),
        log_level=str(data.get("log_level") or "INFO"),
        database=DatabaseConfig.model_validate(database),
        pipeline=PipelineConfig.model_validate(pipeline),
        environments=environments,
        active_environment=active,
        project_dir=root,
    )
