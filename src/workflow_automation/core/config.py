"""Configuration loading and validation."""

import json
import hashlib
from pathlib import Path
from typing import Any, Optional

import structlog
import yaml
from pydantic import BaseModel, Field

from .errors import ConfigError, ValidationError
from .models import AutomationRule, WorkflowTemplate


logger = structlog.get_logger()


class RetryConfig(BaseModel):
    """Retry policy for failed executions (linear backoff)."""
    max_retries: int = Field(default=3, ge=1, le=10)
    base_delay_seconds: float = Field(default=1.0, ge=0.0)


class SweepConfig(BaseModel):
    """Date/time sweep settings."""
    statuses: list[str] = Field(default_factory=lambda: ["intake", "active"])
    # 0 leaves sweeping to an external cron/poller
    interval_seconds: int = Field(default=0, ge=0)


class ConditionConfig(BaseModel):
    """Condition evaluation tuning."""
    time_tolerance_seconds: int = Field(default=60, ge=1, le=3600)


class DedupConfig(BaseModel):
    """Duplicate-execution protection."""
    enabled: bool = Field(default=True)


class ServerConfig(BaseModel):
    """HTTP hook/health server."""
    enabled: bool = Field(default=True)
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080, ge=1, le=65535)


class WorkflowApiConfig(BaseModel):
    """Remote "apply workflow template" endpoint. Unset = local in-memory applier."""
    base_url: Optional[str] = Field(default=None)
    api_key: Optional[str] = Field(default=None)
    timeout_seconds: float = Field(default=30.0, ge=1.0)


class AutomationConfig(BaseModel):
    """Main automation engine configuration."""
    name: str = Field(default="workflow-automation")
    version: str = Field(default="0.1.0")

    retry: RetryConfig = Field(default_factory=RetryConfig)
    sweep: SweepConfig = Field(default_factory=SweepConfig)
    conditions: ConditionConfig = Field(default_factory=ConditionConfig)
    dedup: DedupConfig = Field(default_factory=DedupConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    workflow_api: WorkflowApiConfig = Field(default_factory=WorkflowApiConfig)

    # Paths
    rules_directory: str = Field(default="./config/rules")
    templates_directory: str = Field(default="./config/templates")
    entities_file: Optional[str] = Field(default=None)
    data_directory: str = Field(default="./data")

    def config_hash(self) -> str:
        """Generate hash of config for change detection."""
        return hashlib.sha256(
            self.model_dump_json().encode()
        ).hexdigest()[:16]


class ConfigLoader:
    """Loads and validates YAML/JSON configurations, rule and template files."""

    def __init__(self, config_dir: str = "./config"):
        self.config_dir = Path(config_dir)

    def load_config(self, path: Optional[str] = None) -> AutomationConfig:
        """Load main engine configuration."""
        if path is None:
            path = self.config_dir / "automation.yaml"
        else:
            path = Path(path)

        data = self._load_file(path)
        try:
            return AutomationConfig(**data)
        except Exception as e:
            raise ConfigError(f"Invalid automation config: {e}", config_path=str(path))

    def load_rules(self, directory: Optional[str] = None) -> list[AutomationRule]:
        """
        Load rule definitions from a directory of YAML/JSON files.

        Rows that fail validation are quarantined (logged and skipped).
        Rules are returned in created_at order, undated rules last.
        """
        directory = Path(directory) if directory else self.config_dir / "rules"
        rules: list[AutomationRule] = []

        for file_path in self._iter_files(directory):
            data = self._load_file(file_path)
            for row in data.get("rules", [data] if "id" in data else []):
                try:
                    rules.append(AutomationRule.from_record(row))
                except ValidationError as e:
                    logger.warning(
                        "rule_quarantined",
                        path=str(file_path),
                        rule_id=e.context.get("rule_id"),
                        error=e.message,
                    )

        rules.sort(key=lambda r: (r.created_at is None, r.created_at.timestamp() if r.created_at else 0))
        return rules

    def load_templates(self, directory: Optional[str] = None) -> list[WorkflowTemplate]:
        """Load workflow templates from a directory of YAML/JSON files."""
        directory = Path(directory) if directory else self.config_dir / "templates"
        templates: list[WorkflowTemplate] = []

        for file_path in self._iter_files(directory):
            data = self._load_file(file_path)
            for row in data.get("templates", [data] if "id" in data else []):
                try:
                    templates.append(WorkflowTemplate(**row))
                except Exception as e:
                    raise ConfigError(f"Invalid workflow template: {e}", config_path=str(file_path))

        return templates

    def load_entities(self, path: str) -> dict[str, list[dict[str, Any]]]:
        """
        Load transactions, tasks and documents from a seed file.

        Expected top-level keys: transactions, tasks, documents.
        """
        data = self._load_file(Path(path))
        entities: dict[str, list[dict[str, Any]]] = {}
        for kind in ("transactions", "tasks", "documents"):
            rows = data.get(kind, [])
            if not isinstance(rows, list):
                raise ConfigError(f"'{kind}' must be a list", config_path=path)
            entities[kind] = rows
        return entities

    def _iter_files(self, directory: Path) -> list[Path]:
        if not directory.exists():
            return []
        files = [
            *directory.glob("**/*.yaml"),
            *directory.glob("**/*.yml"),
            *directory.glob("**/*.json"),
        ]
        return sorted(files)

    def _load_file(self, path: Path) -> dict[str, Any]:
        """Load YAML or JSON file."""
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}", config_path=str(path))

        try:
            content = path.read_text()

            if path.suffix in (".yaml", ".yml"):
                return yaml.safe_load(content) or {}
            elif path.suffix == ".json":
                return json.loads(content)
            else:
                raise ConfigError(
                    f"Unsupported config format: {path.suffix}",
                    config_path=str(path)
                )
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML: {e}", config_path=str(path))
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON: {e}", config_path=str(path))
