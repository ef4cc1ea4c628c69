"""Configuration loading and validation."""

import os
import json
import hashlib
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigError


DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class BrowserConfig(BaseModel):
    """Browser session settings."""
    headless: bool = Field(default=True)
    viewport_width: int = Field(default=1280, ge=320)
    viewport_height: int = Field(default=720, ge=240)
    user_agent: str = Field(default=DEFAULT_USER_AGENT)
    default_timeout_ms: int = Field(default=30000, ge=100)
    launch_args: list[str] = Field(
        default=[
            "--disable-dev-shm-usage",  # Overcome limited /dev/shm in Docker
            "--no-sandbox",
            "--disable-setuid-sandbox",
            "--disable-extensions",
            "--no-first-run",
            "--mute-audio",
        ]
    )
    action_retries: int = Field(default=2, ge=0, le=10)
    navigation_retries: int = Field(default=2, ge=0, le=10)
    navigation_backoff_seconds: float = Field(default=1.0, ge=0)
    acquire_retries: int = Field(default=1, ge=0, le=5)
    default_scheme: str = Field(default="https")


class ApiConfig(BaseModel):
    """Outbound HTTP settings for API_CALL nodes."""
    timeout_seconds: float = Field(default=30.0, gt=0)
    default_headers: dict[str, str] = Field(
        default_factory=lambda: {"Content-Type": "application/json"}
    )


class InterpreterConfig(BaseModel):
    """Graph traversal settings."""
    # "fail" raises CycleDetectedError, "complete" ends the run as completed
    on_revisit: Literal["fail", "complete"] = Field(default="fail")
    default_delay_ms: int = Field(default=1000, ge=0)
    # Wall-clock limit for one SCRIPT node
    script_timeout_seconds: float = Field(default=30.0, gt=0)


class OrchestrationConfig(BaseModel):
    """Orchestration substrate connection settings."""
    backend: Literal["local", "temporal"] = Field(default="local")
    temporal_address: str = Field(default="localhost:7233")
    namespace: str = Field(default="default")
    task_queue: str = Field(default="rpa-task-queue")
    workflow_id_prefix: str = Field(default="rpa-workflow-")
    activity_timeout_seconds: int = Field(default=600, ge=1)
    activity_max_attempts: int = Field(default=3, ge=1, le=10)
    state_db_path: str = Field(default="./data/state.db")


class LoggingConfig(BaseModel):
    """Structured logging settings."""
    level: str = Field(default="INFO")
    format: Literal["console", "json"] = Field(default="console")


class EngineConfig(BaseModel):
    """Main engine configuration."""
    name: str = Field(default="rpa-engine")
    version: str = Field(default="0.1.0")

    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    engine: InterpreterConfig = Field(default_factory=InterpreterConfig)
    orchestration: OrchestrationConfig = Field(default_factory=OrchestrationConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    health_port: int = Field(default=8080, ge=0, le=65535)

    def config_hash(self) -> str:
        """Generate hash of config for change detection."""
        return hashlib.sha256(
            self.model_dump_json().encode()
        ).hexdigest()[:16]

    def apply_env_overrides(self) -> "EngineConfig":
        """Return a copy with environment variable overrides applied."""
        data = self.model_dump()

        if os.getenv("LOG_FORMAT"):
            data["logging"]["format"] = os.getenv("LOG_FORMAT")
        if os.getenv("LOG_LEVEL"):
            data["logging"]["level"] = os.getenv("LOG_LEVEL")
        if os.getenv("TEMPORAL_ADDRESS"):
            data["orchestration"]["temporal_address"] = os.getenv("TEMPORAL_ADDRESS")
        if os.getenv("ORCHESTRATION_BACKEND"):
            data["orchestration"]["backend"] = os.getenv("ORCHESTRATION_BACKEND")
        if os.getenv("BROWSER_HEADLESS"):
            data["browser"]["headless"] = os.getenv("BROWSER_HEADLESS", "true").lower() == "true"
        if os.getenv("HEALTH_PORT"):
            data["health_port"] = int(os.getenv("HEALTH_PORT"))

        try:
            return EngineConfig(**data)
        except ValidationError as e:
            raise ConfigError(f"Invalid environment override: {e}")


class ConfigLoader:
    """Loads and validates YAML/JSON configurations."""

    def __init__(self, config_dir: str = "./config"):
        self.config_dir = Path(config_dir)
        self._hashes: dict[str, str] = {}

    def load_engine_config(self, path: Optional[str] = None) -> EngineConfig:
        """Load main engine configuration."""
        if path is None:
            path = self.config_dir / "engine.yaml"
        else:
            path = Path(path)

        data = self._load_file(path)
        try:
            return EngineConfig(**data)
        except ValidationError as e:
            raise ConfigError(f"Invalid engine config: {e}", config_path=str(path))

    def load_workflows(self, directory: Optional[str] = None) -> list:
        """Load all workflow definitions from directory."""
        if directory is None:
            directory = self.config_dir / "workflows"
        else:
            directory = Path(directory)

        workflows = []
        if not directory.exists():
            return workflows

        for file_path in sorted(directory.glob("**/*.yaml")):
            workflows.extend(self.load_workflow_file(file_path))
        for file_path in sorted(directory.glob("**/*.json")):
            workflows.extend(self.load_workflow_file(file_path))

        return workflows

    def load_workflow_file(self, path: Path) -> list:
        """Load workflows from a single file (one workflow or a `workflows` list)."""
        # Imported here so config stays importable without the engine package
        from ..engine.models import Workflow

        path = Path(path)
        data = self._load_file(path)
        workflow_list = data.get("workflows", [data] if "id" in data else [])

        workflows = []
        for wf_data in workflow_list:
            try:
                workflows.append(Workflow.model_validate(wf_data))
            except ValidationError as e:
                raise ConfigError(
                    f"Invalid workflow definition {wf_data.get('id', '?')}: {e}",
                    config_path=str(path),
                )

        return workflows

    def has_config_changed(self, path: str) -> bool:
        """Check if a config file has changed since last load."""
        path = Path(path)
        current_hash = self._compute_file_hash(path)
        previous_hash = self._hashes.get(str(path))
        return current_hash != previous_hash

    def _load_file(self, path: Path) -> dict[str, Any]:
        """Load YAML or JSON file."""
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}", config_path=str(path))

        try:
            content = path.read_text()
            self._hashes[str(path)] = hashlib.sha256(content.encode()).hexdigest()[:16]

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

    def _compute_file_hash(self, path: Path) -> str:
        """Compute hash of file contents."""
        if not path.exists():
            return ""
        content = path.read_text()
        return hashlib.sha256(content.encode()).hexdigest()[:16]
