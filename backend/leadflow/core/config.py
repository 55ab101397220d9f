"""
Configuration Management
Loads settings from YAML files and environment variables
"""
import yaml
import os
from pathlib import Path
from typing import Any, Dict, List, Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment"""

    environment: str = "development"

    # Redis/Queue
    redis_url: str = "redis://localhost:6379"

    # Persistence
    supabase_url: Optional[str] = None
    supabase_service_key: Optional[str] = None

    # Adaptive text generation
    llm_provider: str = "groq"
    groq_api_key: Optional[str] = None
    groq_model: str = "llama-3.3-70b-versatile"

    # Channel delivery
    mailgun_api_key: Optional[str] = None
    mailgun_domain: Optional[str] = None
    mailgun_from: str = "Leadflow <noreply@leadflow.local>"
    vonage_api_key: Optional[str] = None
    vonage_api_secret: Optional[str] = None
    vonage_from_number: Optional[str] = None

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


class ConfigManager:
    """Manages loading and merging configuration from multiple sources"""

    def __init__(self, env: str = "development", config_dir: Optional[Path] = None):
        self.env = env
        self.config_dir = Path(config_dir) if config_dir else Path(__file__).parent.parent.parent / "config"
        self._config: Dict[str, Any] = {}
        self._load_config()

    def _load_config(self) -> None:
        """Load configuration files in order of precedence"""
        default_path = self.config_dir / "default.yaml"
        if default_path.exists():
            self._config = self._load_yaml(default_path)

        # Environment-specific overrides
        env_path = self.config_dir / f"{self.env}.yaml"
        if env_path.exists():
            env_config = self._load_yaml(env_path)
            self._deep_merge(self._config, env_config)

        self._substitute_env_vars(self._config)

    def _load_yaml(self, path: Path) -> Dict:
        """Load YAML file"""
        with open(path, 'r') as f:
            return yaml.safe_load(f) or {}

    def _substitute_env_vars(self, config: Dict) -> None:
        """Replace ${VAR_NAME} with environment variable values"""
        for key, value in config.items():
            if isinstance(value, dict):
                self._substitute_env_vars(value)
            elif isinstance(value, str) and value.startswith("${") and value.endswith("}"):
                env_var = value[2:-1]
                config[key] = os.getenv(env_var, value)

    def _deep_merge(self, base: Dict, override: Dict) -> None:
        """Recursively merge override into base"""
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._deep_merge(base[key], value)
            else:
                base[key] = value

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation
        Example: config.get("queue.max_attempts") -> 3
        """
        keys = key_path.split('.')
        value = self._config

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default

        return value

    def get_breaker_settings(self, dependency: str) -> Dict[str, Any]:
        """
        Get circuit breaker settings for one dependency.

        Dependency names are dotted ("channel.email", "handover.crm").
        Lookup order: resilience.breakers.default, then the dependency
        family ("channel"), then the exact dependency ("channel.email").
        """
        breakers = self.get("resilience.breakers", {}) or {}
        settings: Dict[str, Any] = dict(breakers.get("default", {}) or {})

        family = dependency.split(".", 1)[0]
        family_config = breakers.get(family)
        if isinstance(family_config, dict):
            settings.update({k: v for k, v in family_config.items() if not isinstance(v, dict)})
            if "." in dependency:
                specific = family_config.get(dependency.split(".", 1)[1])
                if isinstance(specific, dict):
                    settings.update(specific)

        return settings

    def get_queue_settings(self) -> Dict[str, Any]:
        """Job queue retry/backoff settings"""
        return {
            "max_attempts": int(self.get("queue.max_attempts", 3)),
            "base_retry_delay_seconds": int(self.get("queue.base_retry_delay_seconds", 30)),
            "max_retry_delay_seconds": int(self.get("queue.max_retry_delay_seconds", 3600)),
            "poll_interval_seconds": float(self.get("queue.poll_interval_seconds", 1.0)),
            "scheduled_check_interval_seconds": int(self.get("queue.scheduled_check_interval_seconds", 15)),
            "visibility_timeout_seconds": int(self.get("queue.visibility_timeout_seconds", 300)),
        }

    def get_coordination_settings(self) -> Dict[str, Any]:
        """Coordination hub scheduling settings"""
        stagger = self.get("coordination.stagger_minutes", {}) or {}
        rotation: List[str] = self.get("coordination.default_rotation", ["email", "sms", "chat"])
        return {
            "min_gap_minutes": int(self.get("coordination.min_gap_minutes", 30)),
            "stagger_minutes": {
                "round_robin": int(stagger.get("round_robin", 60)),
                "priority_based": int(stagger.get("priority_based", 120)),
                "channel_specific": int(stagger.get("channel_specific", 30)),
            },
            "default_rotation": list(rotation),
        }

    def get_scoring_settings(self) -> Dict[str, Any]:
        """Qualification scoring weights"""
        return {
            "points_per_category": int(self.get("scoring.points_per_category", 20)),
            "points_per_goal": int(self.get("scoring.points_per_goal", 10)),
        }
