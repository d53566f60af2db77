"""Configuration manager for persisted stagevec CLI settings."""

import json
import os
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, Dict
import logging

from stagevec.core.config import IngestConfig
from stagevec.core.errors import ConfigurationError

logger = logging.getLogger(__name__)


class StagevecConfigManager:
    """Persist configuration overrides on top of environment defaults."""

    def __init__(self, config_dir: str = "./config"):
        self.config_dir = Path(config_dir)
        self.config_file = self.config_dir / "stagevec.json"
        self.overrides = self._load_overrides()

    def _load_overrides(self) -> Dict[str, Any]:
        """Load persisted overrides from file."""
        if not self.config_file.exists():
            logger.info("No config file found, using environment defaults")
            return {}

        try:
            with open(self.config_file, "r", encoding="utf-8") as f:
                overrides = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in {self.config_file}: {e}") from e

        logger.info("Configuration loaded from file")
        return overrides

    def _save_overrides(self) -> None:
        self.config_dir.mkdir(parents=True, exist_ok=True)
        with open(self.config_file, "w", encoding="utf-8") as f:
            json.dump(self.overrides, f, indent=2)
        logger.info("Configuration saved to file")

    def load(self) -> IngestConfig:
        """Environment defaults with persisted overrides applied."""
        return IngestConfig.from_env().merged(self.overrides)

    def set(self, key: str, value: Any) -> IngestConfig:
        """Set and persist a configuration value; rejects unknown keys and bad types."""
        config = self.load().merged({key: value})
        self.overrides[key] = asdict(config)[key]
        self._save_overrides()
        logger.info(f"Set {key} = {value}")
        return config

    def reset(self, key: str) -> bool:
        """Drop a persisted override; returns False if none was set."""
        if key not in {f.name for f in fields(IngestConfig)}:
            raise ConfigurationError(f"Unknown configuration key: {key}")
        if key not in self.overrides:
            return False
        del self.overrides[key]
        self._save_overrides()
        logger.info(f"Reset {key} to default")
        return True

    def validate(self) -> Dict[str, Any]:
        """Validate the effective configuration."""
        validation = {
            "valid": True,
            "issues": [],
            "warnings": []
        }

        try:
            config = self.load().validate()
        except ConfigurationError as e:
            validation["issues"].append(str(e))
            validation["valid"] = False
            return validation

        if not Path(config.stage_dir).is_dir():
            validation["warnings"].append(f"Stage directory not found: {config.stage_dir}")

        if config.signing_key == IngestConfig.signing_key:
            validation["warnings"].append("STAGEVEC_SIGNING_KEY is the development default")

        return validation


def get_config_manager() -> StagevecConfigManager:
    """Get the configuration manager for the current config directory."""
    config_dir = os.getenv("STAGEVEC_CONFIG_DIR", "./config")
    return StagevecConfigManager(config_dir)
