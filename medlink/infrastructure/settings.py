"""Application Settings and Configuration.

This module provides application-wide settings that combine configuration
from the configuration manager with application-specific defaults.

Security Impact:
    - Settings are loaded from secure configuration sources
    - Sensitive values are never logged
"""

import os
from typing import Optional

from medlink.infrastructure.config_manager import (
    AuthConfig,
    ConfigManager,
    DatabaseConfig,
    FederationConfig,
    HospitalConfig,
)

# Application metadata
APP_NAME = "MedLink Federation Hub"
APP_VERSION = "1.0.0"


class Settings:
    """Application settings loaded from configuration manager and environment.

    Configuration sections are loaded lazily on first access, so importing
    this module never touches the environment or the filesystem.
    """

    def __init__(self, config_manager: Optional[ConfigManager] = None):
        self._config_manager = config_manager

        self.app_name = os.getenv("MEDLINK_APP_NAME", APP_NAME)
        self.log_level = os.getenv("MEDLINK_LOG_LEVEL", "INFO")
        self.json_logs = os.getenv("MEDLINK_JSON_LOGS", "false").lower() == "true"
        self.cors_origins = [
            origin.strip()
            for origin in os.getenv("MEDLINK_CORS_ORIGINS", "http://localhost:5173").split(",")
            if origin.strip()
        ]

    @property
    def config_manager(self) -> ConfigManager:
        if self._config_manager is None:
            config_file = os.getenv("MEDLINK_CONFIG_FILE")
            self._config_manager = (
                ConfigManager.from_file(config_file) if config_file else ConfigManager.from_environment()
            )
        return self._config_manager

    @property
    def central_db_config(self) -> DatabaseConfig:
        return self.config_manager.get_central_database_config()

    @property
    def hospitals(self) -> list[HospitalConfig]:
        return self.config_manager.get_hospitals()

    @property
    def federation(self) -> FederationConfig:
        return self.config_manager.get_federation_config()

    @property
    def auth(self) -> AuthConfig:
        return self.config_manager.get_auth_config()


# Global settings instance
settings = Settings()
