"""
Startup Configuration for the query optimization service
Handles configuration loading and environment overrides
"""

import json
import os
from typing import Dict, Any, Optional
from pathlib import Path
import logging

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from queryopt.core.sql.models import OptimizationLevel

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: Dict[str, Any] = {
    "query_optimization": {
        "worker_count": 6,
        "cache_ttl_hours": 2,
        "max_cache_entries": 500,
        "default_optimization_level": "INTERMEDIATE",
        "default_limit": 1000,
        "max_projection_columns": 5,
        "shutdown_timeout_seconds": 30
    },
    "logging": {
        "level": "INFO",
        "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    },
    "api": {"host": "127.0.0.1", "port": 8000, "title": "SQL Query Optimization Service"},
    "database": {}
}


class StartupConfig:
    """
    Configuration manager for the query optimization service
    """

    def __init__(self, config_path: Optional[str] = None, config: Optional[Dict[str, Any]] = None):
        """
        Initialize the startup configuration

        Args:
            config_path: Path to the config.json file
            config: Configuration dictionary, used instead of reading a file
        """
        if config is not None:
            self.config_path = None
            self.config = config
        else:
            self.config_path = config_path or self._find_config_file()
            self.config = self._load_config()
        self._validate_config()

    def _find_config_file(self) -> str:
        """Find the config.json file in the project"""
        current_dir = Path.cwd()

        config_locations = [
            current_dir / "config.json",
            current_dir.parent / "config.json",
            current_dir.parent.parent / "config.json",
            Path(__file__).parent.parent.parent / "config.json"
        ]

        for config_path in config_locations:
            if config_path.exists():
                return str(config_path)

        raise FileNotFoundError("config.json not found in any expected location")

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from JSON file"""
        try:
            with open(self.config_path, 'r') as f:
                config = json.load(f)
            logger.info(f"Configuration loaded from: {self.config_path}")
            return config
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load configuration: {e}")
            raise

    def _validate_config(self):
        """Validate critical configuration parameters"""
        required_sections = ["query_optimization", "logging", "api"]

        for section in required_sections:
            if section not in self.config:
                logger.warning(f"Missing configuration section: {section}")

    # Optimization Configuration
    @property
    def query_optimization_config(self) -> Dict[str, Any]:
        """Get query optimization configuration"""
        return self.config.get("query_optimization", {})

    @property
    def worker_count(self) -> int:
        """Number of optimization worker threads"""
        env_workers = os.getenv("QUERYOPT_WORKERS")
        if env_workers:
            return int(env_workers)
        return self.query_optimization_config.get("worker_count", 6)

    @property
    def cache_ttl_hours(self) -> float:
        """Lifetime of a cached optimization response"""
        env_ttl = os.getenv("QUERYOPT_CACHE_TTL_HOURS")
        if env_ttl:
            return float(env_ttl)
        return self.query_optimization_config.get("cache_ttl_hours", 2)

    @property
    def max_cache_entries(self) -> int:
        return self.query_optimization_config.get("max_cache_entries", 500)

    @property
    def default_optimization_level(self) -> OptimizationLevel:
        """Level applied when a request does not name one"""
        value = self.query_optimization_config.get("default_optimization_level", "INTERMEDIATE")
        return OptimizationLevel.from_value(value)

    @property
    def default_limit(self) -> int:
        return self.query_optimization_config.get("default_limit", 1000)

    @property
    def max_projection_columns(self) -> int:
        return self.query_optimization_config.get("max_projection_columns", 5)

    @property
    def shutdown_timeout_seconds(self) -> float:
        return self.query_optimization_config.get("shutdown_timeout_seconds", 30)

    def engine_config(self) -> Dict[str, Any]:
        """Configuration dictionary for QueryOptimizationEngine, with overrides applied"""
        return {
            "query_optimization": {
                "worker_count": self.worker_count,
                "cache_ttl_hours": self.cache_ttl_hours,
                "max_cache_entries": self.max_cache_entries,
                "default_limit": self.default_limit,
                "max_projection_columns": self.max_projection_columns,
                "shutdown_timeout_seconds": self.shutdown_timeout_seconds,
                "catalog": self.query_optimization_config.get("catalog", {})
            }
        }

    # Logging Configuration
    @property
    def logging_config(self) -> Dict[str, Any]:
        return self.config.get("logging", {})

    @property
    def log_level(self) -> str:
        return (os.getenv("QUERYOPT_LOG_LEVEL") or self.logging_config.get("level", "INFO")).upper()

    @property
    def log_format(self) -> str:
        return self.logging_config.get("format", DEFAULT_CONFIG["logging"]["format"])

    # API Configuration
    @property
    def api_config(self) -> Dict[str, Any]:
        return self.config.get("api", {})

    @property
    def api_host(self) -> str:
        return self.api_config.get("host", "127.0.0.1")

    @property
    def api_port(self) -> int:
        return self.api_config.get("port", 8000)

    @property
    def api_title(self) -> str:
        return self.api_config.get("title", "SQL Query Optimization Service")

    # Database Configuration
    @property
    def database_url(self) -> Optional[str]:
        """Database whose catalog feeds table statistics, if any"""
        env_url = os.getenv("DATABASE_URL")
        if env_url:
            return env_url
        return self.config.get("database", {}).get("default_url")

    @property
    def masked_database_url(self) -> Optional[str]:
        """database_url with any password hidden, for logging"""
        url = self.database_url
        if not url:
            return None
        try:
            return make_url(url).render_as_string(hide_password=True)
        except ArgumentError:
            return "<unparseable database URL>"

    def get_startup_summary(self) -> str:
        """Get a summary of startup configuration"""
        summary = []
        summary.append("=== SQL Query Optimization Service ===")
        summary.append(f"Workers: {self.worker_count}")
        summary.append(f"Cache: {self.max_cache_entries} entries, {self.cache_ttl_hours}h TTL")
        summary.append(f"Default level: {self.default_optimization_level.name}")
        summary.append(f"Catalog database: {self.masked_database_url or 'not configured'}")
        summary.append(f"API: http://{self.api_host}:{self.api_port}")
        return "\n".join(summary)


def load_startup_config(config_path: Optional[str] = None) -> StartupConfig:
    """Load config.json, falling back to built-in defaults when none is found"""
    try:
        return StartupConfig(config_path)
    except FileNotFoundError:
        logger.warning("config.json not found, using default configuration")
        return StartupConfig(config=DEFAULT_CONFIG)
