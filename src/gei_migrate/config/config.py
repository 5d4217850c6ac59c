"""Configuration management for GEI Migration Tool."""

from typing import Optional, Dict, Any
from pathlib import Path
from urllib.parse import urlparse
import os

from pydantic import BaseModel, ConfigDict, Field, field_validator
import yaml
from dotenv import load_dotenv

GITHUB_COM = 'github.com'


class HostConfig(BaseModel):
    """Configuration for one side (source or target) of the migration."""

    org: str = Field(..., description='Organization login')
    token: str = Field(..., description='Personal access token')
    enterprise: str = Field(default='', description='Enterprise slug')
    api_url: Optional[str] = Field(
        default=None,
        description='REST API base URL for GHES (e.g. https://ghes.local/api/v3)',
    )
    timeout: int = Field(default=30, description='Request timeout in seconds')
    rate_limit_per_second: float = Field(
        default=10.0, description='API requests per second limit'
    )

    @field_validator('api_url')
    @classmethod
    def validate_api_url(cls, v):
        """Validate API URL format."""
        if v is None or not v.strip():
            return None
        if not v.startswith(('http://', 'https://')):
            raise ValueError('URL must start with http:// or https://')
        return v.rstrip('/')

    @field_validator('token')
    @classmethod
    def validate_token(cls, v):
        """Validate that a token is present."""
        if not v:
            raise ValueError('token must be provided')
        return v

    @field_validator('rate_limit_per_second')
    @classmethod
    def validate_rate_limit(cls, v):
        """Validate rate limit is positive."""
        if v <= 0:
            raise ValueError('Rate limit must be positive')
        return v

    @property
    def host_label(self) -> str:
        """Hostname used by the gh CLI (github.com unless GHES)."""
        if not self.api_url:
            return GITHUB_COM
        return urlparse(self.api_url).hostname or GITHUB_COM

    @property
    def rest_base(self) -> str:
        """REST API base URL."""
        return self.api_url or 'https://api.github.com'

    @property
    def graphql_url(self) -> str:
        """GraphQL endpoint URL."""
        if not self.api_url:
            return 'https://api.github.com/graphql'
        parsed = urlparse(self.api_url)
        return f'{parsed.scheme}://{parsed.hostname}/api/graphql'

    @property
    def is_github_com(self) -> bool:
        return self.host_label == GITHUB_COM


class WorkerConfig(BaseModel):
    """Cadences, batch sizes and limits of the background workers."""

    max_concurrent_migrations: int = Field(
        default=10, description='Maximum queued or migrating repositories'
    )
    lost_grace_seconds: float = Field(
        default=60.0,
        description='Seconds an unresolvable migration is tolerated before lost',
    )

    status_interval_seconds: float = Field(
        default=3600.0, description='Reconciliation sweep interval'
    )
    status_batch_size: int = Field(
        default=5, description='Aged repositories checked per sweep'
    )
    status_min_age_minutes: float = Field(
        default=5.0, description='Minimum age of last check before re-checking'
    )

    migration_busy_delay_seconds: float = Field(
        default=5.0, description='Queueing delay after something was queued'
    )
    migration_idle_delay_seconds: float = Field(
        default=30.0, description='Queueing delay when nothing was eligible'
    )
    migration_capacity_delay_seconds: float = Field(
        default=10.0, description='Queueing delay at the concurrency ceiling'
    )

    progress_interval_seconds: float = Field(
        default=5.0, description='Progress polling interval'
    )
    progress_concurrency: int = Field(
        default=10, description='Concurrent importer status queries'
    )

    error_delay_seconds: float = Field(
        default=10.0, description='Delay before retrying after a failed tick'
    )

    @field_validator(
        'max_concurrent_migrations', 'status_batch_size', 'progress_concurrency'
    )
    @classmethod
    def validate_positive_counts(cls, v):
        """Validate counts are positive."""
        if v <= 0:
            raise ValueError('Worker limits must be positive')
        return v

    @field_validator(
        'lost_grace_seconds',
        'status_interval_seconds',
        'migration_busy_delay_seconds',
        'migration_idle_delay_seconds',
        'migration_capacity_delay_seconds',
        'progress_interval_seconds',
        'error_delay_seconds',
    )
    @classmethod
    def validate_non_negative_delays(cls, v):
        """Validate durations are not negative."""
        if v < 0:
            raise ValueError('Worker durations must not be negative')
        return v


class StateConfig(BaseModel):
    """State persistence configuration."""

    path: str = Field(
        default='data/migrations-state.json', description='State document path'
    )
    save_delay_seconds: float = Field(
        default=10.0, description='Window used to coalesce bursts of saves'
    )
    logs_dir: str = Field(default='logs', description='Importer log cache directory')

    @field_validator('save_delay_seconds')
    @classmethod
    def validate_save_delay(cls, v):
        """Validate the coalescing window."""
        if v < 0:
            raise ValueError('save_delay_seconds must not be negative')
        return v


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default='INFO', description='Log level')
    file: Optional[str] = Field(default=None, description='Log file path')
    format: Optional[str] = Field(default=None, description='Log format')

    @field_validator('level')
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f'Log level must be one of: {valid_levels}')
        return v.upper()


class Config(BaseModel):
    """Main configuration class for GEI Migration Tool."""

    model_config = ConfigDict(extra='forbid')

    source: HostConfig = Field(..., description='Source organization')
    target: HostConfig = Field(..., description='Target organization')
    workers: WorkerConfig = Field(
        default_factory=WorkerConfig, description='Worker settings'
    )
    state: StateConfig = Field(
        default_factory=StateConfig, description='State persistence settings'
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description='Logging settings'
    )

    @classmethod
    def from_file(cls, config_path: str) -> 'Config':
        """Load configuration from YAML file."""
        config_file = Path(config_path)

        if not config_file.exists():
            raise FileNotFoundError(f'Configuration file not found: {config_path}')

        with open(config_file, 'r', encoding='utf-8') as f:
            config_data = yaml.safe_load(f)

        return cls(**config_data)

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables."""
        # Load .env file if it exists
        load_dotenv()

        config_data = {
            'source': {
                'org': os.getenv('GH_SOURCE_ORG'),
                'token': os.getenv('GH_SOURCE_TOKEN'),
                'enterprise': os.getenv('GH_SOURCE_ENT'),
                'api_url': os.getenv('GH_SOURCE_URL'),
            },
            'target': {
                'org': os.getenv('GH_TARGET_ORG'),
                'token': os.getenv('GH_TARGET_TOKEN'),
                'enterprise': os.getenv('GH_TARGET_ENT'),
                'api_url': os.getenv('GH_TARGET_URL'),
            },
            'workers': {
                'max_concurrent_migrations': int(
                    os.getenv('GEI_MAX_CONCURRENT_MIGRATIONS', 10)
                ),
                'progress_interval_seconds': float(
                    os.getenv('GEI_POLL_SECONDS', 5)
                ),
            },
            'state': {
                'path': os.getenv('GEI_STATE_FILE'),
                'logs_dir': os.getenv('GEI_LOGS_DIR'),
            },
            'logging': {
                'level': os.getenv('LOG_LEVEL', 'INFO'),
                'file': os.getenv('LOG_FILE'),
            },
        }

        # Remove None values
        config_data = cls._remove_none_values(config_data)

        return cls(**config_data)

    @staticmethod
    def _remove_none_values(data: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively remove None values from dictionary."""
        if isinstance(data, dict):
            return {
                k: Config._remove_none_values(v)
                for k, v in data.items()
                if v is not None
            }
        return data

    def to_file(self, config_path: str) -> None:
        """Save configuration to YAML file."""
        config_file = Path(config_path)
        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, 'w', encoding='utf-8') as f:
            yaml.dump(
                self.model_dump(),
                f,
                default_flow_style=False,
                indent=2,
                sort_keys=False,
            )

    @staticmethod
    def create_template(output_path: str) -> None:
        """Create a configuration template file."""
        template_config = {
            'source': {
                'org': 'source-org',
                'token': 'your-source-personal-access-token',
                'enterprise': 'source-enterprise',
                'api_url': None,
            },
            'target': {
                'org': 'target-org',
                'token': 'your-target-personal-access-token',
                'enterprise': 'target-enterprise',
                'api_url': None,
            },
            'workers': WorkerConfig().model_dump(),
            'state': StateConfig().model_dump(),
            'logging': {
                'level': 'INFO',
                'file': 'migration.log',
            },
        }

        config_file = Path(output_path)
        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, 'w', encoding='utf-8') as f:
            yaml.dump(
                template_config, f, default_flow_style=False, indent=2, sort_keys=False
            )
