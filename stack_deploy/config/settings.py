# stack_deploy/config/settings.py
from functools import lru_cache
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def check_desired_count(v: int) -> int:
    if v < 0:
        raise ValueError(f"desired_count must not be negative, got {v}")
    return v


def check_positive(v: int) -> int:
    if v <= 0:
        raise ValueError(f"Timeouts and poll intervals must be positive, got {v}")
    return v


class Settings(BaseSettings):
    """
    Process-wide defaults for deployments.

    Configuration precedence:
    1. Environment variables (highest priority)
    2. .env file (if exists)
    3. Default values in this class (lowest priority)

    Settings only supply defaults. A run never reads them directly; the CLI
    folds them together with its arguments into a DeploymentConfig.

    Usage:
        from stack_deploy.config.settings import get_settings
        settings = get_settings()
        region = settings.aws_region
    """

    # Application Settings
    app_name: str = Field(
        default="stack-deploy",
        description="Application name, used in log output"
    )

    # AWS Core Settings
    aws_region: str = Field(
        default="us-east-1",
        alias="AWS_DEFAULT_REGION"
    )

    aws_profile: Optional[str] = Field(
        default=None,
        alias="AWS_PROFILE",
        description="Named profile for SSO or shared credentials"
    )

    aws_endpoint_url: Optional[str] = Field(
        default=None,
        alias="AWS_ENDPOINT_URL",
        description="Override endpoint, e.g. a local AWS emulator"
    )

    aws_account_id: Optional[str] = Field(
        default=None,
        alias="AWS_ACCOUNT_ID",
        description="AWS Account ID (auto-detected through STS if not provided)"
    )

    # Stack Defaults
    default_stack_name: str = Field(
        default="simple-node-stack",
        description="Stack name used when none is given on the command line"
    )

    default_github_repo: str = Field(
        default="your-username/simple-node",
        description="Source repository passed to the pipeline"
    )

    default_github_branch: str = Field(
        default="main",
        description="Source branch passed to the pipeline"
    )

    template_file: str = Field(
        default="cloudformation/main.yaml",
        description="CloudFormation template submitted as-is"
    )

    # Image Build Configuration
    dockerfile: str = Field(
        default="Dockerfile",
        description="Dockerfile used for the initial image"
    )

    build_context: str = Field(
        default=".",
        description="Docker build context"
    )

    ecr_repo_name: str = Field(
        default="hello-world",
        description="ECR repository name (fallback when the stack does not export one)"
    )

    image_tags: Tuple[str, ...] = Field(
        default=("latest", "initial"),
        description="Tags pushed for the initial image: mutable pointer first, marker second"
    )

    # Service Configuration
    desired_count: int = Field(
        default=2,
        description="Number of ECS tasks the service is scaled to"
    )

    # Waits
    stack_timeout_minutes: int = Field(default=60)
    stack_poll_seconds: int = Field(default=15)
    service_timeout_minutes: int = Field(default=10)
    service_poll_seconds: int = Field(default=15)

    # State Tracking
    state_file: str = Field(
        default=".deployment_state.json",
        description="JSON file recording phase progress"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )

    @field_validator('desired_count')
    @classmethod
    def validate_desired_count(cls, v):
        return check_desired_count(v)

    @field_validator('stack_timeout_minutes', 'stack_poll_seconds',
                     'service_timeout_minutes', 'service_poll_seconds')
    @classmethod
    def validate_positive(cls, v):
        return check_positive(v)

    @field_validator('log_level', mode='before')
    @classmethod
    def normalize_log_level(cls, v):
        """Accept lowercase level names from the environment."""
        level = str(v).upper()
        if level not in VALID_LOG_LEVELS:
            raise ValueError(f"Invalid log_level: {v}. Must be one of {list(VALID_LOG_LEVELS)}")
        return level

    @field_validator('image_tags')
    @classmethod
    def validate_image_tags(cls, v):
        if len(v) < 2:
            raise ValueError("image_tags needs a mutable tag and an immutable marker tag")
        return v

    def get_environment_dict(self) -> Dict[str, str]:
        """Get configuration as a dictionary for display.

        Returns:
            Dictionary of environment variable names and values
        """
        return {
            'AWS_DEFAULT_REGION': self.aws_region,
            'AWS_PROFILE': self.aws_profile or '',
            'AWS_ENDPOINT_URL': self.aws_endpoint_url or '',
            'STACK_NAME': self.default_stack_name,
            'TEMPLATE_FILE': self.template_file,
            'DOCKERFILE': self.dockerfile,
            'ECR_REPO_NAME': self.ecr_repo_name,
            'DESIRED_COUNT': str(self.desired_count),
            'STATE_FILE': self.state_file,
            'LOG_LEVEL': self.log_level,
        }

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


class DeploymentConfig(BaseModel):
    """
    Everything one deployment run needs, fixed at start-up.

    Built once from CLI arguments layered over Settings and passed by
    reference to each phase. Frozen: phases cannot change it mid-run.
    """

    model_config = ConfigDict(frozen=True)

    stack_name: str
    github_token: SecretStr = SecretStr("")
    region: str = "us-east-1"
    github_repo: str = "your-username/simple-node"
    github_branch: str = "main"

    template_file: str = "cloudformation/main.yaml"
    dockerfile: str = "Dockerfile"
    build_context: str = "."
    ecr_repo_name: str = "hello-world"
    image_tags: Tuple[str, ...] = ("latest", "initial")
    desired_count: int = 2

    aws_profile: Optional[str] = None
    aws_endpoint_url: Optional[str] = None
    aws_account_id: Optional[str] = None

    stack_timeout_minutes: int = 60
    stack_poll_seconds: int = 15
    service_timeout_minutes: int = 10
    service_poll_seconds: int = 15

    state_file: str = ".deployment_state.json"

    @field_validator('stack_name')
    @classmethod
    def validate_stack_name(cls, v):
        if not v or not v.strip():
            raise ValueError("stack_name must not be empty")
        return v.strip()

    @field_validator('desired_count')
    @classmethod
    def validate_desired_count(cls, v):
        return check_desired_count(v)

    @field_validator('stack_timeout_minutes', 'stack_poll_seconds',
                     'service_timeout_minutes', 'service_poll_seconds')
    @classmethod
    def validate_positive(cls, v):
        return check_positive(v)

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> "DeploymentConfig":
        """Layer explicit values (None means 'use the default') over settings."""
        values = {
            "stack_name": settings.default_stack_name,
            "region": settings.aws_region,
            "github_repo": settings.default_github_repo,
            "github_branch": settings.default_github_branch,
            "template_file": settings.template_file,
            "dockerfile": settings.dockerfile,
            "build_context": settings.build_context,
            "ecr_repo_name": settings.ecr_repo_name,
            "image_tags": settings.image_tags,
            "desired_count": settings.desired_count,
            "aws_profile": settings.aws_profile,
            "aws_endpoint_url": settings.aws_endpoint_url,
            "aws_account_id": settings.aws_account_id,
            "stack_timeout_minutes": settings.stack_timeout_minutes,
            "stack_poll_seconds": settings.stack_poll_seconds,
            "service_timeout_minutes": settings.service_timeout_minutes,
            "service_poll_seconds": settings.service_poll_seconds,
            "state_file": settings.state_file,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    @property
    def cluster_name(self) -> str:
        return f"{self.stack_name}-cluster"

    @property
    def service_name(self) -> str:
        return f"{self.stack_name}-service"

    @property
    def log_group(self) -> str:
        return f"/ecs/{self.stack_name}"

    @property
    def local_image(self) -> str:
        """Local tag the build produces before it is re-tagged for ECR."""
        return f"{self.ecr_repo_name}:{self.image_tags[0]}"

    @property
    def stack_parameters(self) -> Dict[str, str]:
        """Named parameters handed to the template."""
        return {
            "GitHubRepo": self.github_repo,
            "GitHubBranch": self.github_branch,
            "GitHubOAuthToken": self.github_token.get_secret_value(),
            "EnvironmentName": self.stack_name,
        }

    @property
    def has_credential(self) -> bool:
        return bool(self.github_token.get_secret_value().strip())


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    This ensures we only create one Settings instance per process.
    """
    return Settings()
