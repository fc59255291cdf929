"""
Deployment parameters read from the environment.

Bootstrap and main stage inputs are plain strings in environment variables.
``from_env`` collects them into dataclasses and ``validate`` reports every
missing required value at once, before any cloud call is made.
"""

import os
from dataclasses import dataclass, field, replace
from typing import Dict, Mapping, Optional

from agent_deploy import exports
from agent_deploy.errors import PreconditionError

TRUTHY = ("1", "true", "yes", "on")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
AGENT_ENV_PREFIX = "AGENT_ENV_"
# Google service account ids are 6 to 30 characters
SERVICE_ACCOUNT_ID_MAX = 30


def parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in TRUTHY


def parse_int(name: str, value: Optional[str], default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise PreconditionError(f"{name} must be an integer, got {value!r}") from None


def parse_feature_flags(value: Optional[str]) -> Dict[str, str]:
    """Parse ``name=value,name2=value2``. A bare name means ``true``."""
    flags = {}
    for item in (value or "").split(","):
        item = item.strip()
        if not item:
            continue
        name, sep, flag_value = item.partition("=")
        flags[name.strip()] = flag_value.strip() if sep else "true"
    return flags


def _missing(values: Mapping[str, Optional[str]]) -> list:
    return [name for name, value in values.items() if not value]


@dataclass(frozen=True)
class BootstrapParameters:
    """Inputs to the one-time bootstrap stage."""

    project_id: Optional[str]
    region: Optional[str]
    agent_name: Optional[str]
    github_repository: Optional[str]
    trusted_branch: str = "main"
    repository_id: Optional[str] = None
    state_bucket: Optional[str] = None
    state_path: str = "terraform.bootstrap.tfstate"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "BootstrapParameters":
        env = os.environ if environ is None else environ
        return cls(
            project_id=env.get(exports.GCP_PROJECT_ID),
            region=env.get(exports.GCP_REGION),
            agent_name=env.get(exports.AGENT_NAME),
            github_repository=env.get("GITHUB_REPOSITORY_NAME"),
            trusted_branch=env.get("TRUSTED_BRANCH", "main"),
            repository_id=env.get("ARTIFACT_REPOSITORY_ID") or None,
            state_bucket=env.get(exports.TF_STATE_BUCKET) or None,
            state_path=env.get("BOOTSTRAP_STATE_PATH", "terraform.bootstrap.tfstate"),
        )

    def validate(self) -> "BootstrapParameters":
        missing = _missing(
            {
                exports.GCP_PROJECT_ID: self.project_id,
                exports.GCP_REGION: self.region,
                exports.AGENT_NAME: self.agent_name,
                "GITHUB_REPOSITORY_NAME": self.github_repository,
            }
        )
        if missing:
            raise PreconditionError(
                f"Missing required bootstrap parameters: {', '.join(missing)}"
            )
        if "/" not in self.github_repository:
            raise PreconditionError(
                f"GITHUB_REPOSITORY_NAME must be owner/repo, got {self.github_repository!r}"
            )
        if len(self.deployer_account_id) > SERVICE_ACCOUNT_ID_MAX:
            raise PreconditionError(
                f"AGENT_NAME {self.agent_name!r} is too long; the deployer service account "
                f"id {self.deployer_account_id!r} exceeds {SERVICE_ACCOUNT_ID_MAX} characters"
            )
        return self

    @property
    def artifact_repository_id(self) -> str:
        return self.repository_id or f"{self.agent_name}-images"

    @property
    def deployer_account_id(self) -> str:
        return f"{self.agent_name}-deployer"

    @property
    def state_bucket_name(self) -> str:
        return self.state_bucket or f"{self.project_id}-tfstate"

    @property
    def registry_uri(self) -> str:
        return exports.artifact_registry_uri(
            self.region, self.project_id, self.artifact_repository_id
        )


@dataclass(frozen=True)
class DeploymentParameters:
    """Named inputs of the main deployment stage."""

    project_id: Optional[str]
    region: Optional[str]
    agent_name: Optional[str]
    registry_uri: Optional[str]
    state_bucket: Optional[str]
    environment: str = "production"
    docker_image: Optional[str] = None
    recycle_image: bool = False
    log_level: str = "INFO"
    enable_tracing: bool = False
    feature_flags: Dict[str, str] = field(default_factory=dict)
    extra_env: Dict[str, str] = field(default_factory=dict)
    allow_unauthenticated: bool = False
    min_instances: int = 0
    max_instances: int = 3
    deploy_service_account: Optional[str] = None
    workload_identity_provider: Optional[str] = None
    allow_session_store_destroy: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "DeploymentParameters":
        env = os.environ if environ is None else environ
        return cls(
            project_id=env.get(exports.GCP_PROJECT_ID),
            region=env.get(exports.GCP_REGION),
            agent_name=env.get(exports.AGENT_NAME),
            registry_uri=env.get(exports.ARTIFACT_REGISTRY_URI),
            state_bucket=env.get(exports.TF_STATE_BUCKET),
            environment=env.get("DEPLOY_ENVIRONMENT") or "production",
            docker_image=env.get("DOCKER_IMAGE") or None,
            recycle_image=parse_bool(env.get("RECYCLE_PREVIOUS_IMAGE")),
            log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
            enable_tracing=parse_bool(env.get("ENABLE_TRACING")),
            feature_flags=parse_feature_flags(env.get("FEATURE_FLAGS")),
            extra_env={
                name[len(AGENT_ENV_PREFIX):]: value
                for name, value in env.items()
                if name.startswith(AGENT_ENV_PREFIX) and len(name) > len(AGENT_ENV_PREFIX)
            },
            allow_unauthenticated=parse_bool(env.get("ALLOW_UNAUTHENTICATED")),
            min_instances=parse_int("MIN_INSTANCES", env.get("MIN_INSTANCES"), 0),
            max_instances=parse_int("MAX_INSTANCES", env.get("MAX_INSTANCES"), 3),
            deploy_service_account=env.get(exports.DEPLOY_SERVICE_ACCOUNT) or None,
            workload_identity_provider=env.get(exports.WIF_PROVIDER) or None,
            allow_session_store_destroy=parse_bool(env.get("ALLOW_SESSION_STORE_DESTROY")),
        )

    def validate(self) -> "DeploymentParameters":
        missing = _missing(
            {
                exports.GCP_PROJECT_ID: self.project_id,
                exports.GCP_REGION: self.region,
                exports.AGENT_NAME: self.agent_name,
                exports.ARTIFACT_REGISTRY_URI: self.registry_uri,
                exports.TF_STATE_BUCKET: self.state_bucket,
            }
        )
        if missing:
            raise PreconditionError(
                f"Missing required deployment parameters: {', '.join(missing)}"
            )
        if self.log_level not in LOG_LEVELS:
            raise PreconditionError(
                f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, got {self.log_level!r}"
            )
        if self.min_instances < 0 or self.max_instances < max(self.min_instances, 1):
            raise PreconditionError(
                f"Invalid scaling bounds: min={self.min_instances}, max={self.max_instances}"
            )
        return self

    def with_image(self, image: str) -> "DeploymentParameters":
        return replace(self, docker_image=image)

    @property
    def service_name(self) -> str:
        return f"{self.agent_name}-{self.environment}"

    @property
    def state_prefix(self) -> str:
        return f"{self.agent_name}/{self.environment}"

    @property
    def image_repository(self) -> str:
        """Image path without tag, e.g. ``us-central1-docker.pkg.dev/p/repo/agent``."""
        return f"{self.registry_uri.rstrip('/')}/{self.agent_name}"
