"""
Exported variable set.

The bootstrap stage publishes these values as Terraform outputs; CI copies
them into its environment and the main stage reads them back by name. This
module is the single place the names are defined.
"""

import json
import logging
import os
import subprocess
from dataclasses import asdict, dataclass
from typing import Dict, Optional

from agent_deploy.errors import PreconditionError, ProviderError

logger = logging.getLogger(__name__)

GCP_PROJECT_ID = "GCP_PROJECT_ID"
GCP_REGION = "GCP_REGION"
AGENT_NAME = "AGENT_NAME"
ARTIFACT_REGISTRY_URI = "ARTIFACT_REGISTRY_URI"
WIF_PROVIDER = "WIF_PROVIDER"
DEPLOY_SERVICE_ACCOUNT = "DEPLOY_SERVICE_ACCOUNT"
TF_STATE_BUCKET = "TF_STATE_BUCKET"

EXPORTED_VARIABLES = (
    GCP_PROJECT_ID,
    GCP_REGION,
    AGENT_NAME,
    ARTIFACT_REGISTRY_URI,
    WIF_PROVIDER,
    DEPLOY_SERVICE_ACCOUNT,
    TF_STATE_BUCKET,
)

FORMATS = ("dotenv", "github-env", "json")


def output_name(variable: str) -> str:
    """Terraform output name for an exported variable."""
    return variable.lower()


def artifact_registry_uri(region: str, project_id: str, repository_id: str) -> str:
    return f"{region}-docker.pkg.dev/{project_id}/{repository_id}"


@dataclass(frozen=True)
class ExportedVariables:
    gcp_project_id: str
    gcp_region: str
    agent_name: str
    artifact_registry_uri: str
    wif_provider: str
    deploy_service_account: str
    tf_state_bucket: str

    @classmethod
    def from_outputs(cls, outputs: Dict[str, dict]) -> "ExportedVariables":
        """
        Build the variable set from ``terraform output -json``.

        Args:
            outputs: Mapping of output name to ``{"value": ..., ...}``

        Raises:
            PreconditionError: if any exported output is absent
        """
        missing = [
            name for name in EXPORTED_VARIABLES if output_name(name) not in outputs
        ]
        if missing:
            raise PreconditionError(
                f"Bootstrap outputs are missing exported variables: {', '.join(missing)}"
            )
        return cls(
            **{
                output_name(name): str(outputs[output_name(name)]["value"])
                for name in EXPORTED_VARIABLES
            }
        )

    def as_env(self) -> Dict[str, str]:
        values = asdict(self)
        return {name: values[output_name(name)] for name in EXPORTED_VARIABLES}

    def render(self, fmt: str = "dotenv") -> str:
        env = self.as_env()
        if fmt == "json":
            return json.dumps(env, indent=2, sort_keys=True) + "\n"
        if fmt in ("dotenv", "github-env"):
            return "".join(f"{name}={value}\n" for name, value in env.items())
        raise PreconditionError(
            f"Unknown export format {fmt!r}, expected one of {', '.join(FORMATS)}"
        )

    def write(self, fmt: str = "dotenv", path: Optional[str] = None) -> str:
        """
        Write the rendered variables and return the text.

        ``github-env`` appends to ``$GITHUB_ENV`` unless a path is given, so
        later steps of the same job see the values.
        """
        text = self.render(fmt)
        if fmt == "github-env" and path is None:
            path = os.environ.get("GITHUB_ENV")
            if not path:
                raise PreconditionError("GITHUB_ENV is not set; pass --output instead")
        if path:
            mode = "a" if fmt == "github-env" else "w"
            with open(path, mode) as handle:
                handle.write(text)
            logger.info(f"Wrote {len(EXPORTED_VARIABLES)} exported variables to {path}")
        return text

    def publish_github_variables(self, repository: str, runner=subprocess.run) -> None:
        """Store every exported variable as a GitHub Actions repository variable."""
        for name, value in self.as_env().items():
            command = ["gh", "variable", "set", name, "--repo", repository, "--body", value]
            result = runner(command, capture_output=True, text=True, check=False)
            if result.returncode != 0:
                raise ProviderError(command[:6], result.stderr, result.returncode)
            logger.info(f"Set repository variable {name} on {repository}")
