from cdktf import GcsBackend, TerraformOutput, TerraformStack
from cdktf_cdktf_provider_google.cloud_run_v2_service import (
    CloudRunV2Service,
    CloudRunV2ServiceTemplate,
    CloudRunV2ServiceTemplateContainers,
    CloudRunV2ServiceTemplateContainersEnv,
    CloudRunV2ServiceTemplateScaling,
)
from cdktf_cdktf_provider_google.cloud_run_v2_service_iam_member import (
    CloudRunV2ServiceIamMember,
)
from cdktf_cdktf_provider_google.project_iam_member import ProjectIamMember
from cdktf_cdktf_provider_google.provider import GoogleProvider
from cdktf_cdktf_provider_google.service_account import ServiceAccount
from cdktf_cdktf_provider_google.service_account_iam_member import (
    ServiceAccountIamMember,
)
from constructs import Construct

from agent_deploy.errors import PreconditionError
from agent_deploy.session_store import SessionStore
from agent_deploy.settings import DeploymentParameters

RUNTIME_ROLES = [
    "roles/aiplatform.user",
    "roles/cloudtrace.agent",
    "roles/logging.logWriter",
]


def container_environment(params: DeploymentParameters, session_store_name: str) -> dict:
    """Environment variables the agent container starts with."""
    env = {
        "GOOGLE_CLOUD_PROJECT": params.project_id,
        "GOOGLE_CLOUD_LOCATION": params.region,
        "AGENT_ENGINE_ID": session_store_name,
        "LOG_LEVEL": params.log_level,
        "ENABLE_TRACING": "true" if params.enable_tracing else "false",
    }
    for name, value in sorted(params.feature_flags.items()):
        env[f"FEATURE_{name.upper()}"] = value
    # Explicit passthrough values win over derived ones
    env.update(params.extra_env)
    return env


class AgentStack(TerraformStack):
    """
    Main deployment stack: the agent's Cloud Run service, its runtime
    identity and the persistent session store it talks to.

    Every input comes from ``params``; the stack never reads the bootstrap
    stage's state.
    """

    def __init__(
        self, scope: Construct, construct_id: str, params: DeploymentParameters
    ) -> None:
        super().__init__(scope, construct_id)
        params.validate()
        if not params.docker_image:
            raise PreconditionError(
                "No image reference to deploy: set DOCKER_IMAGE or opt in with RECYCLE_PREVIOUS_IMAGE=true"
            )

        project = params.project_id
        region = params.region
        name = params.service_name

        GcsBackend(self, bucket=params.state_bucket, prefix=params.state_prefix)

        GoogleProvider(self, "google", project=project, region=region)

        runtime_account = ServiceAccount(
            self,
            "RuntimeServiceAccount",
            project=project,
            account_id=f"{name}-run"[:30].rstrip("-"),
            display_name=f"{name} runtime",
        )

        for role in RUNTIME_ROLES:
            ProjectIamMember(
                self,
                f"RuntimeRole-{role.split('/')[-1].replace('.', '-')}",
                project=project,
                role=role,
                member=f"serviceAccount:{runtime_account.email}",
            )

        # The deployer must be able to act as the runtime identity
        if params.deploy_service_account:
            ServiceAccountIamMember(
                self,
                "DeployerActAs",
                service_account_id=runtime_account.name,
                role="roles/iam.serviceAccountUser",
                member=f"serviceAccount:{params.deploy_service_account}",
            )

        self.session_store = SessionStore(
            self,
            "SessionStore",
            project=project,
            region=region,
            display_name=f"{name}-sessions",
            description=f"Session and memory store for {name}",
            allow_destroy=params.allow_session_store_destroy,
        )

        env = container_environment(params, self.session_store.resource_name)

        self.service = CloudRunV2Service(
            self,
            "AgentService",
            project=project,
            location=region,
            name=name,
            ingress="INGRESS_TRAFFIC_ALL",
            deletion_protection=False,
            labels={"agent": params.agent_name, "environment": params.environment},
            template=CloudRunV2ServiceTemplate(
                service_account=runtime_account.email,
                scaling=CloudRunV2ServiceTemplateScaling(
                    min_instance_count=params.min_instances,
                    max_instance_count=params.max_instances,
                ),
                containers=[
                    CloudRunV2ServiceTemplateContainers(
                        image=params.docker_image,
                        env=[
                            CloudRunV2ServiceTemplateContainersEnv(name=key, value=value)
                            for key, value in env.items()
                        ],
                    )
                ],
            ),
        )

        if params.allow_unauthenticated:
            CloudRunV2ServiceIamMember(
                self,
                "PublicInvoker",
                project=project,
                location=region,
                name=self.service.name,
                role="roles/run.invoker",
                member="allUsers",
            )

        outputs = {
            "service_url": (self.service.uri, "URL of the agent service"),
            "service_name": (self.service.name, "Cloud Run service name"),
            "docker_image": (params.docker_image, "Image reference this apply deployed"),
            "session_store_name": (
                self.session_store.resource_name,
                "Reasoning Engine resource name",
            ),
        }
        for output_id, (value, description) in outputs.items():
            TerraformOutput(
                self, output_id, value=value, description=description
            ).override_logical_id(output_id)
