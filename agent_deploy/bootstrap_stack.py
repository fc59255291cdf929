import os

from cdktf import (
    LocalBackend,
    TerraformOutput,
    TerraformResourceLifecycle,
    TerraformStack,
)
from cdktf_cdktf_provider_google.artifact_registry_repository import (
    ArtifactRegistryRepository,
    ArtifactRegistryRepositoryDockerConfig,
)
from cdktf_cdktf_provider_google.iam_workload_identity_pool import (
    IamWorkloadIdentityPool,
)
from cdktf_cdktf_provider_google.iam_workload_identity_pool_provider import (
    IamWorkloadIdentityPoolProvider,
    IamWorkloadIdentityPoolProviderOidc,
)
from cdktf_cdktf_provider_google.project_iam_member import ProjectIamMember
from cdktf_cdktf_provider_google.project_service import ProjectService
from cdktf_cdktf_provider_google.provider import GoogleProvider
from cdktf_cdktf_provider_google.service_account import ServiceAccount
from cdktf_cdktf_provider_google.service_account_iam_member import (
    ServiceAccountIamMember,
)
from cdktf_cdktf_provider_google.storage_bucket import (
    StorageBucket,
    StorageBucketVersioning,
)
from constructs import Construct

from agent_deploy import exports
from agent_deploy.settings import BootstrapParameters

GITHUB_OIDC_ISSUER = "https://token.actions.githubusercontent.com"

REQUIRED_SERVICES = [
    "aiplatform.googleapis.com",
    "artifactregistry.googleapis.com",
    "cloudresourcemanager.googleapis.com",
    "iam.googleapis.com",
    "iamcredentials.googleapis.com",
    "run.googleapis.com",
    "storage.googleapis.com",
    "sts.googleapis.com",
]

# Roles the CI deployer needs to manage the main stage
DEPLOYER_ROLES = [
    "roles/aiplatform.admin",
    "roles/artifactregistry.writer",
    "roles/iam.serviceAccountAdmin",
    "roles/resourcemanager.projectIamAdmin",
    "roles/run.admin",
    "roles/storage.objectAdmin",
]


class BootstrapStack(TerraformStack):
    """
    Bootstrap stack that sets up GitHub Actions workload identity federation,
    the image registry and the Terraform state bucket.
    Apply this stack once, then copy its outputs into the CI environment.
    """

    def __init__(
        self, scope: Construct, construct_id: str, params: BootstrapParameters
    ) -> None:
        super().__init__(scope, construct_id)
        params.validate()

        project = params.project_id
        region = params.region
        repository = params.github_repository

        # Bootstrap keeps its own state next to the operator; it creates the
        # bucket every other stage stores state in. Terraform runs inside the
        # synth output, so the path must not be relative to it.
        LocalBackend(self, path=os.path.abspath(params.state_path))

        GoogleProvider(self, "google", project=project, region=region)

        services = [
            ProjectService(
                self,
                f"Service-{service.split('.')[0]}",
                project=project,
                service=service,
                disable_on_destroy=False,
            )
            for service in REQUIRED_SERVICES
        ]

        registry = ArtifactRegistryRepository(
            self,
            "ImageRepository",
            project=project,
            location=region,
            repository_id=params.artifact_repository_id,
            format="DOCKER",
            description=f"Container images for {params.agent_name}",
            docker_config=ArtifactRegistryRepositoryDockerConfig(immutable_tags=True),
            depends_on=services,
        )

        state_bucket = StorageBucket(
            self,
            "StateBucket",
            project=project,
            name=params.state_bucket_name,
            location=region,
            uniform_bucket_level_access=True,
            public_access_prevention="enforced",
            force_destroy=False,
            versioning=StorageBucketVersioning(enabled=True),
            lifecycle=TerraformResourceLifecycle(prevent_destroy=True),
        )

        # Create GitHub OIDC provider
        pool = IamWorkloadIdentityPool(
            self,
            "GitHubPool",
            project=project,
            workload_identity_pool_id="github",
            display_name="GitHub Actions",
            description="Identity pool for GitHub Actions deployments",
            depends_on=services,
        )

        provider = IamWorkloadIdentityPoolProvider(
            self,
            "GitHubProvider",
            project=project,
            workload_identity_pool_id=pool.workload_identity_pool_id,
            workload_identity_pool_provider_id="github-actions",
            display_name="GitHub Actions OIDC",
            attribute_mapping={
                "google.subject": "assertion.sub",
                "attribute.repository": "assertion.repository",
                "attribute.ref": "assertion.ref",
            },
            attribute_condition=f"assertion.repository == '{repository}'",
            oidc=IamWorkloadIdentityPoolProviderOidc(issuer_uri=GITHUB_OIDC_ISSUER),
        )

        deployer = ServiceAccount(
            self,
            "DeployServiceAccount",
            project=project,
            account_id=params.deployer_account_id,
            display_name=f"{params.agent_name} CI deployer",
        )

        for role in DEPLOYER_ROLES:
            ProjectIamMember(
                self,
                f"DeployerRole-{role.split('/')[-1].replace('.', '-')}",
                project=project,
                role=role,
                member=f"serviceAccount:{deployer.email}",
            )

        # Only workflows from the configured repository may impersonate the deployer
        ServiceAccountIamMember(
            self,
            "DeployerWorkloadIdentityUser",
            service_account_id=deployer.name,
            role="roles/iam.workloadIdentityUser",
            member=f"principalSet://iam.googleapis.com/{pool.name}/attribute.repository/{repository}",
        )

        self.outputs = {}
        self._export(exports.GCP_PROJECT_ID, project, "Target project")
        self._export(exports.GCP_REGION, region, "Region for the registry and services")
        self._export(exports.AGENT_NAME, params.agent_name, "Agent and image name")
        self._export(
            exports.ARTIFACT_REGISTRY_URI,
            params.registry_uri,
            "Docker registry URI images are pushed to",
            depends_on=[registry],
        )
        self._export(
            exports.WIF_PROVIDER,
            provider.name,
            "Workload identity provider for google-github-actions/auth",
        )
        self._export(
            exports.DEPLOY_SERVICE_ACCOUNT,
            deployer.email,
            "Service account CI impersonates",
        )
        self._export(
            exports.TF_STATE_BUCKET,
            state_bucket.name,
            "Bucket holding Terraform state for the main stage",
        )

    def _export(self, variable: str, value: str, description: str, depends_on=None) -> None:
        """Declare the output backing one exported variable."""
        output = TerraformOutput(
            self,
            exports.output_name(variable),
            value=value,
            description=description,
            depends_on=depends_on,
        )
        output.override_logical_id(exports.output_name(variable))
        self.outputs[variable] = output
