import pytest

from agent_deploy.settings import BootstrapParameters, DeploymentParameters

REGISTRY = "us-central1-docker.pkg.dev/demo-project/agent-images"


@pytest.fixture
def bootstrap_params():
    return BootstrapParameters(
        project_id="demo-project",
        region="us-central1",
        agent_name="agent",
        github_repository="demo-org/agent",
    )


@pytest.fixture
def deploy_params():
    return DeploymentParameters(
        project_id="demo-project",
        region="us-central1",
        agent_name="agent",
        registry_uri=REGISTRY,
        state_bucket="demo-project-tfstate",
        environment="staging",
        docker_image=f"{REGISTRY}/agent:abc123",
        deploy_service_account="agent-deployer@demo-project.iam.gserviceaccount.com",
    )
