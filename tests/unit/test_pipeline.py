import json
from dataclasses import replace
from unittest.mock import MagicMock, patch

import pytest
from google.api_core import exceptions as google_exceptions

from agent_deploy.errors import DeployError, ImmutableTagError, PreconditionError
from agent_deploy.pipeline import APPLY, DESTROY, PLAN, Pipeline, Trigger

REPO = "us-central1-docker.pkg.dev/demo-project/agent-images/agent"
SHA = "abc123def4567890"
TAGGED = f"{REPO}:abc123def456"
REVISION = "agent-staging-00002-xyz"


def completed(returncode=0, stdout="", stderr=""):
    return MagicMock(returncode=returncode, stdout=stdout, stderr=stderr)


class FakeTools:
    """Stands in for subprocess.run across terraform and docker."""

    def __init__(self, changes=None, plan_exit=2):
        self.calls = []
        self.plan = {"resource_changes": changes or []}
        self.plan_exit = plan_exit
        self.outputs = {"service_url": {"value": "https://agent-staging.run.app"}}

    def __call__(self, command, **kwargs):
        self.calls.append(command)
        if command[:2] == ["terraform", "plan"]:
            return completed(self.plan_exit)
        if command[:2] == ["terraform", "show"]:
            return completed(stdout=json.dumps(self.plan))
        if command[:2] == ["terraform", "output"]:
            return completed(stdout=json.dumps(self.outputs))
        if command[:2] == ["docker", "inspect"]:
            return completed(stdout=f"{REPO}@sha256:feed\n")
        return completed()

    def ran(self, *prefix):
        return [call for call in self.calls if call[: len(prefix)] == list(prefix)]


def trigger(action, event="push"):
    return Trigger(event=event, ref="refs/heads/main", sha=SHA, action=action, environment="staging")


def running_service(image):
    service = MagicMock()
    service.template.containers = [MagicMock(image=image)]
    service.latest_ready_revision = REVISION
    service.latest_created_revision = REVISION
    service.uri = "https://agent-staging.run.app"
    return service


@pytest.fixture(autouse=True)
def no_github_files(monkeypatch):
    monkeypatch.delenv("GITHUB_OUTPUT", raising=False)
    monkeypatch.delenv("GITHUB_STEP_SUMMARY", raising=False)


@pytest.fixture
def mock_synth(tmp_path):
    with patch("agent_deploy.pipeline.synth_agent", return_value=str(tmp_path)) as synth:
        yield synth


@pytest.fixture
def registry_client():
    client = MagicMock()
    client.get_tag.side_effect = google_exceptions.NotFound("no tag")
    return client


@pytest.fixture
def build_params(deploy_params):
    """Parameters for a pipeline that builds its own image."""
    return replace(deploy_params, docker_image=None)


class TestTrigger:
    """Test cases for resolving what a CI run may do."""

    def env(self, **values):
        base = {"GITHUB_SHA": SHA, "GITHUB_REF": "refs/heads/main"}
        base.update(values)
        return base

    def test_pull_request_previews(self):
        result = Trigger.from_env(self.env(GITHUB_EVENT_NAME="pull_request"))
        assert result.action == PLAN

    def test_push_to_trusted_branch_applies(self):
        result = Trigger.from_env(self.env(GITHUB_EVENT_NAME="push"))
        assert result.action == APPLY
        assert result.environment == "production"

    def test_push_elsewhere_previews(self):
        result = Trigger.from_env(
            self.env(GITHUB_EVENT_NAME="push", GITHUB_REF="refs/heads/feature")
        )
        assert result.action == PLAN

    def test_custom_trusted_branch(self):
        result = Trigger.from_env(
            self.env(
                GITHUB_EVENT_NAME="push",
                GITHUB_REF="refs/heads/release",
                TRUSTED_BRANCH="release",
            )
        )
        assert result.action == APPLY

    def test_manual_dispatch(self):
        result = Trigger.from_env(
            self.env(
                GITHUB_EVENT_NAME="workflow_dispatch",
                DEPLOY_ACTION="Destroy",
                DEPLOY_ENVIRONMENT="staging",
            )
        )
        assert result.action == DESTROY
        assert result.environment == "staging"

    def test_manual_dispatch_invalid_action(self):
        with pytest.raises(PreconditionError):
            Trigger.from_env(
                self.env(GITHUB_EVENT_NAME="workflow_dispatch", DEPLOY_ACTION="yolo")
            )

    def test_unsupported_event(self):
        with pytest.raises(PreconditionError):
            Trigger.from_env(self.env(GITHUB_EVENT_NAME="schedule"))

    def test_sha_required(self):
        with pytest.raises(PreconditionError):
            Trigger.from_env({"GITHUB_EVENT_NAME": "push", "GITHUB_REF": "refs/heads/main"})


class TestPipeline:
    """Test cases for the build, plan and apply sequence."""

    def test_plan_has_no_irreversible_effects(self, build_params, mock_synth, registry_client):
        """Test a preview builds and plans but never pushes or applies."""
        tools = FakeTools(changes=[{"address": "svc", "type": "x", "change": {"actions": ["create"]}}])
        run_client = MagicMock()

        result = Pipeline(
            build_params, trigger(PLAN, "pull_request"),
            runner=tools, run_client=run_client, registry_client=registry_client,
        ).run()

        assert result.action == PLAN
        assert result.applied is False
        assert result.record is None
        assert result.summary.create == ["svc"]
        assert tools.ran("docker", "build")
        assert not tools.ran("docker", "push")
        assert not tools.ran("terraform", "apply")
        registry_client.get_tag.assert_not_called()
        run_client.get_service.assert_not_called()

    def test_apply_sequence(self, build_params, mock_synth, registry_client, tmp_path):
        """Test the image is published only after the plan, right before apply."""
        tools = FakeTools(changes=[{"address": "svc", "type": "x", "change": {"actions": ["update"]}}])
        run_client = MagicMock()
        run_client.get_service.return_value = running_service(TAGGED)
        record_path = tmp_path / "deployments" / "staging.json"

        result = Pipeline(
            build_params, trigger(APPLY),
            record_path=str(record_path),
            runner=tools, run_client=run_client, registry_client=registry_client,
        ).run()

        order = [call[:2] for call in tools.calls]
        assert order == [
            ["docker", "build"],
            ["terraform", "init"],
            ["terraform", "plan"],
            ["terraform", "show"],
            ["docker", "push"],
            ["docker", "inspect"],
            ["terraform", "apply"],
            ["terraform", "output"],
        ]
        assert mock_synth.call_args[0][0].docker_image == TAGGED
        assert result.applied is True
        assert result.record.image == TAGGED
        assert result.record.digest == "sha256:feed"
        assert result.record.revision == REVISION
        assert result.record.commit == SHA
        assert json.loads(record_path.read_text())["service_url"] == (
            "https://agent-staging.run.app"
        )

    def test_apply_refuses_existing_tag(self, build_params, mock_synth):
        registry_client = MagicMock()
        tools = FakeTools()

        with pytest.raises(ImmutableTagError):
            Pipeline(
                build_params, trigger(APPLY),
                runner=tools, registry_client=registry_client,
            ).run()

        assert tools.calls == []
        mock_synth.assert_not_called()

    def test_apply_refuses_to_destroy_session_store(self, deploy_params, mock_synth):
        """Test a plan replacing the session store stops before apply."""
        tools = FakeTools(
            changes=[
                {
                    "address": "google_vertex_ai_reasoning_engine.store",
                    "type": "google_vertex_ai_reasoning_engine",
                    "change": {"actions": ["delete", "create"]},
                }
            ]
        )

        with pytest.raises(PreconditionError) as excinfo:
            Pipeline(deploy_params, trigger(APPLY), runner=tools).run()

        assert "google_vertex_ai_reasoning_engine.store" in str(excinfo.value)
        assert not tools.ran("terraform", "apply")

    def test_refused_apply_leaves_tag_unpublished(self, build_params, mock_synth, registry_client):
        """Test a guarded apply publishes nothing, so the override retry can reuse the tag."""
        replace_store = [
            {
                "address": "google_vertex_ai_reasoning_engine.store",
                "type": "google_vertex_ai_reasoning_engine",
                "change": {"actions": ["delete", "create"]},
            }
        ]
        tools = FakeTools(changes=replace_store)

        with pytest.raises(PreconditionError):
            Pipeline(
                build_params, trigger(APPLY),
                runner=tools, registry_client=registry_client,
            ).run()

        assert tools.ran("docker", "build")
        assert not tools.ran("docker", "push")

        run_client = MagicMock()
        run_client.get_service.return_value = running_service(TAGGED)
        retry_tools = FakeTools(changes=replace_store)
        params = replace(build_params, allow_session_store_destroy=True)

        result = Pipeline(
            params, trigger(APPLY),
            runner=retry_tools, run_client=run_client, registry_client=registry_client,
        ).run()

        assert result.applied is True
        assert result.record.image == TAGGED
        assert retry_tools.ran("docker", "push")
        assert registry_client.get_tag.call_count == 2

    def test_destroy_requires_override(self, deploy_params, mock_synth):
        tools = FakeTools()

        with pytest.raises(PreconditionError):
            Pipeline(deploy_params, trigger(DESTROY, "workflow_dispatch"), runner=tools).run()

        assert tools.calls == []

    def test_destroy_with_override(self, deploy_params, mock_synth):
        tools = FakeTools(
            changes=[
                {
                    "address": "google_vertex_ai_reasoning_engine.store",
                    "type": "google_vertex_ai_reasoning_engine",
                    "change": {"actions": ["delete"]},
                }
            ]
        )
        params = replace(deploy_params, allow_session_store_destroy=True)

        result = Pipeline(params, trigger(DESTROY, "workflow_dispatch"), runner=tools).run()

        assert "-destroy" in tools.ran("terraform", "plan")[0]
        assert tools.ran("terraform", "apply")
        assert result.applied is True
        assert result.record is None
        assert not tools.ran("docker")

    def test_recycled_image_deployed_unchanged(self, deploy_params, mock_synth):
        """Test an unset image reuses the deployed ...:abc123 exactly."""
        previous = f"{REPO}:abc123"
        run_client = MagicMock()
        run_client.get_service.return_value = running_service(previous)
        params = replace(deploy_params, docker_image=None, recycle_image=True)
        tools = FakeTools()

        result = Pipeline(params, trigger(APPLY), runner=tools, run_client=run_client).run()

        assert result.image == previous
        assert mock_synth.call_args[0][0].docker_image == previous
        assert not tools.ran("docker")

    def test_no_changes_skips_apply(self, deploy_params, mock_synth):
        run_client = MagicMock()
        run_client.get_service.return_value = running_service(deploy_params.docker_image)
        tools = FakeTools(plan_exit=0)

        result = Pipeline(deploy_params, trigger(APPLY), runner=tools, run_client=run_client).run()

        assert result.applied is False
        assert not tools.ran("terraform", "apply")
        assert result.record.image == deploy_params.docker_image

    def test_promote_detects_wrong_image(self, deploy_params, mock_synth):
        run_client = MagicMock()
        run_client.get_service.return_value = running_service(f"{REPO}:other")

        with pytest.raises(DeployError):
            Pipeline(
                deploy_params, trigger(APPLY), runner=FakeTools(), run_client=run_client
            ).run()

    def test_plan_reported_to_step_summary(self, deploy_params, mock_synth, tmp_path, monkeypatch):
        summary_file = tmp_path / "summary.md"
        monkeypatch.setenv("GITHUB_STEP_SUMMARY", str(summary_file))

        Pipeline(deploy_params, trigger(PLAN, "pull_request"), runner=FakeTools()).run()

        content = summary_file.read_text()
        assert "Terraform plan for `staging`" in content
        assert "0 to add" in content
