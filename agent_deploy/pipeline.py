"""
CI orchestration for the main deployment stage.

Sequence for one run:

    preflight -> image (build) -> synth -> init -> plan -> report
    -> [guard -> publish image -> apply -> promote -> record]

Proposed changes only ever reach the plan step. The bracketed steps run
for ``apply`` (trusted branch or operator request) and ``destroy``
(operator request with the session-store override).
"""

import json
import logging
import os
import subprocess
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Mapping, Optional

from agent_deploy import images
from agent_deploy.apps import DEFAULT_OUTDIR, synth_agent
from agent_deploy.errors import DeployError, PreconditionError
from agent_deploy.session_store import RESOURCE_TYPE as SESSION_STORE_TYPE
from agent_deploy.settings import DeploymentParameters
from agent_deploy.terraform import PlanSummary, Terraform

logger = logging.getLogger(__name__)

PLAN = "plan"
APPLY = "apply"
DESTROY = "destroy"
ACTIONS = (PLAN, APPLY, DESTROY)

PREVIEW_EVENTS = ("pull_request", "pull_request_target", "merge_group")


@dataclass(frozen=True)
class Trigger:
    """What started this run and what it is allowed to do."""

    event: str
    ref: str
    sha: str
    action: str
    environment: str

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Trigger":
        """
        Resolve the trigger from GitHub Actions environment variables.

        - pull requests preview only
        - pushes apply on the trusted branch and preview elsewhere
        - manual runs take ``DEPLOY_ACTION`` and ``DEPLOY_ENVIRONMENT``
        """
        env = os.environ if environ is None else environ
        event = env.get("GITHUB_EVENT_NAME", "")
        ref = env.get("GITHUB_REF", "")
        sha = env.get("GITHUB_SHA", "")
        environment = env.get("DEPLOY_ENVIRONMENT") or "production"
        trusted_ref = f"refs/heads/{env.get('TRUSTED_BRANCH') or 'main'}"

        if not sha:
            raise PreconditionError("GITHUB_SHA is required to trace the deployed artifact")

        if event in PREVIEW_EVENTS:
            action = PLAN
        elif event == "push":
            action = APPLY if ref == trusted_ref else PLAN
        elif event == "workflow_dispatch":
            action = (env.get("DEPLOY_ACTION") or PLAN).lower()
            if action not in ACTIONS:
                raise PreconditionError(
                    f"DEPLOY_ACTION must be one of {', '.join(ACTIONS)}, got {action!r}"
                )
        else:
            raise PreconditionError(f"Unsupported trigger event {event!r}")

        return cls(event=event, ref=ref, sha=sha, action=action, environment=environment)


@dataclass(frozen=True)
class DeploymentRecord:
    """Observable result of an apply. Written out for humans and CI, never read back."""

    environment: str
    service_name: str
    service_url: str
    image: str
    digest: Optional[str]
    revision: str
    commit: str
    deployed_at: str

    def to_json(self) -> str:
        return json.dumps(asdict(self), indent=2, sort_keys=True)

    def write(self, path: Optional[str] = None) -> None:
        if path:
            directory = os.path.dirname(path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(path, "w") as handle:
                handle.write(self.to_json() + "\n")
            logger.info(f"Wrote deployment record to {path}")

        github_output = os.environ.get("GITHUB_OUTPUT")
        if github_output:
            with open(github_output, "a") as handle:
                handle.write(f"service_url={self.service_url}\n")
                handle.write(f"image={self.image}\n")
                handle.write(f"revision={self.revision}\n")


@dataclass
class PipelineResult:
    action: str
    image: str
    summary: PlanSummary
    applied: bool = False
    record: Optional[DeploymentRecord] = None


def report_plan(summary: PlanSummary, environment: str) -> None:
    """Log the plan and add it to the job summary when running in Actions."""
    text = summary.render()
    logger.info(f"Plan for {environment}:\n{text}")
    step_summary = os.environ.get("GITHUB_STEP_SUMMARY")
    if step_summary:
        with open(step_summary, "a") as handle:
            handle.write(f"### Terraform plan for `{environment}`\n\n```\n{text}\n```\n")


def promote(params: DeploymentParameters, image: str, client=None):
    """
    Confirm the service now serves ``image`` from a ready revision.

    Returns:
        The Cloud Run service
    """
    service = images.get_service(params, client)
    if service is None:
        raise DeployError(f"Service {params.service_name} not found after apply")
    served = service.template.containers[0].image if service.template.containers else ""
    if served != image:
        raise DeployError(
            f"Service {params.service_name} serves {served!r}, expected {image!r}"
        )
    if service.latest_ready_revision != service.latest_created_revision:
        raise DeployError(
            f"Latest revision {service.latest_created_revision} of "
            f"{params.service_name} is not ready"
        )
    logger.info(
        f"Promoted {image} on {params.service_name} revision {service.latest_ready_revision}"
    )
    return service


class Pipeline:
    def __init__(
        self,
        params: DeploymentParameters,
        trigger: Trigger,
        outdir: str = DEFAULT_OUTDIR,
        lock_timeout: str = "0s",
        build_context: str = ".",
        dockerfile: Optional[str] = None,
        record_path: Optional[str] = None,
        runner=subprocess.run,
        run_client=None,
        registry_client=None,
    ):
        self.params = params
        self.trigger = trigger
        self.outdir = outdir
        self.lock_timeout = lock_timeout
        self.build_context = build_context
        self.dockerfile = dockerfile
        self.record_path = record_path
        self.runner = runner
        self.run_client = run_client
        self.registry_client = registry_client
        self.digest = None
        self.unpublished = None

    def preflight(self) -> None:
        self.params.validate()
        if self.trigger.action == DESTROY and not self.params.allow_session_store_destroy:
            raise PreconditionError(
                "Destroy requires ALLOW_SESSION_STORE_DESTROY=true; the session store holds durable state"
            )

    def prepare_image(self) -> str:
        """Pick or produce the image this run deploys."""
        if self.params.docker_image or self.params.recycle_image:
            return images.resolve_image(self.params, self.run_client)

        image = images.image_for_commit(self.params, self.trigger.sha)
        if self.trigger.action == DESTROY:
            return images.deployed_image(self.params, self.run_client) or str(image)

        if self.trigger.action == APPLY:
            images.ensure_unpublished(image, self.registry_client)
        images.build_image(image, self.build_context, self.dockerfile, self.runner)
        if self.trigger.action == APPLY:
            # Published only once the plan has been reported and guarded
            self.unpublished = image
        return str(image)

    def publish_image(self) -> None:
        if self.unpublished is None:
            return
        pushed = images.push_image(self.unpublished, self.runner)
        self.digest = pushed.digest
        self.unpublished = None

    def guard(self, summary: PlanSummary) -> None:
        protected = summary.destroys_type(SESSION_STORE_TYPE)
        if protected and not self.params.allow_session_store_destroy:
            raise PreconditionError(
                f"Plan would destroy the session store ({', '.join(protected)}); "
                "set ALLOW_SESSION_STORE_DESTROY=true to allow it"
            )

    def run(self) -> PipelineResult:
        action = self.trigger.action
        logger.info(
            f"Starting {action} for {self.trigger.environment} "
            f"(event={self.trigger.event}, ref={self.trigger.ref}, sha={self.trigger.sha})"
        )
        self.preflight()

        image = self.prepare_image()
        params = self.params.with_image(image)

        terraform = Terraform(synth_agent(params, self.outdir), self.lock_timeout, self.runner)
        terraform.init()
        terraform.plan(destroy=action == DESTROY)
        summary = terraform.show_plan()
        report_plan(summary, params.environment)

        result = PipelineResult(action=action, image=image, summary=summary)
        if action == PLAN:
            logger.info("Preview only; no changes applied")
            return result

        self.guard(summary)
        self.publish_image()
        if summary.has_changes:
            terraform.apply_plan()
        else:
            logger.info("No infrastructure changes to apply")
        result.applied = summary.has_changes

        if action == APPLY:
            outputs = terraform.outputs()
            service = promote(params, image, self.run_client)
            result.record = DeploymentRecord(
                environment=params.environment,
                service_name=params.service_name,
                service_url=outputs.get("service_url", {}).get("value") or service.uri,
                image=image,
                digest=self.digest,
                revision=service.latest_ready_revision,
                commit=self.trigger.sha,
                deployed_at=datetime.now(timezone.utc).isoformat(),
            )
            result.record.write(self.record_path)

        logger.info(f"{action} for {params.environment} completed")
        return result
