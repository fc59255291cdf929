"""
Container image handling.

Builds and publishes the agent image with the docker CLI, guards tag
immutability against Artifact Registry and resolves which image a deploy
should use, including the opt-in fallback to the image already running on
Cloud Run.
"""

import logging
import subprocess
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

from google.api_core import exceptions as google_exceptions
from google.cloud import artifactregistry_v1, run_v2

from agent_deploy.errors import ImmutableTagError, PreconditionError, ProviderError
from agent_deploy.settings import DeploymentParameters

logger = logging.getLogger(__name__)

TAG_LENGTH = 12


def get_run_client():
    """Get Cloud Run services client (lazy initialization for testing)."""
    return run_v2.ServicesClient()


def get_registry_client():
    """Get Artifact Registry client (lazy initialization for testing)."""
    return artifactregistry_v1.ArtifactRegistryClient()


@dataclass(frozen=True)
class ImageReference:
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    @classmethod
    def parse(cls, reference: str) -> "ImageReference":
        """Parse ``host/path/name[:tag][@digest]``."""
        if not reference or reference != reference.strip():
            raise PreconditionError(f"Invalid image reference {reference!r}")
        remainder, _, digest = reference.partition("@")
        slash = remainder.rfind("/")
        colon = remainder.rfind(":")
        tag = None
        if colon > slash:
            remainder, tag = remainder[:colon], remainder[colon + 1:]
        if not remainder or (tag is not None and not tag):
            raise PreconditionError(f"Invalid image reference {reference!r}")
        return cls(repository=remainder, tag=tag, digest=digest or None)

    def __str__(self) -> str:
        reference = self.repository
        if self.tag:
            reference += f":{self.tag}"
        if self.digest:
            reference += f"@{self.digest}"
        return reference

    def tag_resource_name(self) -> str:
        """
        Artifact Registry resource name of this tag.

        Only ``<region>-docker.pkg.dev/<project>/<repository>/<image>`` images
        have one.
        """
        parts = self.repository.split("/")
        if len(parts) < 4 or not parts[0].endswith("-docker.pkg.dev") or not self.tag:
            raise PreconditionError(
                f"{self} is not a tagged Artifact Registry image"
            )
        location = parts[0][: -len("-docker.pkg.dev")]
        project, repository = parts[1], parts[2]
        package = quote("/".join(parts[3:]), safe="")
        return (
            f"projects/{project}/locations/{location}/repositories/{repository}"
            f"/packages/{package}/tags/{self.tag}"
        )


def tag_for_commit(sha: str) -> str:
    if not sha:
        raise PreconditionError("A commit sha is required to tag the image")
    return sha[:TAG_LENGTH]


def image_for_commit(params: DeploymentParameters, sha: str) -> ImageReference:
    return ImageReference(repository=params.image_repository, tag=tag_for_commit(sha))


def tag_exists(image: ImageReference, client=None) -> bool:
    client = client or get_registry_client()
    try:
        client.get_tag(name=image.tag_resource_name())
    except google_exceptions.NotFound:
        return False
    return True


def ensure_unpublished(image: ImageReference, client=None) -> None:
    """Refuse to publish a tag that already names another artifact."""
    if tag_exists(image, client):
        raise ImmutableTagError(
            f"Image tag {image} is already published and tags are immutable"
        )


def _docker(args, runner=subprocess.run) -> str:
    command = ["docker", *args]
    logger.info(f"Running {' '.join(command)}")
    result = runner(command, capture_output=True, text=True, check=False)
    if result.returncode != 0:
        raise ProviderError(command, result.stderr, result.returncode)
    return result.stdout


def build_image(image: ImageReference, context: str = ".", dockerfile: Optional[str] = None, runner=subprocess.run) -> None:
    args = ["build", "--platform", "linux/amd64", "-t", str(image)]
    if dockerfile:
        args += ["-f", dockerfile]
    args.append(context)
    _docker(args, runner)


def push_image(image: ImageReference, runner=subprocess.run) -> ImageReference:
    """Push the image and return it pinned to the digest the registry reported."""
    _docker(["push", str(image)], runner)
    output = _docker(
        ["inspect", "--format", "{{index .RepoDigests 0}}", str(image)], runner
    ).strip()
    _, _, digest = output.partition("@")
    if not digest:
        logger.warning(f"Registry digest for {image} not reported by docker inspect")
        return image
    return ImageReference(repository=image.repository, tag=image.tag, digest=digest)


def service_resource_name(params: DeploymentParameters) -> str:
    return (
        f"projects/{params.project_id}/locations/{params.region}"
        f"/services/{params.service_name}"
    )


def get_service(params: DeploymentParameters, client=None):
    """Return the deployed Cloud Run service, or None if it does not exist yet."""
    client = client or get_run_client()
    try:
        return client.get_service(name=service_resource_name(params))
    except google_exceptions.NotFound:
        return None


def deployed_image(params: DeploymentParameters, client=None) -> Optional[str]:
    """Image reference currently served by the environment's service."""
    service = get_service(params, client)
    if service is None or not service.template.containers:
        return None
    return service.template.containers[0].image or None


def resolve_image(params: DeploymentParameters, client=None) -> str:
    """
    Decide which image reference a deploy uses.

    An explicit ``docker_image`` always wins. Without one, the previously
    deployed reference is reused verbatim, but only when ``recycle_image``
    was opted into.

    Raises:
        PreconditionError: if no image can be determined or the reference
            is malformed
    """
    if params.docker_image:
        ImageReference.parse(params.docker_image)
        return params.docker_image
    if not params.recycle_image:
        raise PreconditionError(
            "DOCKER_IMAGE is not set and RECYCLE_PREVIOUS_IMAGE is not enabled"
        )
    previous = deployed_image(params, client)
    if not previous:
        raise PreconditionError(
            f"RECYCLE_PREVIOUS_IMAGE is enabled but {params.service_name} has no deployed image"
        )
    ImageReference.parse(previous)
    logger.info(f"Reusing previously deployed image {previous}")
    return previous
