class DeployError(Exception):
    """Base class for failures that abort a deployment stage."""

    exit_code = 1


class PreconditionError(DeployError):
    """A required input is missing or invalid. Raised before any cloud call."""

    exit_code = 2


class ImmutableTagError(PreconditionError):
    """Publishing an image would overwrite an existing tag."""


class ProviderError(DeployError):
    """A tool or cloud API rejected the requested change."""

    def __init__(self, command, stderr: str, returncode: int = 1) -> None:
        self.command = list(command)
        self.stderr = stderr
        self.returncode = returncode
        super().__init__(
            f"{' '.join(self.command)} failed with exit code {returncode}:\n{stderr}"
        )


class StateLockError(ProviderError):
    """Another run holds the Terraform state lock."""

    exit_code = 3
