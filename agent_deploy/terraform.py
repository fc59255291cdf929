"""
Thin wrapper over the terraform CLI for a synthesized cdktf stack directory.

Plans are always saved to a file and applies only ever consume that file,
so what was previewed is exactly what gets applied. The state lock is never
disabled or force-released; contention surfaces as ``StateLockError``.
"""

import json
import logging
import os
import subprocess
from dataclasses import dataclass, field
from typing import Dict, List

from agent_deploy.errors import ProviderError, StateLockError

logger = logging.getLogger(__name__)

PLAN_FILE = "tfplan"
LOCK_ERROR_MARKERS = ("Error acquiring the state lock", "Error locking state")

# terraform plan -detailed-exitcode
EXIT_NO_CHANGES = 0
EXIT_CHANGES = 2


@dataclass
class PlanSummary:
    """Effect of a saved plan, grouped by action."""

    create: List[str] = field(default_factory=list)
    update: List[str] = field(default_factory=list)
    delete: List[str] = field(default_factory=list)
    replace: List[str] = field(default_factory=list)
    resource_types: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_plan_json(cls, plan: dict) -> "PlanSummary":
        summary = cls()
        for change in plan.get("resource_changes", []):
            address = change["address"]
            actions = change.get("change", {}).get("actions", [])
            summary.resource_types[address] = change.get("type", "")
            if "delete" in actions and "create" in actions:
                summary.replace.append(address)
            elif "create" in actions:
                summary.create.append(address)
            elif "update" in actions:
                summary.update.append(address)
            elif "delete" in actions:
                summary.delete.append(address)
        return summary

    @property
    def has_changes(self) -> bool:
        return bool(self.create or self.update or self.delete or self.replace)

    @property
    def destructive(self) -> List[str]:
        """Addresses whose current resource would be destroyed."""
        return self.delete + self.replace

    def destroys_type(self, resource_type: str) -> List[str]:
        return [
            address
            for address in self.destructive
            if self.resource_types.get(address) == resource_type
        ]

    def render(self) -> str:
        lines = [
            f"Plan: {len(self.create)} to add, {len(self.update)} to change, "
            f"{len(self.delete)} to destroy, {len(self.replace)} to replace."
        ]
        for label, addresses in (
            ("create", self.create),
            ("update", self.update),
            ("delete", self.delete),
            ("replace", self.replace),
        ):
            lines.extend(f"  {label}: {address}" for address in addresses)
        return "\n".join(lines)


class Terraform:
    """Runs terraform commands inside one synthesized stack directory."""

    def __init__(self, working_dir: str, lock_timeout: str = "0s", runner=subprocess.run):
        self.working_dir = working_dir
        self.lock_timeout = lock_timeout
        self.runner = runner

    @property
    def plan_path(self) -> str:
        return os.path.join(self.working_dir, PLAN_FILE)

    def _run(self, *args: str, ok_codes=(0,)) -> subprocess.CompletedProcess:
        command = ["terraform", *args]
        logger.info(f"Running {' '.join(command)} in {self.working_dir}")
        result = self.runner(
            command,
            cwd=self.working_dir,
            capture_output=True,
            text=True,
            check=False,
        )
        if result.returncode not in ok_codes:
            stderr = result.stderr or result.stdout
            if any(marker in stderr for marker in LOCK_ERROR_MARKERS):
                logger.error(f"State lock is held by another run: {stderr}")
                raise StateLockError(command, stderr, result.returncode)
            logger.error(f"terraform {args[0]} failed: {stderr}")
            raise ProviderError(command, stderr, result.returncode)
        return result

    def init(self) -> None:
        self._run("init", "-input=false", "-no-color")

    def plan(self, destroy: bool = False) -> bool:
        """
        Save a plan to ``tfplan``.

        Returns:
            True if the plan contains changes
        """
        args = [
            "plan",
            "-input=false",
            "-no-color",
            f"-lock-timeout={self.lock_timeout}",
            "-detailed-exitcode",
            f"-out={PLAN_FILE}",
        ]
        if destroy:
            args.append("-destroy")
        result = self._run(*args, ok_codes=(EXIT_NO_CHANGES, EXIT_CHANGES))
        return result.returncode == EXIT_CHANGES

    def show_plan(self) -> PlanSummary:
        result = self._run("show", "-json", "-no-color", PLAN_FILE)
        return PlanSummary.from_plan_json(json.loads(result.stdout))

    def apply_plan(self) -> None:
        self._run(
            "apply",
            "-input=false",
            "-no-color",
            f"-lock-timeout={self.lock_timeout}",
            PLAN_FILE,
        )

    def outputs(self) -> Dict[str, dict]:
        result = self._run("output", "-json", "-no-color")
        return json.loads(result.stdout or "{}")
