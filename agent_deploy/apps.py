import logging
import os

from cdktf import App

from agent_deploy.agent_stack import AgentStack
from agent_deploy.bootstrap_stack import BootstrapStack
from agent_deploy.settings import BootstrapParameters, DeploymentParameters

logger = logging.getLogger(__name__)

BOOTSTRAP_STACK = "agent-bootstrap"
AGENT_STACK = "agent"
DEFAULT_OUTDIR = "cdktf.out"


def stack_dir(outdir: str, stack_name: str) -> str:
    return os.path.join(outdir, "stacks", stack_name)


def synth_bootstrap(params: BootstrapParameters, outdir: str = DEFAULT_OUTDIR) -> str:
    """Synthesize the bootstrap stack and return its Terraform directory."""
    app = App(outdir=outdir)
    BootstrapStack(app, BOOTSTRAP_STACK, params)
    app.synth()
    logger.info(f"Synthesized {BOOTSTRAP_STACK} into {stack_dir(outdir, BOOTSTRAP_STACK)}")
    return stack_dir(outdir, BOOTSTRAP_STACK)


def synth_agent(params: DeploymentParameters, outdir: str = DEFAULT_OUTDIR) -> str:
    """Synthesize the main stack for ``params.environment``."""
    app = App(outdir=outdir)
    AgentStack(app, AGENT_STACK, params)
    app.synth()
    logger.info(
        f"Synthesized {AGENT_STACK} for {params.environment} with image {params.docker_image}"
    )
    return stack_dir(outdir, AGENT_STACK)
