#!/usr/bin/env python3
"""
Main deployment app: the agent service and its session store.

Reads the exported variable set and DOCKER_IMAGE from the environment.
With RECYCLE_PREVIOUS_IMAGE=true and no DOCKER_IMAGE, the image currently
running on Cloud Run is reused.

Usage:
    cdktf diff
    cdktf deploy
"""
import os

from cdktf import App

from agent_deploy.agent_stack import AgentStack
from agent_deploy.apps import AGENT_STACK
from agent_deploy.images import resolve_image
from agent_deploy.settings import DeploymentParameters

params = DeploymentParameters.from_env().validate()

app = App(outdir=os.environ.get("CDKTF_OUTDIR", "cdktf.out"))

AgentStack(app, AGENT_STACK, params.with_image(resolve_image(params)))

app.synth()
