#!/usr/bin/env python3
"""
Bootstrap app for the workload identity federation, image registry and
state bucket the deployment pipeline relies on.
Apply this once, then publish its outputs to the CI environment.

Usage:
    cdktf deploy --app "python3 bootstrap_app.py"

Or through the orchestration CLI:
    GCP_PROJECT_ID=demo-project GCP_REGION=us-central1 AGENT_NAME=agent \
    GITHUB_REPOSITORY_NAME=your-org/your-repo agent-deploy bootstrap apply
"""
import os

from cdktf import App

from agent_deploy.apps import BOOTSTRAP_STACK
from agent_deploy.bootstrap_stack import BootstrapStack
from agent_deploy.settings import BootstrapParameters

app = App(outdir=os.environ.get("CDKTF_OUTDIR", "cdktf.out"))

BootstrapStack(app, BOOTSTRAP_STACK, BootstrapParameters.from_env())

app.synth()
