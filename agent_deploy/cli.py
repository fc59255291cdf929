"""
agent-deploy command line.

Usage:
    agent-deploy bootstrap plan|apply
    agent-deploy export-vars --format github-env
    agent-deploy synth bootstrap|agent
    agent-deploy resolve-image
    agent-deploy deploy plan|apply|destroy
    agent-deploy ci

All parameters come from environment variables (see README); flags only
override where to write things and how long to wait for the state lock.
"""

import argparse
import logging
import os
import sys
from dataclasses import replace

from google.api_core import exceptions as google_exceptions

from agent_deploy import images
from agent_deploy.apps import DEFAULT_OUTDIR, synth_agent, synth_bootstrap
from agent_deploy.errors import DeployError
from agent_deploy.exports import FORMATS, ExportedVariables
from agent_deploy.pipeline import ACTIONS, Pipeline, Trigger, report_plan
from agent_deploy.settings import BootstrapParameters, DeploymentParameters
from agent_deploy.terraform import Terraform

logger = logging.getLogger("agent_deploy")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _bootstrap_terraform(args) -> Terraform:
    params = BootstrapParameters.from_env().validate()
    return Terraform(synth_bootstrap(params, args.outdir), args.lock_timeout)


def cmd_bootstrap(args) -> int:
    terraform = _bootstrap_terraform(args)
    terraform.init()
    terraform.plan()
    summary = terraform.show_plan()
    report_plan(summary, "bootstrap")
    if args.action == "plan":
        return 0
    if summary.has_changes:
        terraform.apply_plan()
    variables = ExportedVariables.from_outputs(terraform.outputs())
    sys.stdout.write(variables.render("dotenv"))
    return 0


def cmd_export_vars(args) -> int:
    terraform = _bootstrap_terraform(args)
    terraform.init()
    variables = ExportedVariables.from_outputs(terraform.outputs())
    text = variables.write(args.format, args.output)
    if not args.output and args.format != "github-env":
        sys.stdout.write(text)
    if args.github_repo:
        variables.publish_github_variables(args.github_repo)
    return 0


def cmd_synth(args) -> int:
    if args.stack == "bootstrap":
        path = synth_bootstrap(BootstrapParameters.from_env(), args.outdir)
    else:
        params = DeploymentParameters.from_env().validate()
        path = synth_agent(params.with_image(images.resolve_image(params)), args.outdir)
    print(path)
    return 0


def cmd_resolve_image(args) -> int:
    params = DeploymentParameters.from_env().validate()
    print(images.resolve_image(params))
    return 0


def _run_pipeline(args, trigger: Trigger) -> int:
    params = replace(DeploymentParameters.from_env(), environment=trigger.environment)
    result = Pipeline(
        params,
        trigger,
        outdir=args.outdir,
        lock_timeout=args.lock_timeout,
        build_context=args.context,
        dockerfile=args.dockerfile,
        record_path=args.record,
    ).run()
    if result.record:
        print(result.record.to_json())
    return 0


def cmd_deploy(args) -> int:
    trigger = Trigger(
        event="cli",
        ref="",
        sha=args.sha or os.environ.get("GITHUB_SHA", ""),
        action=args.action,
        environment=args.environment or os.environ.get("DEPLOY_ENVIRONMENT") or "production",
    )
    return _run_pipeline(args, trigger)


def cmd_ci(args) -> int:
    return _run_pipeline(args, Trigger.from_env())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-deploy",
        description="Bootstrap and deploy the agent service on Google Cloud",
    )
    parser.add_argument(
        "--outdir",
        default=os.environ.get("CDKTF_OUTDIR", DEFAULT_OUTDIR),
        help="Directory synthesized Terraform is written to",
    )
    parser.add_argument(
        "--lock-timeout",
        default=os.environ.get("TF_LOCK_TIMEOUT", "0s"),
        help="How long to wait for the state lock (0s fails fast)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    bootstrap = subparsers.add_parser("bootstrap", help="Plan or apply the bootstrap stage")
    bootstrap.add_argument("action", choices=["plan", "apply"])
    bootstrap.set_defaults(func=cmd_bootstrap)

    export_vars = subparsers.add_parser("export-vars", help="Write the exported variable set")
    export_vars.add_argument("--format", choices=FORMATS, default="dotenv")
    export_vars.add_argument("--output", help="File to write instead of stdout")
    export_vars.add_argument(
        "--github-repo", help="Also store the variables on this owner/repo"
    )
    export_vars.set_defaults(func=cmd_export_vars)

    synth = subparsers.add_parser("synth", help="Synthesize a stack to Terraform JSON")
    synth.add_argument("stack", choices=["bootstrap", "agent"])
    synth.set_defaults(func=cmd_synth)

    resolve = subparsers.add_parser("resolve-image", help="Print the image the next deploy uses")
    resolve.set_defaults(func=cmd_resolve_image)

    for name, func in (("deploy", cmd_deploy), ("ci", cmd_ci)):
        sub = subparsers.add_parser(name, help=f"Run the main stage ({name})")
        if name == "deploy":
            sub.add_argument("action", choices=ACTIONS)
            sub.add_argument("--environment", help="Target environment")
            sub.add_argument("--sha", help="Commit the image is built from")
        sub.add_argument("--context", default=".", help="Docker build context")
        sub.add_argument("--dockerfile", help="Dockerfile path")
        sub.add_argument("--record", help="Write the deployment record JSON here")
        sub.set_defaults(func=func)

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(os.environ.get("LOG_LEVEL", "INFO"))

    try:
        return args.func(args)
    except DeployError as e:
        logger.error(str(e))
        return e.exit_code
    except google_exceptions.GoogleAPICallError as e:
        logger.error(f"Google Cloud API error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
