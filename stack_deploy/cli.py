# cli.py
import json
import logging
import sys
from typing import Optional

import click
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import ValidationError

from stack_deploy.aws.infrastructure.cloudformation import StackReconciler
from stack_deploy.aws.monitoring.status_monitor import StatusMonitor
from stack_deploy.aws.orchestration.workflow import DeploymentWorkflow, WorkflowResult
from stack_deploy.aws.state.deployment_state import DeploymentStateManager
from stack_deploy.aws.utils.aws_clients import AWSClientManager
from stack_deploy.config.settings import DeploymentConfig, get_settings
from stack_deploy.console import Console
from stack_deploy.errors import ConvergenceError

# Configure logging
logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level), format=LOG_FORMAT, stream=sys.stderr)
    # boto's own debug output drowns the deployment log
    for noisy in ("botocore", "boto3", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def build_config(**values) -> DeploymentConfig:
    """Fold command line values over settings; exit 1 on invalid input."""
    try:
        return DeploymentConfig.from_settings(get_settings(), **values)
    except ValidationError as e:
        Console().error(f"Invalid configuration: {e}")
        sys.exit(1)


def finish(result: WorkflowResult) -> None:
    sys.exit(0 if result.success else 1)


def run_interruptible(console: Console, config: DeploymentConfig, action) -> WorkflowResult:
    """Run a workflow entry point, turning Ctrl-C into exit code 1 with a resume hint."""
    try:
        return action()
    except KeyboardInterrupt:
        console.blank()
        console.error("Interrupted. AWS may still be converging.")
        console.line("To resume waiting for the service:")
        console.line(f"  stack-deploy watch {config.stack_name} {config.region}")
        sys.exit(1)


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.version_option(package_name="stack-deploy")
def cli(verbose: bool):
    """Deploy an ECS stack: CloudFormation, initial image and service start-up"""
    configure_logging("DEBUG" if verbose else get_settings().log_level)


def stack_arguments(func):
    """Positional arguments shared by deploy and deploy-stack."""
    for decorator in reversed([
        click.argument("target", required=False),
        click.argument("credential", required=False, envvar="GITHUB_TOKEN"),
        click.argument("region", required=False),
        click.argument("repo", required=False),
        click.argument("branch", required=False),
    ]):
        func = decorator(func)
    return func


@cli.command()
@stack_arguments
@click.option("--desired-count", type=int, default=None, help="Number of ECS tasks to run")
@click.option("--timeout-minutes", type=int, default=None, help="How long to wait for the service to stabilise")
@click.option("--template-file", default=None, help="CloudFormation template path")
@click.option("--dockerfile", default=None, help="Dockerfile for the initial image")
@click.option("--state-file", default=None, help="Where to record phase progress")
def deploy(target: Optional[str], credential: Optional[str], region: Optional[str],
           repo: Optional[str], branch: Optional[str], desired_count: Optional[int],
           timeout_minutes: Optional[int], template_file: Optional[str],
           dockerfile: Optional[str], state_file: Optional[str]):
    """Create or update the stack, push the initial image and start the service"""
    config = build_config(
        stack_name=target,
        github_token=credential,
        region=region,
        github_repo=repo,
        github_branch=branch,
        desired_count=desired_count,
        service_timeout_minutes=timeout_minutes,
        template_file=template_file,
        dockerfile=dockerfile,
        state_file=state_file,
    )
    console = Console()
    workflow = DeploymentWorkflow(config, console=console)
    finish(run_interruptible(console, config, workflow.run))


@cli.command("deploy-stack")
@stack_arguments
@click.option("--template-file", default=None, help="CloudFormation template path")
@click.option("--state-file", default=None, help="Where to record phase progress")
def deploy_stack(target: Optional[str], credential: Optional[str], region: Optional[str],
                 repo: Optional[str], branch: Optional[str], template_file: Optional[str],
                 state_file: Optional[str]):
    """Create or update the CloudFormation stack only and print its outputs"""
    config = build_config(
        stack_name=target,
        github_token=credential,
        region=region,
        github_repo=repo,
        github_branch=branch,
        template_file=template_file,
        state_file=state_file,
    )
    console = Console()
    workflow = DeploymentWorkflow(config, console=console)
    finish(run_interruptible(console, config, workflow.deploy_stack_only))


@cli.command("push-image")
@click.argument("target")
@click.argument("region", required=False)
@click.option("--dockerfile", default=None, help="Dockerfile for the initial image")
@click.option("--state-file", default=None, help="Where to record phase progress")
def push_image(target: str, region: Optional[str], dockerfile: Optional[str], state_file: Optional[str]):
    """Build and push the initial image for an existing stack"""
    config = build_config(stack_name=target, region=region, dockerfile=dockerfile, state_file=state_file)
    console = Console()
    workflow = DeploymentWorkflow(config, console=console)
    finish(run_interruptible(console, config, workflow.publish_only))


@cli.command()
@click.argument("target", required=False)
@click.argument("region", required=False)
@click.option("--desired-count", type=int, default=None,
              help="Count to wait for (defaults to the service's current desired count)")
@click.option("--timeout-minutes", type=int, default=None, help="How long to wait")
@click.option("--state-file", default=None, help="State file of the deployment to resume")
def watch(target: Optional[str], region: Optional[str], desired_count: Optional[int],
          timeout_minutes: Optional[int], state_file: Optional[str]):
    """Wait for the ECS service to become stable without changing it"""
    if not target:
        previous = DeploymentStateManager(state_file or get_settings().state_file).load_state()
        if previous:
            target = previous.stack_name
            region = region or previous.region
            logger.info(f"Resuming watch for {target} in {region} from recorded state")

    config = build_config(stack_name=target, region=region,
                          service_timeout_minutes=timeout_minutes, state_file=state_file)
    console = Console()
    workflow = DeploymentWorkflow(config, console=console)
    finish(run_interruptible(console, config, lambda: workflow.watch_only(desired_count)))


@cli.command()
@click.argument("target", required=False)
@click.argument("region", required=False)
def outputs(target: Optional[str], region: Optional[str]):
    """Print the stack outputs"""
    config = build_config(stack_name=target, region=region)
    console = Console()
    clients = AWSClientManager.from_config(config)

    try:
        if not StackReconciler(clients, config).stack_exists():
            console.error(f"Stack {config.stack_name} does not exist in {config.region}")
            sys.exit(1)
        monitor = StatusMonitor(clients, config)
        summary = monitor.report_outcome()
    except (ClientError, BotoCoreError) as e:
        console.error(f"Could not read stack outputs: {e}")
        sys.exit(1)

    console.key_values(summary.outputs, title="Stack Outputs:")
    if summary.endpoint_url:
        console.blank()
        console.line(f"Application URL: {summary.endpoint_url}")

    console.blank()
    try:
        observation = monitor.service_status()
    except ConvergenceError as e:
        console.warning(f"Service status unavailable: {e.message}")
    else:
        console.line(f"Service {config.service_name}: {observation.describe()}")


@cli.command()
@click.option("--state-file", default=None, help="State file to read")
def status(state_file: Optional[str]):
    """Show the recorded progress of the last deployment"""
    manager = DeploymentStateManager(state_file or get_settings().state_file)
    if not manager.load_state():
        click.echo("No deployment state found")
        sys.exit(1)
    click.echo(json.dumps(manager.get_status_summary(), indent=2, default=str))


@cli.command()
def show_config():
    """Show current configuration"""
    settings = get_settings()

    click.echo("Current Configuration:")
    for key, value in settings.get_environment_dict().items():
        click.echo(f"  {key}: {value}")


if __name__ == "__main__":
    cli()
