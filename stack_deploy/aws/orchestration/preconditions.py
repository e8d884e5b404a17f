"""
Local precondition checks.

Everything here runs before the first AWS API call. A failing check raises
immediately so no remote state is touched when the run cannot finish.
"""
import logging
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from stack_deploy.aws.utils.aws_clients import AWSClientManager
from stack_deploy.config.settings import DeploymentConfig
from stack_deploy.errors import InputMissingError, ToolMissingError

logger = logging.getLogger(__name__)

USAGE = "Usage: stack-deploy deploy <stack-name> <github-token> [region] [repo] [branch]"


@dataclass
class PreconditionReport:
    """Checks that passed, in the order they ran."""
    passed: List[str] = field(default_factory=list)
    on_pass: Optional[Callable[[str], None]] = None

    def ok(self, message: str) -> None:
        self.passed.append(message)
        logger.info(f"✅ {message}")
        if self.on_pass:
            self.on_pass(message)


class PreconditionChecker:
    """Runs the local checks for one DeploymentConfig.

    `which`, `run` and `credentials_available` are injectable so the checks
    can be exercised without docker or AWS credentials on the machine. By
    default credentials are resolved through the local boto3 credential chain.
    """

    def __init__(self, config: DeploymentConfig,
                 which: Callable[[str], Optional[str]] = shutil.which,
                 run: Callable[..., subprocess.CompletedProcess] = subprocess.run,
                 credentials_available: Optional[Callable[[], bool]] = None,
                 on_pass: Optional[Callable[[str], None]] = None):
        self.config = config
        self.which = which
        self.run = run
        self.credentials_available = (credentials_available
                                      or AWSClientManager.from_config(config).has_credentials)
        self.report = PreconditionReport(on_pass=on_pass)

    def check_docker_installed(self) -> None:
        if not self.which("docker"):
            raise ToolMissingError("Docker is not installed",
                                   hints=["Install Docker: https://docs.docker.com/get-docker/"])
        self.report.ok("Docker installed")

    def check_docker_running(self) -> None:
        try:
            result = self.run(["docker", "info"], stdout=subprocess.DEVNULL,
                              stderr=subprocess.DEVNULL, check=False)
        except OSError as e:
            raise ToolMissingError(f"Docker is not running: {e}") from e
        if result.returncode != 0:
            raise ToolMissingError("Docker is not running",
                                   hints=["Please start Docker and try again"])
        self.report.ok("Docker is running")

    def check_aws_credentials(self) -> None:
        if not self.credentials_available():
            raise ToolMissingError(
                "AWS credentials are not configured",
                hints=["Run `aws configure` or set AWS_PROFILE / AWS_ACCESS_KEY_ID"]
            )
        self.report.ok("AWS credentials found")

    def check_template(self) -> None:
        if not Path(self.config.template_file).is_file():
            raise InputMissingError(f"{self.config.template_file} not found")
        self.report.ok("CloudFormation template found")

    def check_dockerfile(self) -> None:
        if not Path(self.config.dockerfile).is_file():
            raise InputMissingError(f"{self.config.dockerfile} not found")
        self.report.ok("Dockerfile found")

    def check_credential(self) -> None:
        if not self.config.has_credential:
            raise InputMissingError("GitHub token is required", hints=[USAGE])
        self.report.ok("GitHub token provided")

    def check_all(self) -> PreconditionReport:
        """Full workflow: inputs first, then tooling."""
        self.check_template()
        self.check_dockerfile()
        self.check_credential()
        self.check_aws_credentials()
        self.check_docker_installed()
        self.check_docker_running()
        return self.report

    def check_stack_inputs(self) -> PreconditionReport:
        """Stack-only deployment needs the token and template, not docker."""
        self.check_template()
        self.check_credential()
        self.check_aws_credentials()
        return self.report

    def check_publish_inputs(self) -> PreconditionReport:
        """Image-only publication needs docker and a Dockerfile."""
        self.check_dockerfile()
        self.check_aws_credentials()
        self.check_docker_installed()
        self.check_docker_running()
        return self.report


def check_preconditions(config: DeploymentConfig, **kwargs) -> PreconditionReport:
    """Run every check the full deployment needs."""
    return PreconditionChecker(config, **kwargs).check_all()
