"""
Read-only status queries for a deployed stack.

Collects the stack outputs shown after a deployment, the ECS service counts
and the images held in the registry. Nothing here changes AWS state.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from botocore.exceptions import ClientError

from stack_deploy.aws.infrastructure.cloudformation import StackReconciler
from stack_deploy.aws.infrastructure.ecs_services import FleetManager, FleetObservation
from stack_deploy.aws.utils.aws_clients import AWSClientManager
from stack_deploy.config.settings import DeploymentConfig

logger = logging.getLogger(__name__)

ENDPOINT_OUTPUT = "LoadBalancerURL"
PIPELINE_OUTPUT = "PipelineURL"


@dataclass
class DeploymentSummary:
    """What the operator needs after a deployment."""
    stack_name: str
    region: str
    outputs: Dict[str, str] = field(default_factory=dict)

    @property
    def endpoint_url(self) -> Optional[str]:
        return self.outputs.get(ENDPOINT_OUTPUT) or None

    @property
    def pipeline_url(self) -> Optional[str]:
        return self.outputs.get(PIPELINE_OUTPUT) or None


class StatusMonitor:
    """Queries stack outputs, service counts and registry contents."""

    def __init__(self, clients: AWSClientManager, config: DeploymentConfig):
        self.clients = clients
        self.config = config

    def report_outcome(self) -> DeploymentSummary:
        outputs = StackReconciler(self.clients, self.config).get_outputs()
        summary = DeploymentSummary(
            stack_name=self.config.stack_name,
            region=self.config.region,
            outputs=outputs
        )
        if not summary.endpoint_url:
            logger.warning(f"Stack {self.config.stack_name} has no {ENDPOINT_OUTPUT} output")
        return summary

    def service_status(self) -> FleetObservation:
        return FleetManager(self.clients, self.config).observe()

    def list_images(self, repository_name: Optional[str] = None) -> List[Dict[str, str]]:
        """Tags and push times in the repository, newest first."""
        repository_name = repository_name or self.config.ecr_repo_name
        try:
            response = self.clients.ecr.describe_images(repositoryName=repository_name)
        except ClientError as e:
            logger.warning(f"Could not list images in {repository_name}: {e}")
            return []

        images = []
        for detail in response.get('imageDetails', []):
            pushed_at = detail.get('imagePushedAt')
            for tag in detail.get('imageTags', []) or ['<untagged>']:
                images.append({
                    'tag': tag,
                    'pushed_at': pushed_at.isoformat() if hasattr(pushed_at, 'isoformat') else str(pushed_at or ''),
                    'digest': detail.get('imageDigest', ''),
                })
        images.sort(key=lambda image: image['pushed_at'], reverse=True)
        return images

    def useful_commands(self, summary: Optional[DeploymentSummary] = None) -> List[str]:
        """Follow-up commands printed after a successful deployment."""
        region = self.config.region
        commands = [
            f"View logs:\n  aws logs tail {self.config.log_group} --follow --region {region}",
            "Check service status:\n"
            f"  aws ecs describe-services --cluster {self.config.cluster_name} "
            f"--services {self.config.service_name} --region {region}",
            "List running tasks:\n"
            f"  aws ecs list-tasks --cluster {self.config.cluster_name} --region {region}",
        ]
        if summary and summary.pipeline_url:
            commands.append(f"View pipeline:\n  {summary.pipeline_url}")
        commands.append(f"To trigger a new deployment:\n  git push origin {self.config.github_branch}")
        return commands
