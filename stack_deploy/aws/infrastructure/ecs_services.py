"""ECS service scaling and steady-state watching."""
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from botocore.exceptions import ClientError

from stack_deploy.aws.infrastructure.ecr import ArtifactRef
from stack_deploy.aws.utils.aws_clients import AWSClientManager
from stack_deploy.config.settings import DeploymentConfig
from stack_deploy.errors import ConvergenceError, ConvergenceTimeoutError, WorkflowOrderError

logger = logging.getLogger(__name__)


@dataclass
class FleetObservation:
    """One describe_services snapshot of the service."""
    status: str
    desired: int
    running: int
    pending: int
    deployments: int = 1
    rollout_state: Optional[str] = None
    events: List[str] = field(default_factory=list)

    @property
    def counts(self):
        return (self.desired, self.running, self.pending, self.deployments)

    @property
    def rollout_failed(self) -> bool:
        return self.rollout_state == "FAILED"

    def is_steady(self, target: Optional[int] = None) -> bool:
        """Steady means ACTIVE, one deployment, and running == desired (== target)."""
        target = self.desired if target is None else target
        return (
            self.status == "ACTIVE"
            and self.desired == target
            and self.running == target
            and self.pending == 0
            and self.deployments == 1
            and not self.rollout_failed
        )

    def describe(self) -> str:
        return (f"{self.running}/{self.desired} running, {self.pending} pending, "
                f"{self.deployments} deployment(s)")


class FleetManager:
    """Scales the stack's ECS service and waits for it to settle.

    `clock` and `sleep` are injectable so waits can be tested without real time.
    """

    def __init__(self, clients: AWSClientManager, config: DeploymentConfig,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self.clients = clients
        self.config = config
        self.cluster_name = config.cluster_name
        self.service_name = config.service_name
        self.clock = clock
        self.sleep = sleep

    @property
    def ecs(self):
        return self.clients.ecs

    def _resume_hint(self) -> str:
        return ("To resume waiting without changing the desired count:\n"
                f"  stack-deploy watch {self.config.stack_name} {self.config.region}")

    def _status_hint(self) -> str:
        return ("Check service status:\n"
                f"  aws ecs describe-services --cluster {self.cluster_name} "
                f"--services {self.service_name} --region {self.config.region}")

    def request_desired_count(self, count: int) -> None:
        """Set the absolute desired count; repeating the call is harmless."""
        logger.info(f"Updating ECS service {self.service_name} to desired count of {count}...")
        try:
            self.ecs.update_service(
                cluster=self.cluster_name,
                service=self.service_name,
                desiredCount=count
            )
        except ClientError as e:
            raise ConvergenceError(f"Could not update service {self.service_name}: {e}",
                                   hints=[self._status_hint()]) from e

    def observe(self) -> FleetObservation:
        """Take one snapshot of the service."""
        try:
            response = self.ecs.describe_services(
                cluster=self.cluster_name,
                services=[self.service_name]
            )
        except ClientError as e:
            raise ConvergenceError(f"Could not describe service {self.service_name}: {e}",
                                   hints=[self._status_hint()]) from e

        services = response.get('services', [])
        if not services:
            reasons = [f.get('reason', 'MISSING') for f in response.get('failures', [])]
            raise ConvergenceError(
                f"Service {self.service_name} not found in cluster {self.cluster_name} "
                f"({', '.join(reasons) or 'MISSING'})",
                hints=[self._status_hint()]
            )

        service = services[0]
        deployments = service.get('deployments', [])
        primary = next((d for d in deployments if d.get('status') == 'PRIMARY'), None)
        return FleetObservation(
            status=service.get('status', 'UNKNOWN'),
            desired=service.get('desiredCount', 0),
            running=service.get('runningCount', 0),
            pending=service.get('pendingCount', 0),
            deployments=len(deployments) if deployments else 1,
            rollout_state=primary.get('rolloutState') if primary else None,
            events=[event.get('message', '') for event in service.get('events', [])[:5]]
        )

    def watch(self, desired: Optional[int] = None, timeout_seconds: Optional[float] = None,
              poll_seconds: Optional[float] = None,
              on_progress: Optional[Callable[[FleetObservation], None]] = None) -> FleetObservation:
        """Poll until the service is steady at `desired` tasks.

        Does not change the service, so a timed-out wait can simply be
        watched again. With `desired` omitted the service's own desired
        count is the target.
        """
        timeout_seconds = (self.config.service_timeout_minutes * 60
                           if timeout_seconds is None else timeout_seconds)
        poll_seconds = self.config.service_poll_seconds if poll_seconds is None else poll_seconds

        deadline = self.clock() + timeout_seconds
        last_counts = None
        logger.info(f"⏳ Waiting for service {self.service_name} to become stable "
                    f"(timeout {timeout_seconds:.0f}s)")

        while True:
            observation = self.observe()
            target = observation.desired if desired is None else desired

            if observation.status != "ACTIVE":
                raise ConvergenceError(
                    f"Service {self.service_name} is {observation.status}",
                    hints=[self._status_hint()]
                )
            if observation.rollout_failed:
                raise ConvergenceError(
                    f"Deployment of service {self.service_name} failed: "
                    f"{'; '.join(observation.events[:3]) or 'rollout FAILED'}",
                    hints=[self._status_hint()]
                )

            if observation.counts != last_counts:
                logger.info(f"Service {self.service_name}: {observation.describe()}")
                if on_progress:
                    on_progress(observation)
                last_counts = observation.counts

            if observation.is_steady(target):
                logger.info(f"✅ Service {self.service_name} is stable with {target} running task(s)")
                return observation

            remaining = deadline - self.clock()
            if remaining <= 0:
                raise ConvergenceTimeoutError(
                    f"Service {self.service_name} not stable after {timeout_seconds:.0f}s "
                    f"({observation.describe()})",
                    desired=target,
                    running=observation.running,
                    pending=observation.pending,
                    hints=[self._resume_hint(), self._status_hint()]
                )
            self.sleep(min(poll_seconds, remaining))

    def converge(self, artifact: Optional[ArtifactRef], count: Optional[int] = None,
                 **watch_kwargs) -> FleetObservation:
        """Scale the service to `count` tasks and wait until they are running.

        Tasks can only start once their image is in the registry, so an
        ArtifactRef from this run is required for any non-zero count.
        """
        count = self.config.desired_count if count is None else count
        if count < 0:
            raise ConvergenceError(f"Desired count for {self.service_name} must not be negative, got {count}")
        if count > 0 and artifact is None:
            raise WorkflowOrderError(
                f"Refusing to scale {self.service_name} to {count}: no image has been published"
            )
        self.request_desired_count(count)
        return self.watch(desired=count, **watch_kwargs)
