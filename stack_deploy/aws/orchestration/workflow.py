"""
Deployment workflow: preconditions, stack, image, service, outputs.

Each phase runs through `run_phase`, which turns the phase's outcome into a
PhaseResult. The workflow inspects every result and stops at the first
failure; later phases are never started and nothing is rolled back.
"""
import logging
import subprocess
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from stack_deploy.aws.infrastructure.cloudformation import StackOutcome, StackReconciler, stack_hints
from stack_deploy.aws.infrastructure.ecr import ArtifactPublisher, ArtifactRef
from stack_deploy.aws.infrastructure.ecs_services import FleetManager, FleetObservation
from stack_deploy.aws.monitoring.status_monitor import DeploymentSummary, StatusMonitor
from stack_deploy.aws.orchestration.preconditions import PreconditionChecker, PreconditionReport
from stack_deploy.aws.state.deployment_state import (
    DeploymentPhase,
    DeploymentStateManager,
    create_deployment_id,
)
from stack_deploy.aws.utils.aws_clients import AWSClientManager
from stack_deploy.config.settings import DeploymentConfig
from stack_deploy.console import Console, NullConsole
from stack_deploy.errors import (
    ConvergenceError,
    DeploymentError,
    PreconditionError,
    PublishError,
    ReconcileError,
    StackBusyError,
)
from stack_deploy.utils.decorators import log_operation

logger = logging.getLogger(__name__)

# Error type used when a phase fails with something outside the taxonomy
PHASE_ERRORS = {
    DeploymentPhase.PRECONDITIONS: PreconditionError,
    DeploymentPhase.STACK: ReconcileError,
    DeploymentPhase.ARTIFACT: PublishError,
    DeploymentPhase.FLEET: ConvergenceError,
    DeploymentPhase.OUTCOME: DeploymentError,
}

PHASE_TITLES = {
    DeploymentPhase.PRECONDITIONS: "Checking Prerequisites",
    DeploymentPhase.STACK: "Step 1: Deploying CloudFormation Stack",
    DeploymentPhase.ARTIFACT: "Step 2: Building and Pushing Initial Docker Image",
    DeploymentPhase.FLEET: "Step 3: Starting ECS Service",
    DeploymentPhase.OUTCOME: "Deployment Complete!",
}


@dataclass
class PhaseResult:
    """Outcome of one phase: either a value or an error, never both."""
    phase: DeploymentPhase
    ok: bool
    value: Any = None
    error: Optional[DeploymentError] = None
    duration: float = 0.0


@dataclass
class WorkflowResult:
    """Every phase that ran, in order."""
    phases: List[PhaseResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return bool(self.phases) and all(result.ok for result in self.phases)

    @property
    def error(self) -> Optional[DeploymentError]:
        return next((result.error for result in self.phases if not result.ok), None)

    def value(self, phase: DeploymentPhase) -> Any:
        for result in self.phases:
            if result.phase == phase and result.ok:
                return result.value
        return None

    @property
    def summary(self) -> Optional[DeploymentSummary]:
        return self.value(DeploymentPhase.OUTCOME)


class DeploymentWorkflow:
    """Runs the deployment phases for one DeploymentConfig."""

    def __init__(self, config: DeploymentConfig,
                 clients: Optional[AWSClientManager] = None,
                 console: Optional[Console] = None,
                 state: Optional[DeploymentStateManager] = None,
                 run: Callable[..., subprocess.CompletedProcess] = subprocess.run,
                 checker: Optional[PreconditionChecker] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.clients = clients or AWSClientManager.from_config(config)
        self.console = console or NullConsole()
        self.state = state or DeploymentStateManager(config.state_file)
        self.checker = checker or PreconditionChecker(
            config,
            run=run,
            credentials_available=self.clients.has_credentials,
            on_pass=self.console.success
        )

        self.stacks = StackReconciler(self.clients, config)
        self.publisher = ArtifactPublisher(self.clients, config, run=run)
        self.fleet = FleetManager(self.clients, config, clock=clock, sleep=sleep)
        self.monitor = StatusMonitor(self.clients, config)

    # Phases

    @log_operation("Precondition checks")
    def check_preconditions(self) -> PreconditionReport:
        return self.checker.check_all()

    @log_operation("CloudFormation stack reconciliation")
    def reconcile_stack(self) -> StackOutcome:
        cfg = self.config
        self.console.line(f"Stack Name: {cfg.stack_name}")
        self.console.line(f"Region: {cfg.region}")
        self.console.line(f"GitHub Repo: {cfg.github_repo}")
        self.console.line(f"GitHub Branch: {cfg.github_branch}")
        self.console.blank()

        outcome = self.stacks.reconcile()
        if outcome.changed:
            self.console.success(f"CloudFormation stack deployed ({outcome.action}: {outcome.status})")
        else:
            self.console.success("No changes to deploy - stack is up to date")
        return outcome

    @log_operation("Image build and push")
    def publish_artifact(self, stack_outputs: Optional[Dict[str, str]] = None) -> ArtifactRef:
        self.console.line("Building image and pushing to ECR (this may take a minute)...")
        artifact = self.publisher.publish(stack_outputs)
        self.console.success(f"ECR Repository: {artifact.repository_uri}")
        self.console.success(f"Image pushed with tags: {', '.join(artifact.tags)}")
        return artifact

    def _show_progress(self, observation: FleetObservation) -> None:
        self.console.line(f"  {observation.describe()}")

    @log_operation("ECS service convergence")
    def converge(self, artifact: Optional[ArtifactRef]) -> FleetObservation:
        count = self.config.desired_count
        self.console.line(f"Updating ECS service to desired count of {count}...")
        self.console.line("Waiting for service to become stable (this may take 2-3 minutes)...")
        observation = self.fleet.converge(artifact, count, on_progress=self._show_progress)
        self.console.success("ECS service is stable and running")
        return observation

    @log_operation("ECS service watch")
    def watch(self, desired: Optional[int] = None) -> FleetObservation:
        self.console.line("Waiting for service to become stable...")
        observation = self.fleet.watch(desired=desired, on_progress=self._show_progress)
        self.console.success("ECS service is stable and running")
        return observation

    @log_operation("Outcome report")
    def report_outcome(self) -> DeploymentSummary:
        summary = self.monitor.report_outcome()
        self.console.blank()
        self.console.key_values(summary.outputs, title="Stack Outputs:")
        self.console.blank()
        if summary.endpoint_url:
            self.console.success(f"Application URL: {summary.endpoint_url}")
        return summary

    # Phase runner

    def run_phase(self, phase: DeploymentPhase, step: Callable[..., Any], *args) -> PhaseResult:
        """Run one phase and capture its value or error."""
        self.console.header(PHASE_TITLES[phase])
        self.state.start_phase(phase)
        started = time.time()

        try:
            value = step(*args)
        except DeploymentError as e:
            error = e
        except KeyboardInterrupt:
            self.state.fail_phase(phase, "interrupted")
            raise
        except Exception as e:
            logger.exception(f"Unexpected error in phase {phase.value}")
            error = PHASE_ERRORS[phase](f"{type(e).__name__}: {e}", phase=phase.value)
            error.__cause__ = e
        else:
            duration = time.time() - started
            self.state.complete_phase(phase, resources=self._resources(value))
            return PhaseResult(phase=phase, ok=True, value=value, duration=duration)

        if not error.phase:
            error.phase = phase.value
        self.state.fail_phase(phase, error.message)
        return PhaseResult(phase=phase, ok=False, error=error, duration=time.time() - started)

    @staticmethod
    def _resources(value: Any) -> Dict[str, Any]:
        """What each phase records in the state file."""
        if isinstance(value, StackOutcome):
            return {"action": value.action, "status": value.status, "outputs": value.outputs}
        if isinstance(value, ArtifactRef):
            return {"repository_uri": value.repository_uri, "tags": list(value.tags), "digest": value.digest}
        if isinstance(value, FleetObservation):
            return {"desired": value.desired, "running": value.running, "status": value.status}
        if isinstance(value, DeploymentSummary):
            return {"endpoint_url": value.endpoint_url}
        if isinstance(value, PreconditionReport):
            return {"passed": value.passed}
        return {}

    def _start(self, *skipped: DeploymentPhase) -> WorkflowResult:
        self.state.start_deployment(
            create_deployment_id(self.config.stack_name),
            self.config.stack_name,
            self.config.region
        )
        for phase in skipped:
            self.state.skip_phase(phase)
        return WorkflowResult()

    def _finish(self, result: WorkflowResult, success_title: str = "Deployment Successful! 🎉") -> WorkflowResult:
        if result.success:
            self.state.complete_deployment()
            self.console.banner(success_title, fg="green")
            return result

        error = result.error
        hints = list(error.hints)
        if not isinstance(error, (PreconditionError, StackBusyError)):
            hints.extend(hint for hint in stack_hints(self.config.stack_name, self.config.region)
                         if hint not in hints)
        for event in getattr(error, "events", []):
            logger.error(f"Stack event: {event}")
        self.console.failure(error.message, hints)
        return result

    # Entry points

    def run(self) -> WorkflowResult:
        """Full deployment: all five phases in order."""
        self.console.banner("ECS Complete Deployment Script")
        result = self._start()

        checked = self.run_phase(DeploymentPhase.PRECONDITIONS, self.check_preconditions)
        result.phases.append(checked)
        if not checked.ok:
            return self._finish(result)

        stack = self.run_phase(DeploymentPhase.STACK, self.reconcile_stack)
        result.phases.append(stack)
        if not stack.ok:
            return self._finish(result)

        artifact = self.run_phase(DeploymentPhase.ARTIFACT, self.publish_artifact, stack.value.outputs)
        result.phases.append(artifact)
        if not artifact.ok:
            return self._finish(result)

        fleet = self.run_phase(DeploymentPhase.FLEET, self.converge, artifact.value)
        result.phases.append(fleet)
        if not fleet.ok:
            return self._finish(result)

        outcome = self.run_phase(DeploymentPhase.OUTCOME, self.report_outcome)
        result.phases.append(outcome)
        if outcome.ok:
            self._show_useful_commands(outcome.value)
        return self._finish(result)

    def deploy_stack_only(self) -> WorkflowResult:
        """Create or update the stack and show its outputs; no image, no scaling."""
        result = self._start(DeploymentPhase.ARTIFACT, DeploymentPhase.FLEET)

        checked = self.run_phase(DeploymentPhase.PRECONDITIONS, self.checker.check_stack_inputs)
        result.phases.append(checked)
        if not checked.ok:
            return self._finish(result)

        stack = self.run_phase(DeploymentPhase.STACK, self.reconcile_stack)
        result.phases.append(stack)
        if not stack.ok:
            return self._finish(result)

        outcome = self.run_phase(DeploymentPhase.OUTCOME, self.report_outcome)
        result.phases.append(outcome)
        if outcome.ok:
            self._show_next_steps()
        return self._finish(result, success_title="Stack deployment complete")

    def publish_only(self) -> WorkflowResult:
        """Build and push the initial image for an existing stack."""
        self.console.header("Pushing Initial Image to ECR")
        self.console.line(f"Stack: {self.config.stack_name}")
        self.console.line(f"Region: {self.config.region}")
        result = self._start(DeploymentPhase.STACK, DeploymentPhase.FLEET, DeploymentPhase.OUTCOME)

        checked = self.run_phase(DeploymentPhase.PRECONDITIONS, self.checker.check_publish_inputs)
        result.phases.append(checked)
        if not checked.ok:
            return self._finish(result)

        artifact = self.run_phase(DeploymentPhase.ARTIFACT, self._publish_for_existing_stack)
        result.phases.append(artifact)
        if artifact.ok:
            self._show_images(artifact.value)
        return self._finish(result, success_title="Initial image pushed successfully!")

    def watch_only(self, desired: Optional[int] = None) -> WorkflowResult:
        """Resume waiting for the service without touching its desired count."""
        result = self._start(DeploymentPhase.PRECONDITIONS, DeploymentPhase.STACK,
                             DeploymentPhase.ARTIFACT, DeploymentPhase.OUTCOME)
        fleet = self.run_phase(DeploymentPhase.FLEET, self.watch, desired)
        result.phases.append(fleet)
        return self._finish(result, success_title="ECS service is stable")

    # Helpers

    def _publish_for_existing_stack(self) -> ArtifactRef:
        outputs = self.stacks.get_outputs()
        return self.publish_artifact(outputs)

    def _show_images(self, artifact: ArtifactRef) -> None:
        images = self.monitor.list_images(artifact.repository_name)
        self.console.blank()
        self.console.table(["Tag", "Pushed At"], [(i['tag'], i['pushed_at']) for i in images],
                           title="Images in ECR:")

    def _show_useful_commands(self, summary: DeploymentSummary) -> None:
        self.console.blank()
        self.console.line("Useful commands:")
        for command in self.monitor.useful_commands(summary):
            self.console.blank()
            self.console.line(command)

    def _show_next_steps(self) -> None:
        self.console.header("Next Steps:")
        self.console.line("1. Push the initial image:")
        self.console.line(f"   stack-deploy push-image {self.config.stack_name} {self.config.region}")
        self.console.line("2. Push your code to GitHub to trigger the pipeline")
        self.console.line("3. Access your application via the Load Balancer URL above")
