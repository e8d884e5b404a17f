"""
Deployment State Management and Tracking
Records the progress of each workflow phase in a JSON file so a run can be
inspected afterwards and an interrupted fleet wait can be resumed.
"""
import json
import logging
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class DeploymentPhase(Enum):
    """Deployment phases in order."""
    PRECONDITIONS = "preconditions"
    STACK = "stack"
    ARTIFACT = "artifact"
    FLEET = "fleet"
    OUTCOME = "outcome"


class DeploymentStatus(Enum):
    """Deployment status for each phase."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class PhaseState:
    """State of a single deployment phase."""
    phase: str
    status: str
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    duration_seconds: Optional[float] = None
    resources: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None


@dataclass
class DeploymentState:
    """Complete deployment state tracking."""
    deployment_id: str
    stack_name: str
    region: str
    started_at: float
    phases: Dict[str, PhaseState] = field(default_factory=dict)
    current_phase: Optional[str] = None
    status: str = "in_progress"
    completed_at: Optional[float] = None
    total_duration: Optional[float] = None


class DeploymentStateManager:
    """Manages deployment state tracking."""

    def __init__(self, state_file: str = ".deployment_state.json"):
        self.state_file = Path(state_file)
        self.state: Optional[DeploymentState] = None

    def start_deployment(self, deployment_id: str, stack_name: str, region: str) -> DeploymentState:
        """Start tracking a new deployment."""
        self.state = DeploymentState(
            deployment_id=deployment_id,
            stack_name=stack_name,
            region=region,
            started_at=time.time()
        )

        # Initialize all phases as pending
        for phase in DeploymentPhase:
            self.state.phases[phase.value] = PhaseState(
                phase=phase.value,
                status=DeploymentStatus.PENDING.value
            )

        self._save_state()
        logger.info(f"🚀 Started deployment tracking: {deployment_id} ({stack_name} in {region})")
        return self.state

    def _phase(self, phase: DeploymentPhase) -> PhaseState:
        if not self.state:
            raise ValueError("No active deployment")
        return self.state.phases[phase.value]

    def start_phase(self, phase: DeploymentPhase) -> None:
        """Mark a phase as started."""
        phase_state = self._phase(phase)
        phase_state.status = DeploymentStatus.IN_PROGRESS.value
        phase_state.started_at = time.time()

        self.state.current_phase = phase.value
        self._save_state()

        logger.info(f"📋 Phase started: {phase.value}")

    def complete_phase(self, phase: DeploymentPhase, resources: Optional[Dict[str, Any]] = None) -> None:
        """Mark a phase as completed with resource tracking."""
        phase_state = self._phase(phase)
        phase_state.status = DeploymentStatus.COMPLETED.value
        phase_state.completed_at = time.time()

        if phase_state.started_at:
            phase_state.duration_seconds = phase_state.completed_at - phase_state.started_at

        if resources:
            phase_state.resources.update(resources)

        self._save_state()

        duration_str = f" in {phase_state.duration_seconds:.1f}s" if phase_state.duration_seconds else ""
        logger.info(f"✅ Phase completed: {phase.value}{duration_str}")

    def skip_phase(self, phase: DeploymentPhase) -> None:
        """Mark a phase as not part of this run."""
        self._phase(phase).status = DeploymentStatus.SKIPPED.value
        self._save_state()

    def fail_phase(self, phase: DeploymentPhase, error_message: str,
                   resources: Optional[Dict[str, Any]] = None) -> None:
        """Mark a phase, and with it the deployment, as failed."""
        phase_state = self._phase(phase)
        phase_state.status = DeploymentStatus.FAILED.value
        phase_state.error_message = error_message
        phase_state.completed_at = time.time()

        if phase_state.started_at:
            phase_state.duration_seconds = phase_state.completed_at - phase_state.started_at
        if resources:
            phase_state.resources.update(resources)

        self.state.status = "failed"
        self.state.completed_at = time.time()
        self.state.total_duration = self.state.completed_at - self.state.started_at

        self._save_state()

        logger.error(f"❌ Phase failed: {phase.value} - {error_message}")

    def complete_deployment(self) -> None:
        """Mark the entire deployment as completed."""
        if not self.state:
            raise ValueError("No active deployment")

        self.state.status = "completed"
        self.state.completed_at = time.time()
        self.state.total_duration = self.state.completed_at - self.state.started_at
        self.state.current_phase = None

        self._save_state()

        logger.info(f"🎉 Deployment completed: {self.state.deployment_id} in {self.state.total_duration:.1f}s")

    def load_state(self) -> Optional[DeploymentState]:
        """Load deployment state from file."""
        if not self.state_file.exists():
            return None

        try:
            with open(self.state_file, 'r') as f:
                data = json.load(f)

            # Convert phases dict back to PhaseState objects
            data['phases'] = {
                name: PhaseState(**phase_data)
                for name, phase_data in data.get('phases', {}).items()
            }
            self.state = DeploymentState(**data)
        except (OSError, ValueError, TypeError, KeyError) as e:
            logger.warning(f"⚠️ Failed to load deployment state from {self.state_file}: {e}")
            return None

        logger.debug(f"📋 Loaded deployment state: {self.state.deployment_id}")
        return self.state

    def _save_state(self) -> None:
        """Save deployment state to file."""
        if not self.state:
            return

        try:
            with open(self.state_file, 'w') as f:
                json.dump(asdict(self.state), f, indent=2)
        except OSError as e:
            logger.error(f"❌ Failed to save deployment state: {e}")

    def get_status_summary(self) -> Dict[str, Any]:
        """Get deployment status summary."""
        if not self.state:
            return {"status": "no_deployment"}

        completed_phases = sum(1 for phase in self.state.phases.values()
                               if phase.status == DeploymentStatus.COMPLETED.value)
        total_phases = sum(1 for phase in self.state.phases.values()
                           if phase.status != DeploymentStatus.SKIPPED.value)

        return {
            "deployment_id": self.state.deployment_id,
            "stack_name": self.state.stack_name,
            "region": self.state.region,
            "status": self.state.status,
            "current_phase": self.state.current_phase,
            "progress": f"{completed_phases}/{total_phases}",
            "duration": self.state.total_duration,
            "started_at": self.state.started_at,
            "phases": {
                name: {
                    "status": phase.status,
                    "duration": phase.duration_seconds,
                    "error": phase.error_message,
                    "resources": phase.resources
                } for name, phase in self.state.phases.items()
            }
        }


def create_deployment_id(stack_name: str) -> str:
    """Create unique deployment ID."""
    timestamp = int(time.time())
    return f"{stack_name}-{timestamp}"
