"""CloudFormation stack reconciliation: create or update, then wait for a terminal state."""
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError, WaiterError

from stack_deploy.aws.utils.aws_clients import AWSClientManager
from stack_deploy.config.settings import DeploymentConfig
from stack_deploy.errors import ReconcileError, StackBusyError

logger = logging.getLogger(__name__)

# Inline TemplateBody limit; larger templates have to be uploaded to S3 first
MAX_TEMPLATE_BODY_BYTES = 51200

NO_UPDATES_MESSAGE = "No updates are to be performed"

# Stacks in these states cannot be updated and must be deleted first
UNRECOVERABLE_STATUSES = ("ROLLBACK_COMPLETE", "ROLLBACK_FAILED", "DELETE_FAILED")

BUSY_STATUS_SUFFIX = "_IN_PROGRESS"

FAILED_EVENT_SUFFIXES = ("_FAILED",)


@dataclass
class StackOutcome:
    """Result of a reconcile call."""
    stack_name: str
    action: str  # "create", "update" or "none"
    status: str
    outputs: Dict[str, str] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return self.action != "none"


def stack_hints(stack_name: str, region: str) -> List[str]:
    """Commands an operator runs after a failed reconcile."""
    return [
        "To view stack events:\n"
        f"  aws cloudformation describe-stack-events --stack-name {stack_name} "
        f"--region {region} --max-items 20",
        "To delete the stack:\n"
        f"  aws cloudformation delete-stack --stack-name {stack_name} --region {region}",
    ]


class StackReconciler:
    """Drives one CloudFormation stack to the state declared by a template."""

    def __init__(self, clients: AWSClientManager, config: DeploymentConfig):
        self.clients = clients
        self.config = config
        self.stack_name = config.stack_name

    @property
    def cfn(self):
        return self.clients.cloudformation

    def _error(self, message: str, **kwargs) -> ReconcileError:
        return ReconcileError(message, hints=stack_hints(self.stack_name, self.config.region), **kwargs)

    def _busy_hint(self) -> str:
        return ("Check the stack status and re-run once it is no longer *_IN_PROGRESS:\n"
                f"  aws cloudformation describe-stacks --stack-name {self.stack_name} "
                f"--region {self.config.region} --query 'Stacks[0].StackStatus'")

    def describe_stack(self) -> Optional[Dict[str, Any]]:
        """Return the stack description, or None if the stack does not exist."""
        try:
            response = self.cfn.describe_stacks(StackName=self.stack_name)
        except ClientError as e:
            message = e.response.get('Error', {}).get('Message', '')
            if 'does not exist' in message:
                return None
            raise
        stacks = response.get('Stacks', [])
        return stacks[0] if stacks else None

    def stack_exists(self) -> bool:
        return self.describe_stack() is not None

    def get_outputs(self) -> Dict[str, str]:
        """Declared stack outputs as a key/value mapping."""
        stack = self.describe_stack()
        if not stack:
            return {}
        return {
            output['OutputKey']: output.get('OutputValue', '')
            for output in stack.get('Outputs', [])
        }

    def get_output(self, key: str) -> Optional[str]:
        value = self.get_outputs().get(key)
        if not value or value == "None":
            return None
        return value

    def recent_events(self, limit: int = 20) -> List[str]:
        """Most recent failure events, newest first, formatted for display."""
        try:
            response = self.cfn.describe_stack_events(StackName=self.stack_name)
        except ClientError as e:
            logger.warning(f"Could not read stack events: {e}")
            return []

        events = []
        for event in response.get('StackEvents', [])[:limit]:
            status = event.get('ResourceStatus', '')
            if not status.endswith(FAILED_EVENT_SUFFIXES):
                continue
            reason = event.get('ResourceStatusReason', '')
            events.append(f"{event.get('LogicalResourceId', '?')} {status}: {reason}")
        return events

    def _read_template(self) -> str:
        path = Path(self.config.template_file)
        try:
            body = path.read_text(encoding="utf-8")
        except OSError as e:
            raise self._error(f"Cannot read template {path}: {e}") from e
        if len(body.encode("utf-8")) > MAX_TEMPLATE_BODY_BYTES:
            raise self._error(
                f"Template {path} exceeds {MAX_TEMPLATE_BODY_BYTES} bytes; "
                "upload it to S3 and deploy with a template URL"
            )
        return body

    def _parameters(self) -> List[Dict[str, str]]:
        return [
            {'ParameterKey': key, 'ParameterValue': value}
            for key, value in self.config.stack_parameters.items()
        ]

    def _waiter_config(self) -> Dict[str, int]:
        delay = self.config.stack_poll_seconds
        max_attempts = max(1, (self.config.stack_timeout_minutes * 60) // delay)
        return {'Delay': delay, 'MaxAttempts': max_attempts}

    def _wait(self, waiter_name: str) -> Dict[str, Any]:
        """Block until the stack reaches a terminal state for the current operation."""
        logger.info(f"⏳ Waiting for {waiter_name} on {self.stack_name} "
                    f"(timeout {self.config.stack_timeout_minutes} min)")
        try:
            self.cfn.get_waiter(waiter_name).wait(
                StackName=self.stack_name,
                WaiterConfig=self._waiter_config()
            )
        except WaiterError as e:
            stack = self.describe_stack() or {}
            status = stack.get('StackStatus', 'UNKNOWN')
            reason = stack.get('StackStatusReason', '')
            detail = f": {reason}" if reason else ""
            raise self._error(
                f"Stack {self.stack_name} did not complete ({status}){detail}",
                stack_status=status,
                events=self.recent_events()
            ) from e

        stack = self.describe_stack() or {}
        return stack

    def _create(self, template_body: str) -> str:
        logger.info(f"Stack {self.stack_name} does not exist - creating...")
        try:
            self.cfn.create_stack(
                StackName=self.stack_name,
                TemplateBody=template_body,
                Parameters=self._parameters(),
                Capabilities=['CAPABILITY_IAM']
            )
        except ClientError as e:
            raise self._error(f"Stack creation rejected: {e}") from e
        return "stack_create_complete"

    def _update(self, template_body: str) -> Optional[str]:
        logger.info(f"Stack {self.stack_name} exists - updating...")
        try:
            self.cfn.update_stack(
                StackName=self.stack_name,
                TemplateBody=template_body,
                Parameters=self._parameters(),
                Capabilities=['CAPABILITY_IAM']
            )
        except ClientError as e:
            if NO_UPDATES_MESSAGE in e.response.get('Error', {}).get('Message', ''):
                logger.info(f"No changes to deploy. Stack {self.stack_name} is up to date")
                return None
            raise self._error(f"Stack update rejected: {e}") from e
        return "stack_update_complete"

    def reconcile(self) -> StackOutcome:
        """Create the stack if absent, otherwise update it; wait in both cases.

        An update with nothing to change is a success with action "none".
        """
        template_body = self._read_template()

        existing = self.describe_stack()
        if existing is None:
            action = "create"
            waiter_name = self._create(template_body)
        else:
            status = existing.get('StackStatus', '')
            if status in UNRECOVERABLE_STATUSES:
                raise self._error(
                    f"Stack {self.stack_name} is in {status} and cannot be updated; delete it and re-run",
                    stack_status=status,
                    events=self.recent_events()
                )
            if status.endswith(BUSY_STATUS_SUFFIX):
                raise StackBusyError(
                    f"Stack {self.stack_name} is in {status}; wait for the current operation to finish",
                    stack_status=status,
                    hints=[self._busy_hint(), stack_hints(self.stack_name, self.config.region)[0]]
                )
            waiter_name = self._update(template_body)
            action = "update" if waiter_name else "none"

        if waiter_name:
            stack = self._wait(waiter_name)
        else:
            stack = existing

        outputs = {
            output['OutputKey']: output.get('OutputValue', '')
            for output in stack.get('Outputs', [])
        }
        outcome = StackOutcome(
            stack_name=self.stack_name,
            action=action,
            status=stack.get('StackStatus', 'UNKNOWN'),
            outputs=outputs
        )
        logger.info(f"✅ Stack {self.stack_name}: action={outcome.action} status={outcome.status}")
        return outcome
