"""
Test doubles for the parts of a deployment moto cannot play:
the docker CLI, ECS service convergence and wall-clock time.
"""
import subprocess
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import ClientError

from stack_deploy.aws.utils.aws_clients import AWSClientManager
from tests.consts import TEST_IMAGE_MANIFEST, TEST_REGION


class FakeDocker:
    """Stands in for subprocess.run when the command is docker.

    Pushes are mirrored into the (mocked) ECR repository so that tag
    verification sees real image details. `fail_on` makes one docker
    sub-command exit non-zero.
    """

    def __init__(self, log: Optional[List] = None, fail_on: Optional[str] = None,
                 running: bool = True, mirror_pushes: bool = True):
        self.calls: List[List[str]] = []
        self.inputs: List[Any] = []
        self.log = log if log is not None else []
        self.fail_on = fail_on
        self.running = running
        self.mirror_pushes = mirror_pushes

    def __call__(self, cmd, check=False, **kwargs):
        self.calls.append(list(cmd))
        self.inputs.append(kwargs.get("input"))
        subcommand = cmd[1]
        self.log.append(("docker", subcommand, cmd[-1]))

        if subcommand == "info":
            return subprocess.CompletedProcess(cmd, 0 if self.running else 1)

        if subcommand == self.fail_on:
            if check:
                raise subprocess.CalledProcessError(1, cmd)
            return subprocess.CompletedProcess(cmd, 1)

        if subcommand == "push" and self.mirror_pushes:
            self._mirror_push(cmd[-1])

        return subprocess.CompletedProcess(cmd, 0)

    def _mirror_push(self, image: str) -> None:
        repository_uri, tag = image.rsplit(":", 1)
        repository_name = repository_uri.split("/", 1)[1]
        ecr = boto3.client("ecr", region_name=TEST_REGION)
        try:
            ecr.put_image(repositoryName=repository_name, imageManifest=TEST_IMAGE_MANIFEST, imageTag=tag)
        except ClientError as e:
            # Pushing an identical image again is a no-op for the registry
            if e.response["Error"]["Code"] != "ImageAlreadyExistsException":
                raise

    def subcommands(self) -> List[str]:
        return [call[1] for call in self.calls]


class FakeClock:
    """Monotonic clock advanced only by sleep()."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def service_snapshot(desired: int, running: int, pending: int = 0, status: str = "ACTIVE",
                     deployments: int = 1, rollout_state: str = "COMPLETED",
                     events: Optional[List[str]] = None) -> Dict[str, Any]:
    deployment_list = [{"status": "PRIMARY", "rolloutState": rollout_state,
                        "desiredCount": desired, "runningCount": running}]
    deployment_list += [{"status": "ACTIVE", "desiredCount": 0, "runningCount": 0}] * (deployments - 1)
    return {
        "serviceName": "demo-stack-service",
        "status": status,
        "desiredCount": desired,
        "runningCount": running,
        "pendingCount": pending,
        "deployments": deployment_list,
        "events": [{"message": message} for message in (events or [])],
    }


class FakeEcsService:
    """ECS client whose service starts one task per describe call until desired."""

    def __init__(self, log: Optional[List] = None, desired: int = 0, running: int = 0):
        self.log = log if log is not None else []
        self.desired = desired
        self.running = running
        self.update_calls: List[Dict[str, Any]] = []

    def update_service(self, cluster, service, desiredCount):
        self.update_calls.append({"cluster": cluster, "service": service, "desiredCount": desiredCount})
        self.log.append(("ecs", "update_service", desiredCount))
        self.desired = desiredCount
        return {"service": service_snapshot(self.desired, self.running)}

    def describe_services(self, cluster, services):
        pending = max(self.desired - self.running, 0)
        snapshot = service_snapshot(
            self.desired, self.running, pending=pending,
            rollout_state="COMPLETED" if pending == 0 else "IN_PROGRESS"
        )
        if self.running < self.desired:
            self.running += 1
        return {"services": [snapshot], "failures": []}


class ScriptedEcs:
    """ECS client replaying a fixed list of describe_services snapshots."""

    def __init__(self, snapshots: List[Dict[str, Any]]):
        self.snapshots = list(snapshots)
        self.describe_calls = 0
        self.update_calls: List[Dict[str, Any]] = []

    def update_service(self, cluster, service, desiredCount):
        self.update_calls.append({"cluster": cluster, "service": service, "desiredCount": desiredCount})
        return {}

    def describe_services(self, cluster, services):
        index = min(self.describe_calls, len(self.snapshots) - 1)
        self.describe_calls += 1
        snapshot = self.snapshots[index]
        if snapshot is None:
            return {"services": [], "failures": [{"arn": services[0], "reason": "MISSING"}]}
        return {"services": [snapshot], "failures": []}


def make_clients(**overrides) -> AWSClientManager:
    """Client manager with some services replaced by fakes or stubbed clients."""
    clients = AWSClientManager(region=TEST_REGION)
    clients._clients.update(overrides)
    return clients


class RecordingClients(AWSClientManager):
    """Client manager that refuses to create any client and remembers the attempt."""

    def __init__(self):
        super().__init__(region=TEST_REGION)
        self.requested: List[str] = []

    def has_credentials(self) -> bool:
        return True

    def get_client(self, service_name: str):
        self.requested.append(service_name)
        raise AssertionError(f"Unexpected AWS client request: {service_name}")


def client_error(code: str, message: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


class CloudFormationProxy:
    """Wraps a (moto) CloudFormation client and overrides selected calls."""

    def __init__(self, client, **overrides):
        self._client = client
        self._overrides = overrides

    def __getattr__(self, name):
        if name in self._overrides:
            return self._overrides[name]
        return getattr(self._client, name)


def unchanged_stack(client) -> CloudFormationProxy:
    """CloudFormation reporting that the submitted template changes nothing."""
    def update_stack(**kwargs):
        raise client_error("ValidationError", "No updates are to be performed.", "UpdateStack")
    return CloudFormationProxy(client, update_stack=update_stack)


def rejected_stack(client) -> CloudFormationProxy:
    """CloudFormation rejecting stack creation outright."""
    def create_stack(**kwargs):
        raise client_error("InsufficientCapabilitiesException", "Requires capabilities : [CAPABILITY_NAMED_IAM]",
                           "CreateStack")
    return CloudFormationProxy(client, create_stack=create_stack)
