"""
Unit tests for the read-only status queries.
"""
import logging

import boto3

from stack_deploy.aws.infrastructure.cloudformation import StackReconciler
from stack_deploy.aws.monitoring.status_monitor import DeploymentSummary, StatusMonitor
from tests.consts import (
    TEST_ENDPOINT_URL,
    TEST_IMAGE_MANIFEST,
    TEST_PIPELINE_URL,
    TEST_REGION,
    TEST_REPO_NAME,
    TEST_STACK_NAME,
)
from tests.fixtures.aws_fixtures import ScriptedEcs, make_clients, service_snapshot


class TestStatusMonitor:
    """Test outputs, service counts and image listing"""

    def test_report_outcome(self, mocked_aws, config):
        clients = make_clients()
        StackReconciler(clients, config).reconcile()

        summary = StatusMonitor(clients, config).report_outcome()

        assert summary.stack_name == TEST_STACK_NAME
        assert summary.endpoint_url == TEST_ENDPOINT_URL
        assert summary.pipeline_url == TEST_PIPELINE_URL

    def test_report_without_endpoint_warns(self, mocked_aws, config, caplog):
        with caplog.at_level(logging.WARNING):
            summary = StatusMonitor(make_clients(), config).report_outcome()

        assert summary.outputs == {}
        assert summary.endpoint_url is None
        assert "no LoadBalancerURL output" in caplog.text

    def test_service_status(self, config):
        ecs = ScriptedEcs([service_snapshot(desired=2, running=1, pending=1)])

        observation = StatusMonitor(make_clients(ecs=ecs), config).service_status()

        assert (observation.desired, observation.running, observation.pending) == (2, 1, 1)

    def test_list_images(self, mocked_aws, config):
        ecr = boto3.client("ecr", region_name=TEST_REGION)
        ecr.create_repository(repositoryName=TEST_REPO_NAME)
        for tag in ("latest", "initial"):
            ecr.put_image(repositoryName=TEST_REPO_NAME, imageManifest=TEST_IMAGE_MANIFEST, imageTag=tag)

        images = StatusMonitor(make_clients(), config).list_images()

        assert sorted(image["tag"] for image in images) == ["initial", "latest"]
        assert len({image["digest"] for image in images}) == 1

    def test_list_images_of_missing_repository(self, mocked_aws, config):
        assert StatusMonitor(make_clients(), config).list_images("nope") == []

    def test_useful_commands(self, config):
        summary = DeploymentSummary(TEST_STACK_NAME, TEST_REGION, {"PipelineURL": TEST_PIPELINE_URL})

        commands = StatusMonitor(make_clients(), config).useful_commands(summary)

        assert any("aws logs tail /ecs/demo-stack" in command for command in commands)
        assert any("--cluster demo-stack-cluster" in command for command in commands)
        assert any(TEST_PIPELINE_URL in command for command in commands)
        assert commands[-1].endswith("git push origin main")
