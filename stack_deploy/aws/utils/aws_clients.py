"""AWS utility functions and client management."""
import logging
from typing import Any, Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError

logger = logging.getLogger(__name__)


class AWSClientManager:
    """Creates and caches AWS service clients for one deployment.

    One manager is built per DeploymentConfig, so region and profile come
    from the run rather than from process-wide settings. Clients are created
    lazily; constructing the manager makes no network call.
    """

    def __init__(self, region: str, profile: Optional[str] = None,
                 endpoint_url: Optional[str] = None,
                 account_id: Optional[str] = None):
        self.region = region
        self.profile = profile
        self.endpoint_url = endpoint_url
        self._account_id = account_id
        self._session = None
        self._clients: Dict[str, Any] = {}

        logger.debug(f"AWSClientManager region={region} profile={profile} endpoint={endpoint_url}")

    @classmethod
    def from_config(cls, config) -> "AWSClientManager":
        """Build a manager from a DeploymentConfig."""
        return cls(
            region=config.region,
            profile=config.aws_profile,
            endpoint_url=config.aws_endpoint_url,
            account_id=config.aws_account_id,
        )

    @property
    def session(self) -> boto3.Session:
        if self._session is None:
            if self.profile:
                self._session = boto3.Session(profile_name=self.profile, region_name=self.region)
            else:
                self._session = boto3.Session(region_name=self.region)
        return self._session

    def get_client(self, service_name: str) -> Any:
        """Get or create an AWS service client."""
        if service_name in self._clients:
            return self._clients[service_name]

        client_kwargs = {'region_name': self.region}
        if self.endpoint_url:
            client_kwargs['endpoint_url'] = self.endpoint_url

        try:
            client = self.session.client(service_name, **client_kwargs)
        except Exception as e:
            logger.error(f"Error creating {service_name} client: {str(e)}")
            raise

        self._clients[service_name] = client
        logger.debug(f"Created {service_name} client")
        return client

    def has_credentials(self) -> bool:
        """Check the local credential chain; no API call is made."""
        try:
            return self.session.get_credentials() is not None
        except BotoCoreError as e:
            logger.warning(f"Could not resolve AWS credentials: {e}")
            return False

    def get_account_id(self) -> str:
        """Get the AWS account ID, asking STS once if it was not configured."""
        if not self._account_id:
            self._account_id = self.sts.get_caller_identity()['Account']
            logger.info(f"Resolved AWS account ID: {self._account_id}")
        return self._account_id

    def registry_host(self) -> str:
        """ECR registry host for the current account and region."""
        return f"{self.get_account_id()}.dkr.ecr.{self.region}.amazonaws.com"

    # Convenience accessors for the services a deployment touches

    @property
    def cloudformation(self):
        """Get the CloudFormation client."""
        return self.get_client('cloudformation')

    @property
    def ecs(self):
        """Get the ECS client."""
        return self.get_client('ecs')

    @property
    def ecr(self):
        """Get the ECR client."""
        return self.get_client('ecr')

    @property
    def sts(self):
        """Get the STS client."""
        return self.get_client('sts')
