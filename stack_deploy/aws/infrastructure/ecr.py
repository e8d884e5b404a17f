"""Build the service image locally and publish it to ECR under two tags."""
import base64
import logging
import subprocess
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from botocore.exceptions import ClientError

from stack_deploy.aws.utils.aws_clients import AWSClientManager
from stack_deploy.config.settings import DeploymentConfig
from stack_deploy.errors import PublishError

logger = logging.getLogger(__name__)

REPOSITORY_URI_OUTPUT = "ECRRepositoryURI"


@dataclass
class ArtifactRef:
    """A published image: one repository, several tags, one digest."""
    repository_uri: str
    tags: Tuple[str, ...]
    digest: Optional[str] = None
    pushed: List[str] = field(default_factory=list)

    @property
    def registry(self) -> str:
        return self.repository_uri.split('/', 1)[0]

    @property
    def repository_name(self) -> str:
        return self.repository_uri.split('/', 1)[1]

    def image(self, tag: str) -> str:
        return f"{self.repository_uri}:{tag}"


class ArtifactPublisher:
    """Builds, tags and pushes the image with the docker CLI.

    `run` is injectable so tests can record docker invocations instead of
    executing them.
    """

    def __init__(self, clients: AWSClientManager, config: DeploymentConfig,
                 run: Callable[..., subprocess.CompletedProcess] = subprocess.run):
        self.clients = clients
        self.config = config
        self.run = run

    @property
    def ecr(self):
        return self.clients.ecr

    def _docker(self, step: str, args: List[str], **kwargs) -> subprocess.CompletedProcess:
        """Run one docker command, translating failures into PublishError."""
        logger.debug(f"Running: docker {' '.join(args)}")
        try:
            return self.run(["docker", *args], check=True, **kwargs)
        except subprocess.CalledProcessError as e:
            raise PublishError(f"docker {args[0]} failed with exit code {e.returncode}",
                               step=step) from e
        except OSError as e:
            raise PublishError(f"Could not run docker: {e}", step=step) from e

    def resolve_repository_uri(self, stack_outputs: Optional[Mapping[str, str]] = None) -> str:
        """Prefer the URI exported by the stack; otherwise derive it from the account."""
        discovered = (stack_outputs or {}).get(REPOSITORY_URI_OUTPUT)
        if discovered and discovered != "None":
            logger.info(f"Using ECR repository from stack outputs: {discovered}")
            return discovered

        logger.warning("Could not get ECR URI from stack outputs, constructing manually...")
        try:
            registry = self.clients.registry_host()
        except ClientError as e:
            raise PublishError(f"Could not resolve AWS account ID: {e}", step="resolve") from e
        return f"{registry}/{self.config.ecr_repo_name}"

    def ensure_repository(self, repository_name: str) -> None:
        """Create the repository if the stack did not."""
        try:
            self.ecr.describe_repositories(repositoryNames=[repository_name])
            return
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') != 'RepositoryNotFoundException':
                raise PublishError(f"Could not check ECR repository: {e}", step="repository") from e

        logger.warning(f"ECR repository '{repository_name}' does not exist - creating")
        try:
            self.ecr.create_repository(
                repositoryName=repository_name,
                imageScanningConfiguration={'scanOnPush': True},
                tags=[{'Key': 'EnvironmentName', 'Value': self.config.stack_name}]
            )
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') != 'RepositoryAlreadyExistsException':
                raise PublishError(f"Could not create ECR repository: {e}", step="repository") from e

    def login(self, registry: str) -> None:
        """Authenticate the docker CLI against the ECR registry."""
        try:
            token_response = self.ecr.get_authorization_token()
        except ClientError as e:
            raise PublishError(f"Could not get ECR authorization token: {e}", step="login") from e

        token_data = token_response['authorizationData'][0]
        token = base64.b64decode(token_data['authorizationToken']).decode('utf-8')
        username, password = token.split(':', 1)

        self._docker("login", ["login", "--username", username, "--password-stdin", registry],
                     input=password, text=True, stdout=subprocess.DEVNULL)
        logger.info(f"✅ Logged in to ECR registry {registry}")

    def build(self) -> str:
        """Build the local image and return its tag."""
        image = self.config.local_image
        self._docker("build", ["build", "-t", image, "-f", self.config.dockerfile,
                               self.config.build_context])
        logger.info(f"✅ Docker image built: {image}")
        return image

    def tag_and_push(self, artifact: ArtifactRef, local_image: str) -> None:
        for tag in artifact.tags:
            self._docker("tag", ["tag", local_image, artifact.image(tag)])
        for tag in artifact.tags:
            self._docker("push", ["push", artifact.image(tag)])
            artifact.pushed.append(tag)
            logger.info(f"✅ Pushed {artifact.image(tag)}")

    def verify(self, artifact: ArtifactRef) -> str:
        """Check every tag exists in ECR and all of them point at the same digest."""
        try:
            response = self.ecr.describe_images(
                repositoryName=artifact.repository_name,
                imageIds=[{'imageTag': tag} for tag in artifact.tags]
            )
        except ClientError as e:
            raise PublishError(f"Pushed image not found in ECR: {e}", step="verify") from e

        digests: Dict[str, str] = {}
        for detail in response.get('imageDetails', []):
            for tag in detail.get('imageTags', []):
                digests[tag] = detail['imageDigest']

        missing = [tag for tag in artifact.tags if tag not in digests]
        if missing:
            raise PublishError(f"Tags missing from ECR after push: {', '.join(missing)}", step="verify")

        distinct = {digests[tag] for tag in artifact.tags}
        if len(distinct) != 1:
            raise PublishError(f"Tags {', '.join(artifact.tags)} point at different images", step="verify")

        digest = distinct.pop()
        logger.info(f"✅ Verified tags {', '.join(artifact.tags)} -> {digest}")
        return digest

    def publish(self, stack_outputs: Optional[Mapping[str, str]] = None) -> ArtifactRef:
        """Build locally, push under every configured tag and verify the result."""
        uri = self.resolve_repository_uri(stack_outputs)
        artifact = ArtifactRef(repository_uri=uri, tags=tuple(self.config.image_tags))

        self.ensure_repository(artifact.repository_name)
        self.login(artifact.registry)
        local_image = self.build()
        self.tag_and_push(artifact, local_image)
        artifact.digest = self.verify(artifact)
        return artifact
