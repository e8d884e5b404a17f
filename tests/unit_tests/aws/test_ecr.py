"""
Unit tests for building and publishing the initial image.

ECR is mocked with moto; the docker CLI is replaced by FakeDocker, which
uploads a manifest to the mocked repository for every push.
"""
import boto3
import pytest

from stack_deploy.aws.infrastructure.ecr import REPOSITORY_URI_OUTPUT, ArtifactPublisher, ArtifactRef
from stack_deploy.errors import PublishError
from tests.consts import TEST_ACCOUNT_ID, TEST_IMAGE_MANIFEST, TEST_REGION, TEST_REPO_NAME
from tests.fixtures.aws_fixtures import FakeDocker, make_clients

REGISTRY = f"{TEST_ACCOUNT_ID}.dkr.ecr.{TEST_REGION}.amazonaws.com"
REPOSITORY_URI = f"{REGISTRY}/{TEST_REPO_NAME}"


@pytest.fixture
def ecr_repository(mocked_aws):
    ecr = boto3.client("ecr", region_name=TEST_REGION)
    ecr.create_repository(repositoryName=TEST_REPO_NAME)
    return ecr


class TestRepositoryResolution:
    """Test where the repository URI comes from"""

    def test_prefers_stack_output(self, config):
        publisher = ArtifactPublisher(make_clients(), config)
        uri = "999999999999.dkr.ecr.us-east-1.amazonaws.com/from-stack"

        assert publisher.resolve_repository_uri({REPOSITORY_URI_OUTPUT: uri}) == uri

    @pytest.mark.parametrize("outputs", [None, {}, {REPOSITORY_URI_OUTPUT: "None"}])
    def test_falls_back_to_account_registry(self, mocked_aws, config, outputs):
        publisher = ArtifactPublisher(make_clients(), config)

        assert publisher.resolve_repository_uri(outputs) == REPOSITORY_URI

    def test_configured_account_skips_sts(self, config):
        config = config.model_copy(update={"aws_account_id": "111122223333"})
        clients = make_clients()
        clients._account_id = config.aws_account_id

        uri = ArtifactPublisher(clients, config).resolve_repository_uri({})

        assert uri == "111122223333.dkr.ecr.us-east-1.amazonaws.com/hello-world"
        assert "sts" not in clients._clients

    def test_artifact_ref_parts(self):
        artifact = ArtifactRef(repository_uri=REPOSITORY_URI, tags=("latest", "initial"))

        assert artifact.registry == REGISTRY
        assert artifact.repository_name == TEST_REPO_NAME
        assert artifact.image("initial") == f"{REPOSITORY_URI}:initial"


class TestPublish:
    """Test the build, tag, push and verify sequence"""

    def test_publish_pushes_both_tags_to_one_digest(self, ecr_repository, config, docker):
        artifact = ArtifactPublisher(make_clients(), config, run=docker).publish({})

        assert artifact.repository_uri == REPOSITORY_URI
        assert artifact.tags == ("latest", "initial")
        assert artifact.pushed == ["latest", "initial"]
        assert artifact.digest.startswith("sha256:")

        assert docker.subcommands() == ["login", "build", "tag", "tag", "push", "push"]
        assert docker.calls[2] == ["docker", "tag", "hello-world:latest", f"{REPOSITORY_URI}:latest"]
        assert docker.calls[3] == ["docker", "tag", "hello-world:latest", f"{REPOSITORY_URI}:initial"]

        images = ecr_repository.describe_images(repositoryName=TEST_REPO_NAME)["imageDetails"]
        assert len(images) == 1
        assert sorted(images[0]["imageTags"]) == ["initial", "latest"]
        assert images[0]["imageDigest"] == artifact.digest

    def test_login_passes_password_on_stdin(self, ecr_repository, config, docker):
        ArtifactPublisher(make_clients(), config, run=docker).login(REGISTRY)

        login = docker.calls[0]
        assert login[:2] == ["docker", "login"]
        assert "--password-stdin" in login
        assert login[-1] == REGISTRY
        # The password never appears on the command line
        assert docker.inputs[0]
        assert docker.inputs[0] not in login

    def test_build_uses_configured_dockerfile(self, config, docker):
        ArtifactPublisher(make_clients(), config, run=docker).build()

        assert docker.calls == [["docker", "build", "-t", "hello-world:latest",
                                 "-f", config.dockerfile, config.build_context]]

    def test_creates_missing_repository(self, mocked_aws, config, docker):
        artifact = ArtifactPublisher(make_clients(), config, run=docker).publish()

        ecr = boto3.client("ecr", region_name=TEST_REGION)
        repositories = ecr.describe_repositories()["repositories"]
        assert [r["repositoryName"] for r in repositories] == [TEST_REPO_NAME]
        assert artifact.digest

    @pytest.mark.parametrize("step", ["login", "build", "tag", "push"])
    def test_docker_failure_names_step(self, ecr_repository, config, step):
        docker = FakeDocker(fail_on=step)

        with pytest.raises(PublishError) as exc_info:
            ArtifactPublisher(make_clients(), config, run=docker).publish()

        assert exc_info.value.step == step
        assert exc_info.value.phase == "artifact"
        # Nothing runs after the failing command
        assert docker.subcommands()[-1] == step

    def test_docker_missing_from_path(self, ecr_repository, config):
        def no_docker(cmd, **kwargs):
            raise FileNotFoundError("docker")

        with pytest.raises(PublishError, match="Could not run docker"):
            ArtifactPublisher(make_clients(), config, run=no_docker).publish()


class TestVerify:
    """Test that pushed tags are checked in the registry"""

    def test_missing_tags(self, ecr_repository, config):
        ecr_repository.put_image(repositoryName=TEST_REPO_NAME, imageManifest=TEST_IMAGE_MANIFEST,
                                 imageTag="latest")
        artifact = ArtifactRef(repository_uri=REPOSITORY_URI, tags=("latest", "initial"))

        with pytest.raises(PublishError) as exc_info:
            ArtifactPublisher(make_clients(), config).verify(artifact)

        assert exc_info.value.step == "verify"

    def test_tags_on_different_images(self, ecr_repository, config):
        other_manifest = TEST_IMAGE_MANIFEST.replace('"size": 7023', '"size": 7024')
        ecr_repository.put_image(repositoryName=TEST_REPO_NAME, imageManifest=TEST_IMAGE_MANIFEST,
                                 imageTag="latest")
        ecr_repository.put_image(repositoryName=TEST_REPO_NAME, imageManifest=other_manifest,
                                 imageTag="initial")
        artifact = ArtifactRef(repository_uri=REPOSITORY_URI, tags=("latest", "initial"))

        with pytest.raises(PublishError, match="different images"):
            ArtifactPublisher(make_clients(), config).verify(artifact)

    def test_nothing_pushed(self, ecr_repository, config):
        docker = FakeDocker(mirror_pushes=False)

        with pytest.raises(PublishError) as exc_info:
            ArtifactPublisher(make_clients(), config, run=docker).publish()

        assert exc_info.value.step == "verify"
