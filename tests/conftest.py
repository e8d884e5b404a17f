import pytest
from moto import mock_aws

from stack_deploy.config.settings import DeploymentConfig, get_settings
from tests.consts import (
    TEST_DOCKERFILE,
    TEST_GITHUB_TOKEN,
    TEST_REGION,
    TEST_STACK_NAME,
    TEST_TEMPLATE,
)
from tests.fixtures.aws_fixtures import FakeClock, FakeDocker


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Fake credentials so nothing can reach a real account."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", TEST_REGION)
    monkeypatch.delenv("AWS_PROFILE", raising=False)
    monkeypatch.delenv("AWS_ENDPOINT_URL", raising=False)
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def mocked_aws():
    with mock_aws():
        yield


@pytest.fixture
def project_dir(tmp_path, monkeypatch):
    """A project checkout with a template and a Dockerfile."""
    (tmp_path / "cloudformation").mkdir()
    (tmp_path / "cloudformation" / "main.yaml").write_text(TEST_TEMPLATE)
    (tmp_path / "Dockerfile").write_text(TEST_DOCKERFILE)
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def config(project_dir) -> DeploymentConfig:
    return DeploymentConfig(
        stack_name=TEST_STACK_NAME,
        github_token=TEST_GITHUB_TOKEN,
        region=TEST_REGION,
        template_file=str(project_dir / "cloudformation" / "main.yaml"),
        dockerfile=str(project_dir / "Dockerfile"),
        build_context=str(project_dir),
        state_file=str(project_dir / ".deployment_state.json"),
        stack_poll_seconds=1,
        stack_timeout_minutes=1,
        service_poll_seconds=5,
        service_timeout_minutes=1,
    )


@pytest.fixture
def event_log():
    return []


@pytest.fixture
def docker(event_log):
    return FakeDocker(log=event_log)


@pytest.fixture
def clock():
    return FakeClock()

