from unittest.mock import Mock

import pytest

from deployctl.config import DeploySettings, DeploymentTarget
from deployctl.errors import ServiceStartFailed
from deployctl.health import HealthVerifier
from deployctl.session import LocalSession


class SandboxSession(LocalSession):
    """Local session that pretends the target has systemd and a free(1)."""

    def has_tool(self, tool):
        return True

    def memory_info(self):
        return "Mem: 1.0Gi"


class FakeSystemd:
    """Shared service state for the managers the engine creates per phase."""

    def __init__(self, active=False, start_ok=True, comes_up=True):
        self.active = active
        self.start_ok = start_ok
        self.comes_up = comes_up
        self.calls = []
        self.units = {}

    def __call__(self, session, name):
        return FakeService(self, session, name)


class FakeService:
    def __init__(self, systemd, session, name):
        self.systemd = systemd
        self.session = session
        self.name = name

    def install_unit(self, content):
        self.systemd.calls.append("install_unit")
        self.systemd.units[self.name] = content

    def reload(self):
        self.systemd.calls.append("reload")

    def is_active(self):
        return self.systemd.active

    def start(self):
        self.systemd.calls.append("start")
        if not self.systemd.start_ok:
            raise ServiceStartFailed(self.name, "code=exited, status=1/FAILURE")
        self.systemd.active = self.systemd.comes_up

    def stop(self):
        self.systemd.calls.append("stop")
        self.systemd.active = False

    def enable(self):
        self.systemd.calls.append("enable")

    def status(self):
        return "active (running)" if self.systemd.active else "inactive (dead)"

    def wait_active(self, wait):
        self.systemd.calls.append("wait_active")
        return self.systemd.active


def http_returning(*status_codes, headers=None):
    """Mock requests session whose GETs answer with the given status codes in turn."""
    http = Mock()
    responses = [Mock(status_code=code, headers=headers or {}) for code in status_codes]
    if len(responses) == 1:
        http.get.return_value = responses[0]
    else:
        http.get.side_effect = responses
    return http


@pytest.fixture
def target_path(tmp_path):
    return tmp_path / "opt" / "app"


@pytest.fixture
def release_dir(tmp_path):
    release = tmp_path / "release"
    release.mkdir()
    (release / "app").write_text("binary v2\n")
    return release


@pytest.fixture
def settings(tmp_path, target_path, release_dir):
    target = DeploymentTarget(
        host="localhost",
        user="deploy",
        path=str(target_path),
        port=8080,
        transport="local",
    )
    return DeploySettings(
        project="app",
        target=target,
        release_dir=str(release_dir),
        start_wait=0,
        health_max_attempts=3,
        health_interval=0,
        state_home=str(tmp_path / "state"),
    )


@pytest.fixture
def systemd():
    return FakeSystemd()


@pytest.fixture
def connector():
    def open_session(target, timeout=10.0, command_timeout=600.0):
        return SandboxSession(target, timeout, command_timeout)

    return Mock(side_effect=open_session)


@pytest.fixture
def healthy_http():
    return http_returning(200)


@pytest.fixture
def make_engine(settings, systemd, connector, healthy_http):
    """Build an engine wired to the sandbox session and fake systemd."""
    from deployctl.engine import DeploymentEngine

    def build(http=None, notifier=None, **overrides):
        engine_settings = settings.with_overrides(**overrides) if overrides else settings
        verifier = HealthVerifier(http=http or healthy_http, sleep=Mock())
        return DeploymentEngine(
            engine_settings,
            connector=connector,
            service_factory=systemd,
            verifier=verifier,
            notifier=notifier,
            run_log=False,
        )

    return build
