"""Tests for tinydock.orchestrator."""

import io
import os
import sys

import pytest

from tinydock.compose import parse_project
from tinydock.health import HEALTH_HEALTHY
from tinydock.image_builder import ImageBuilder, resolve_image
from tinydock.metadata import STATUS_EXITED, STATUS_RUNNING
from tinydock.orchestrator import (LABEL_PROJECT, LABEL_SERVICE,
                                   OrchestratorError, Project)

requires_posix = pytest.mark.skipif(
    sys.platform == "win32" or not os.path.exists("/bin/sh"),
    reason="Requires a POSIX system with /bin/sh",
)

pytestmark = requires_posix

HEALTHY = {"test": ["CMD", "true"], "interval": "100ms"}


@pytest.fixture
def base_image(context):
    """An empty image whose containers run host binaries."""
    (context / "Dockerfile").write_text("FROM scratch\nLABEL role=base\n")
    return ImageBuilder(quiet=True).build(str(context), tag="base")


@pytest.fixture
def make_project(tmp_path, base_image):
    """Factory for projects that are torn down after the test."""
    projects = []

    def factory(services, **extra):
        data = dict(extra, services=services)
        project = Project(parse_project(data, str(tmp_path), "demo"), output=io.StringIO())
        projects.append(project)
        return project

    yield factory
    for project in projects:
        project.down(remove_volumes=True, timeout=1)


def output_of(project):
    return project.output.getvalue().splitlines()


def service(command, **options):
    return dict(options, image="base", command=command)


class TestUp:
    """Test bringing projects up."""

    def test_dependency_order(self, make_project):
        """Test dependencies start first and healthy conditions are awaited."""
        project = make_project(
            {
                "web": service(
                    ["sleep", "30"], depends_on={"db": {"condition": "service_healthy"}}
                ),
                "db": service(["sleep", "30"], healthcheck=HEALTHY),
            }
        )
        containers = project.up()

        assert [c.labels[LABEL_SERVICE] for c in containers] == ["db", "web"]
        assert all(c.status == STATUS_RUNNING for c in containers)
        lines = output_of(project)
        assert lines.index("Container demo-db-1 Started") < lines.index("Container demo-web-1 Created")
        assert "Network demo_default Created" in lines

    def test_healthy_dependency_unblocks(self, make_project):
        """Test a dependent waits through failing health checks until its dependency is healthy."""
        project = make_project(
            {
                "db": service(
                    ["sh", "-c", "sleep 0.5; touch ready; sleep 30"],
                    healthcheck={"test": ["CMD", "test", "-e", "ready"], "interval": "100ms", "retries": 50},
                ),
                "web": service(["sleep", "30"], depends_on={"db": {"condition": "service_healthy"}}),
            }
        )
        project.up(timeout=10)

        db = project.service_containers("db")[0]
        web = project.service_containers("web")[0]
        assert db.health.status == HEALTH_HEALTHY
        assert any(entry["exit_code"] != 0 for entry in db.health.log)
        healthy_at = next(entry["end"] for entry in db.health.log if entry["exit_code"] == 0)
        assert web.started_at >= healthy_at

    def test_healthy_condition_without_healthcheck(self, make_project):
        """Test waiting for health of a service that has no healthcheck."""
        project = make_project(
            {
                "db": service(["sleep", "30"]),
                "web": service(["sleep", "30"], depends_on={"db": {"condition": "service_healthy"}}),
            }
        )
        with pytest.raises(OrchestratorError, match="db has no healthcheck configured"):
            project.up(timeout=10)
        assert project.service_containers("web") == []

    def test_labels_and_names(self, make_project):
        """Test containers carry project labels and predictable names."""
        project = make_project({"app": service(["sleep", "30"])})
        (config,) = project.up()
        assert config.name == "demo-app-1"
        assert config.labels[LABEL_PROJECT] == "demo"
        assert config.labels[LABEL_SERVICE] == "app"
        assert project.container.networks.get("demo_default").labels[LABEL_PROJECT] == "demo"

    def test_service_names_resolve(self, make_project):
        """Test services find each other by name through /etc/hosts."""
        project = make_project({"db": service(["sleep", "30"]), "web": service(["sleep", "30"])})
        project.up()
        web = project.service_containers("web")[0]
        with open(os.path.join(web.rootfs, "etc", "hosts")) as f:
            assert "demo-db-1 db" in f.read()

    def test_completed_successfully(self, make_project):
        """Test one-shot dependencies must exit 0 first."""
        project = make_project(
            {
                "migrate": service(["sh", "-c", "exit 0"]),
                "app": service(
                    ["sleep", "30"],
                    depends_on={"migrate": {"condition": "service_completed_successfully"}},
                ),
            }
        )
        project.up(timeout=10)
        assert project.service_containers("migrate")[0].status == STATUS_EXITED
        assert project.service_containers("app")[0].status == STATUS_RUNNING

    def test_failed_dependency(self, make_project):
        """Test a failed one-shot dependency aborts up."""
        project = make_project(
            {
                "migrate": service(["sh", "-c", "exit 2"]),
                "app": service(
                    ["sleep", "30"],
                    depends_on={"migrate": {"condition": "service_completed_successfully"}},
                ),
            }
        )
        with pytest.raises(OrchestratorError, match="did not complete successfully"):
            project.up(timeout=10)
        assert project.service_containers("app") == []

    def test_unhealthy_dependency(self, make_project):
        """Test an unhealthy dependency aborts up."""
        project = make_project(
            {
                "db": service(
                    ["sleep", "30"],
                    healthcheck={"test": ["CMD", "false"], "interval": "100ms", "retries": 1},
                ),
                "web": service(["sleep", "30"], depends_on={"db": {"condition": "service_healthy"}}),
            }
        )
        with pytest.raises(OrchestratorError, match="unhealthy"):
            project.up(timeout=10)

    def test_optional_dependency_failure_warns(self, make_project, capsys):
        """Test a failing optional dependency only warns."""
        project = make_project(
            {
                "cache": service(["sh", "-c", "exit 1"]),
                "web": service(
                    ["sleep", "30"],
                    depends_on={
                        "cache": {"condition": "service_completed_successfully", "required": False}
                    },
                ),
            }
        )
        project.up(timeout=10)
        assert "Warning" in capsys.readouterr().err
        assert project.service_containers("web")[0].status == STATUS_RUNNING

    def test_selected_services_pull_dependencies(self, make_project):
        """Test up of one service also starts what it depends on."""
        project = make_project(
            {
                "db": service(["sleep", "30"]),
                "web": service(["sleep", "30"], depends_on=["db"]),
                "worker": service(["sleep", "30"]),
            }
        )
        project.up(["web"])
        assert {c.labels[LABEL_SERVICE] for c in project.ps()} == {"db", "web"}

    def test_unknown_service(self, make_project):
        """Test selecting an undefined service."""
        project = make_project({"db": service(["sleep", "30"])})
        with pytest.raises(OrchestratorError, match="no such service"):
            project.up(["nope"])

    def test_missing_image(self, make_project):
        """Test services whose image does not exist."""
        project = make_project({"db": {"image": "not-built", "command": ["true"]}})
        with pytest.raises(OrchestratorError, match="not found"):
            project.up()

    def test_up_is_idempotent(self, make_project):
        """Test a second up keeps unchanged containers."""
        project = make_project({"app": service(["sleep", "30"])})
        (first,) = project.up()
        (second,) = project.up()
        assert first.id == second.id
        assert "Container demo-app-1 Running" in output_of(project)

    def test_changed_service_recreated(self, make_project):
        """Test a configuration change recreates the container."""
        project = make_project({"app": service(["sleep", "30"])})
        (first,) = project.up()

        changed = make_project({"app": service(["sleep", "30"], environment={"MODE": "new"})})
        (second,) = changed.up()
        assert first.id != second.id
        assert "Container demo-app-1 Recreate" in output_of(changed)
        assert second.env["MODE"] == "new"

    def test_build_section(self, make_project, tmp_path):
        """Test services with a build section are built and tagged."""
        app_dir = tmp_path / "app"
        app_dir.mkdir()
        (app_dir / "Dockerfile").write_text('FROM scratch\nCMD ["sleep", "30"]\n')
        project = make_project({"app": {"build": "./app"}})

        (config,) = project.up()
        assert resolve_image("demo-app:latest").id == config.image_id
        assert config.command == ["sleep", "30"]

    def test_named_volume(self, make_project):
        """Test project volumes are created with the project prefix."""
        project = make_project(
            {"app": service(["sh", "-c", "echo saved > data/file"], volumes=["store:/data"])},
            volumes={"store": {}},
        )
        project.up()
        volume = project.container.volumes.get("demo_store")
        assert volume.labels[LABEL_PROJECT] == "demo"


class TestDown:
    """Test tearing projects down."""

    def test_down_removes_everything(self, make_project):
        """Test containers and networks are removed, volumes kept."""
        project = make_project(
            {"app": service(["sleep", "30"], volumes=["store:/data"])},
            volumes={"store": {}},
        )
        project.up()
        project.down(timeout=1)

        assert project.ps() == []
        assert project.container.networks.get("demo_default") is None
        assert project.container.volumes.get("demo_store") is not None

        project.down(remove_volumes=True)
        assert project.container.volumes.get("demo_store") is None

    def test_down_remove_volumes(self, make_project):
        """Test down with volume removal deletes project volumes and their data only."""
        project = make_project(
            {"app": service(["sh", "-c", "echo saved > data/file"], volumes=["store:/data"])},
            volumes={"store": {}},
        )
        (config,) = project.up()
        project.container.wait(config.id, timeout=10)
        mountpoint = project.container.volumes.get("demo_store").mountpoint
        assert os.path.exists(os.path.join(mountpoint, "file"))
        project.container.volumes.create("unrelated")

        project.down(remove_volumes=True, timeout=1)

        assert project.ps() == []
        assert project.container.volumes.get("demo_store") is None
        assert not os.path.exists(mountpoint)
        assert project.container.volumes.get("unrelated") is not None
        assert "Volume demo_store Removed" in output_of(project)

    def test_stop_and_start(self, make_project):
        """Test stopping and starting existing containers."""
        project = make_project({"db": service(["sleep", "30"]), "web": service(["sleep", "30"], depends_on=["db"])})
        project.up()

        project.stop(timeout=1)
        assert all(c.status == STATUS_EXITED for c in project.ps())
        lines = output_of(project)
        assert lines.index("Container demo-web-1 Stopped") < lines.index("Container demo-db-1 Stopped")

        project.start(["web"])
        assert all(c.status == STATUS_RUNNING for c in project.ps())

    def test_start_without_up(self, make_project):
        """Test start requires existing containers."""
        project = make_project({"db": service(["sleep", "30"])})
        with pytest.raises(OrchestratorError, match="run up first"):
            project.start()


class TestSupervision:
    """Test restart policies and supervision."""

    def test_on_failure_limit(self, make_project):
        """Test on-failure restarts up to its limit."""
        project = make_project({"job": service(["sh", "-c", "exit 1"], restart="on-failure:2")})
        project.up()
        project.supervise(poll_interval=0.05)

        (config,) = project.ps()
        assert config.status == STATUS_EXITED
        assert config.restart_count == 2
        assert config.exit_code == 1

    def test_no_restart_on_success(self, make_project):
        """Test on-failure leaves successful exits alone."""
        project = make_project({"job": service(["true"], restart="on-failure")})
        project.up()
        project.supervise(poll_interval=0.05)
        assert project.ps()[0].restart_count == 0

    @pytest.mark.parametrize("policy", ["always", "unless-stopped"])
    def test_restart_after_success_with_backoff(self, make_project, policy):
        """Test always and unless-stopped restart clean exits after a doubling delay."""
        project = make_project({"job": service(["true"], restart=policy)})
        (config,) = project.up()

        project.container.wait(config.id, timeout=10)
        finished = project.container.refresh(config.id).finished_at
        assert project.supervise_once(now=finished + 0.05) is True
        assert project.ps()[0].restart_count == 0
        assert project.supervise_once(now=finished + 0.15) is True
        assert project.ps()[0].restart_count == 1

        # Second restart waits 0.2s
        project.container.wait(config.id, timeout=10)
        finished = project.container.refresh(config.id).finished_at
        assert project.supervise_once(now=finished + 0.15) is True
        assert project.ps()[0].restart_count == 1
        assert project.supervise_once(now=finished + 0.25) is True
        assert project.ps()[0].restart_count == 2
        assert project.ps()[0].started_at >= finished

    def test_stopped_containers_not_restarted(self, make_project):
        """Test user stops override the always policy."""
        project = make_project({"app": service(["sleep", "30"], restart="always")})
        project.up()
        project.stop(timeout=1)
        assert project.supervise_once() is False

    def test_logs_prefixed(self, make_project):
        """Test project logs are prefixed by service name."""
        project = make_project({"hello": service(["sh", "-c", "echo hi there"])})
        project.up()
        project.supervise(poll_interval=0.05)

        output = io.StringIO()
        project.logs(output=output)
        assert output.getvalue() == "hello | hi there\n"
