"""Tests for tinydock.compose."""

import os

import pytest
import yaml

from tinydock.compose import (ComposeError, PortMapping, find_compose_file,
                              interpolate, load_env_file, load_project,
                              parse_depends_on, parse_port, parse_project,
                              parse_volume_mount, ports_overlap, project_to_dict)


def write_compose(directory, data, name="compose.yaml"):
    path = directory / name
    path.write_text(yaml.safe_dump(data))
    return path


class TestParsePort:
    """Test port syntax."""

    @pytest.mark.parametrize(
        "spec,expected",
        [
            ("80", PortMapping(target=80)),
            (80, PortMapping(target=80)),
            ("8080:80", PortMapping(target=80, published=8080)),
            ("127.0.0.1:8080:80", PortMapping(target=80, published=8080, host_ip="127.0.0.1")),
            ("53:53/udp", PortMapping(target=53, published=53, protocol="udp")),
            ({"target": 80, "published": 8000}, PortMapping(target=80, published=8000)),
        ],
    )
    def test_valid(self, spec, expected):
        """Test accepted port forms."""
        assert parse_port(spec) == expected

    @pytest.mark.parametrize("spec", ["http", "70000", "80/sctp", "1:2:3:4", True])
    def test_invalid(self, spec):
        """Test rejected port forms."""
        with pytest.raises(ComposeError):
            parse_port(spec)

    def test_str(self):
        """Test the short syntax is reproduced."""
        assert str(parse_port("127.0.0.1:8080:80/udp")) == "127.0.0.1:8080:80/udp"
        assert str(parse_port("80")) == "80"

    @pytest.mark.parametrize(
        "a,b,overlap",
        [
            ("8080:80", "8080:81", True),
            ("0.0.0.0:8080:80", "127.0.0.1:8080:80", True),
            ("127.0.0.1:8080:80", "127.0.0.1:8080:90", True),
            ("127.0.0.1:8080:80", "10.0.0.5:8080:80", False),
            ("8080:80", "8080:80/udp", False),
            ("8080:80", "9090:80", False),
            ("80", "80", False),
        ],
    )
    def test_overlap(self, a, b, overlap):
        """Test when two mappings claim the same host port."""
        assert ports_overlap(parse_port(a), parse_port(b)) is overlap
        assert ports_overlap(parse_port(b), parse_port(a)) is overlap


class TestParseVolumeMount:
    """Test volume syntax."""

    def test_named_volume(self, tmp_path):
        """Test a bare name is a named volume."""
        mount = parse_volume_mount("data:/var/lib/data:ro", str(tmp_path))
        assert (mount.type, mount.source, mount.target, mount.read_only) == (
            "volume",
            "data",
            "/var/lib/data",
            True,
        )

    def test_bind_mount_relative(self, tmp_path):
        """Test relative paths are bind mounts resolved against the project."""
        mount = parse_volume_mount("./src:/app", str(tmp_path))
        assert mount.type == "bind"
        assert mount.source == str(tmp_path / "src")

    def test_anonymous(self, tmp_path):
        """Test a target alone is an anonymous volume."""
        mount = parse_volume_mount("/cache", str(tmp_path))
        assert mount.type == "volume"
        assert mount.source == ""

    def test_long_syntax(self, tmp_path):
        """Test the mapping form."""
        mount = parse_volume_mount({"type": "bind", "source": "conf", "target": "/etc/app"}, str(tmp_path))
        assert mount.source == str(tmp_path / "conf")

    @pytest.mark.parametrize("spec", ["data:relative", "a:/b:xx", "a:b:c:d", 5])
    def test_invalid(self, tmp_path, spec):
        """Test rejected volume forms."""
        with pytest.raises(ComposeError):
            parse_volume_mount(spec, str(tmp_path))


class TestParseDependsOn:
    """Test depends_on forms."""

    def test_list(self):
        """Test the short form defaults to service_started."""
        deps = parse_depends_on(["db"])
        assert deps[0].service == "db"
        assert deps[0].condition == "service_started"
        assert deps[0].required

    def test_mapping(self):
        """Test conditions and required flags."""
        deps = parse_depends_on({"db": {"condition": "service_healthy", "required": False}})
        assert deps[0].condition == "service_healthy"
        assert not deps[0].required

    def test_invalid_condition(self):
        """Test unknown conditions are rejected."""
        with pytest.raises(ComposeError):
            parse_depends_on({"db": {"condition": "service_ready"}})

    @pytest.mark.parametrize("options", [True, "service_healthy", ["service_healthy"]])
    def test_entry_must_be_mapping(self, options):
        """Test non-mapping options for a dependency are rejected."""
        with pytest.raises(ComposeError, match="depends_on entry for db must be a mapping"):
            parse_depends_on({"db": options})


class TestParseProject:
    """Test whole-project parsing and validation."""

    def test_services_and_defaults(self, tmp_path):
        """Test service normalisation and the default network."""
        data = {
            "services": {
                "db": {"image": "db-image", "environment": {"MODE": "x", "DEBUG": True}},
                "web": {
                    "build": "./web",
                    "command": "serve --port 80",
                    "depends_on": ["db"],
                    "ports": ["8080:80"],
                },
            }
        }
        project = parse_project(data, str(tmp_path), "demo")
        web = project.services["web"]
        assert web.command == ["serve", "--port", "80"]
        assert web.build.context == str(tmp_path / "web")
        assert web.networks == {"default": []}
        assert project.networks["default"].name == "demo_default"
        assert project.services["db"].environment == {"MODE": "x", "DEBUG": "true"}
        assert project.graph().order() == ["db", "web"]

    def test_environment_list_from_variables(self, tmp_path):
        """Test bare keys in the list form take their value from the environment."""
        data = {"services": {"app": {"image": "x", "environment": ["A=1", "FROM_ENV", "MISSING"]}}}
        project = parse_project(data, str(tmp_path), "demo", {"FROM_ENV": "yes"})
        assert project.services["app"].environment == {"A": "1", "FROM_ENV": "yes"}

    def test_resources_named_by_project(self, tmp_path):
        """Test volumes and networks are prefixed unless external or named."""
        data = {
            "services": {"app": {"image": "x", "volumes": ["data:/data"], "networks": ["back"]}},
            "volumes": {"data": None, "shared": {"external": True}},
            "networks": {"back": {"name": "custom-net"}},
        }
        project = parse_project(data, str(tmp_path), "demo")
        assert project.volumes["data"].name == "demo_data"
        assert project.volumes["shared"].name == "shared"
        assert project.networks["back"].name == "custom-net"

    def test_missing_image_and_build(self, tmp_path):
        """Test a service needs an image or a build section."""
        with pytest.raises(ComposeError, match="neither an image nor a build"):
            parse_project({"services": {"app": {}}}, str(tmp_path), "demo")

    def test_no_services(self, tmp_path):
        """Test an empty project is rejected."""
        with pytest.raises(ComposeError):
            parse_project({"services": {}}, str(tmp_path), "demo")

    def test_undefined_dependency(self, tmp_path):
        """Test dependencies must be defined services."""
        data = {"services": {"web": {"image": "x", "depends_on": ["db"]}}}
        with pytest.raises(ComposeError, match="undefined service db"):
            parse_project(data, str(tmp_path), "demo")

    def test_undefined_volume(self, tmp_path):
        """Test named volumes must be declared."""
        data = {"services": {"web": {"image": "x", "volumes": ["data:/data"]}}}
        with pytest.raises(ComposeError, match="undefined volume data"):
            parse_project(data, str(tmp_path), "demo")

    def test_undefined_network(self, tmp_path):
        """Test networks must be declared."""
        data = {"services": {"web": {"image": "x", "networks": ["back"]}}}
        with pytest.raises(ComposeError, match="undefined network back"):
            parse_project(data, str(tmp_path), "demo")

    def test_cycle(self, tmp_path):
        """Test dependency cycles are rejected."""
        data = {
            "services": {
                "a": {"image": "x", "depends_on": ["b"]},
                "b": {"image": "x", "depends_on": ["a"]},
            }
        }
        with pytest.raises(ComposeError, match="circular dependency"):
            parse_project(data, str(tmp_path), "demo")

    def test_duplicate_published_port(self, tmp_path):
        """Test two services cannot publish the same host port."""
        data = {
            "services": {
                "a": {"image": "x", "ports": ["8080:80"]},
                "b": {"image": "x", "ports": ["8080:81"]},
            }
        }
        with pytest.raises(ComposeError, match="both publish port 8080"):
            parse_project(data, str(tmp_path), "demo")

    def test_published_port_on_all_addresses_overlaps(self, tmp_path):
        """Test a port bound on every address collides with the same port on one address."""
        data = {
            "services": {
                "a": {"image": "x", "ports": ["8080:80"]},
                "b": {"image": "x", "ports": ["127.0.0.1:8080:80"]},
            }
        }
        with pytest.raises(ComposeError, match="services a and b both publish port 8080/tcp"):
            parse_project(data, str(tmp_path), "demo")

    def test_published_port_distinct_addresses(self, tmp_path):
        """Test the same port on two specific addresses, or two protocols, is allowed."""
        data = {
            "services": {
                "a": {"image": "x", "ports": ["127.0.0.1:8080:80", "8080:80/udp"]},
                "b": {"image": "x", "ports": ["10.1.2.3:8080:80"]},
            }
        }
        project = parse_project(data, str(tmp_path), "demo")
        assert len(project.services["a"].ports) == 2

    def test_invalid_restart(self, tmp_path):
        """Test unknown restart policies are rejected."""
        data = {"services": {"a": {"image": "x", "restart": "sometimes"}}}
        with pytest.raises(ComposeError):
            parse_project(data, str(tmp_path), "demo")

    def test_unknown_key_warns(self, tmp_path, capsys):
        """Test unsupported keys only produce a warning."""
        data = {"services": {"a": {"image": "x", "deploy": {"replicas": 2}}}}
        parse_project(data, str(tmp_path), "demo")
        assert "unsupported key 'deploy'" in capsys.readouterr().err

    def test_healthcheck(self, tmp_path):
        """Test service healthchecks are normalised."""
        data = {
            "services": {
                "a": {"image": "x", "healthcheck": {"test": "true", "interval": "2s", "retries": 5}}
            }
        }
        check = parse_project(data, str(tmp_path), "demo").services["a"].healthcheck
        assert check.test == ["CMD-SHELL", "true"]
        assert check.interval == 2.0
        assert check.retries == 5


class TestLoadProject:
    """Test loading compose files from disk."""

    def test_find_compose_file(self, tmp_path):
        """Test compose.yaml is preferred over docker-compose.yml."""
        (tmp_path / "docker-compose.yml").write_text("services: {}")
        (tmp_path / "compose.yaml").write_text("services: {}")
        assert find_compose_file(str(tmp_path)) == str(tmp_path / "compose.yaml")

    def test_load_from_directory(self, tmp_path):
        """Test project name and file discovery from a directory."""
        project_dir = tmp_path / "My-App"
        project_dir.mkdir()
        write_compose(project_dir, {"services": {"web": {"image": "x"}}})
        project = load_project(str(project_dir), environ={})
        assert project.name == "my-app"
        assert project.compose_file == str(project_dir / "compose.yaml")

    def test_interpolation_and_env_file(self, tmp_path):
        """Test ${VAR} interpolation from .env and the environment."""
        (tmp_path / ".env").write_text("# comment\nTAG=1.0\nexport PORT=8000\n")
        write_compose(
            tmp_path,
            {"name": "demo", "services": {"web": {"image": "web:${TAG}", "ports": ["${PORT}:80"]}}},
        )
        project = load_project(str(tmp_path / "compose.yaml"), environ={"TAG": "2.0"})
        assert project.name == "demo"
        assert project.services["web"].image == "web:2.0"
        assert project.services["web"].ports[0].published == 8000

    def test_project_name_override(self, tmp_path):
        """Test an explicit project name wins."""
        write_compose(tmp_path, {"name": "demo", "services": {"web": {"image": "x"}}})
        project = load_project(str(tmp_path), project_name="other", environ={"COMPOSE_PROJECT_NAME": "env"})
        assert project.name == "other"

    def test_missing_file(self, tmp_path):
        """Test a directory without a compose file."""
        with pytest.raises(ComposeError, match="no compose file found"):
            load_project(str(tmp_path), environ={})

    def test_invalid_yaml(self, tmp_path):
        """Test YAML syntax errors are reported."""
        (tmp_path / "compose.yaml").write_text("services: [unclosed")
        with pytest.raises(ComposeError, match="invalid YAML"):
            load_project(str(tmp_path), environ={})

    def test_unquoted_short_port_syntax(self, tmp_path):
        """Test unquoted HOST:CONTAINER ports are not read as base-60 numbers."""
        (tmp_path / "compose.yaml").write_text(
            "services:\n"
            "  ssh:\n"
            "    image: x\n"
            "    ports:\n"
            "      - 22:22\n"
            "      - 8080\n"
            "    environment:\n"
            "      WINDOW: 1:30\n"
            "      RATIO: 0.5\n"
            "    stop_grace_period: 3\n"
        )
        service = load_project(str(tmp_path), environ={}).services["ssh"]
        assert service.ports == [PortMapping(target=22, published=22), PortMapping(target=8080)]
        assert service.environment == {"WINDOW": "1:30", "RATIO": "0.5"}
        assert service.stop_grace_period == 3

    def test_env_file_required(self, tmp_path):
        """Test missing env files."""
        with pytest.raises(ComposeError):
            load_env_file(str(tmp_path / "missing.env"))
        assert load_env_file(str(tmp_path / "missing.env"), required=False) == {}

    def test_env_file_comments_and_quotes(self, tmp_path):
        """Test inline comments, escapes and multi-line quoted values."""
        path = tmp_path / "app.env"
        path.write_text(
            'TAG=1.0 # release tag\n'
            'GREETING="hello\\nworld"\n'
            'CERT="line one\nline two"\n'
            'EMPTY=\n'
        )
        assert load_env_file(str(path)) == {
            "TAG": "1.0",
            "GREETING": "hello\nworld",
            "CERT": "line one\nline two",
            "EMPTY": "",
        }

    def test_env_file_inline_comment_in_interpolation(self, tmp_path):
        """Test .env comments do not leak into interpolated values."""
        (tmp_path / ".env").write_text("TAG=1.0 # release tag\n")
        write_compose(tmp_path, {"services": {"web": {"image": "app:${TAG}"}}})
        project = load_project(str(tmp_path), environ={})
        assert project.services["web"].image == "app:1.0"

    def test_service_env_file(self, tmp_path):
        """Test env_file values are overridden by environment."""
        (tmp_path / "app.env").write_text("A=from-file\nB='quoted'\n")
        write_compose(
            tmp_path,
            {"services": {"app": {"image": "x", "env_file": "app.env", "environment": {"A": "inline"}}}},
        )
        project = load_project(str(tmp_path), environ={})
        assert project.services["app"].environment == {"A": "inline", "B": "quoted"}

    def test_interpolate_error(self):
        """Test failed required variables surface as ComposeError."""
        with pytest.raises(ComposeError):
            interpolate({"image": "${TAG:?set TAG}"}, {})


class TestProjectToDict:
    """Test the normalised representation."""

    def test_round_trips_through_yaml(self, tmp_path):
        """Test the normalised output is plain YAML."""
        data = {
            "services": {
                "db": {"image": "db", "healthcheck": {"test": ["CMD", "true"]}},
                "web": {"image": "web", "depends_on": {"db": {"condition": "service_healthy"}}},
            }
        }
        project = parse_project(data, str(tmp_path), "demo")
        dumped = yaml.safe_load(yaml.safe_dump(project_to_dict(project)))
        assert dumped["name"] == "demo"
        assert dumped["services"]["web"]["depends_on"]["db"]["condition"] == "service_healthy"
        assert dumped["networks"]["default"]["name"] == "demo_default"
        assert os.path.isabs(str(tmp_path))
