"""
Tests for configuration loading: schema, structure checks and discovery.
"""

import textwrap
from pathlib import Path

import pytest

from infra_deploy.config import Config, ModuleDiscovery
from infra_deploy.state.models import Module
from infra_deploy.utils.errors import ConfigurationError, ConfigValidationError


def _config_data():
    return {
        "project": {"name": "acme-infra"},
        "backend": {"type": "memory"},
        "environments": {
            "dev": {
                "modules": [
                    {"path": "vpc", "source": "vpc"},
                    {
                        "path": "compute",
                        "dependencies": [{
                            "module": "vpc",
                            "outputs": ["subnet_id"],
                            "mock_outputs": {"subnet_id": "subnet-000000"},
                        }],
                    },
                ]
            },
            "prod": {"state_prefix": "state/production", "modules": [{"path": "vpc"}]},
        },
    }


def _locs(error):
    return [tuple(e["loc"]) for e in error.errors]


def _messages(error):
    return " ".join(e["msg"] for e in error.errors)


# ═══════════════════════════════════════════════════════════════════
#  Parsing
# ═══════════════════════════════════════════════════════════════════


class TestFromDict:
    """Building configuration from parsed data."""

    def test_valid_config(self):
        config = Config.from_dict(_config_data())

        assert config.project.name == "acme-infra"
        assert config.project.live_root == "infrastructure-live"
        assert config.backend.type == "memory"
        assert config.locking.ttl == 900.0
        assert config.execution.fail_fast is True
        assert list(config.environments) == ["dev", "prod"]

    def test_environment_defaults(self):
        config = Config.from_dict(_config_data())

        dev = config.get_environment("dev")
        assert dev.state_prefix == "state/dev"
        assert [m.path for m in dev.modules] == ["vpc", "compute"]
        assert all(m.environment == "dev" for m in dev.modules)
        assert config.get_environment("prod").state_prefix == "state/production"

    def test_get_module(self):
        config = Config.from_dict(_config_data())
        compute = config.get_module("dev", "compute")
        assert compute.dependencies[0].mock_outputs == {"subnet_id": "subnet-000000"}
        assert config.get_module("dev", "nope") is None

    def test_unknown_environment(self):
        config = Config.from_dict(_config_data())
        with pytest.raises(ConfigurationError, match="Available environments: dev, prod"):
            config.get_environment("qa")

    def test_to_dict(self):
        result = Config.from_dict(_config_data()).to_dict()
        assert result["project"]["name"] == "acme-infra"
        assert result["environments"]["dev"]["modules"][0]["path"] == "vpc"


class TestValidation:
    """Errors are collected and reported together."""

    def test_missing_required_sections(self):
        with pytest.raises(ConfigValidationError) as exc:
            Config.from_dict({})
        assert ("project",) in _locs(exc.value)
        assert ("environments",) in _locs(exc.value)
        assert "2 error(s)" in exc.value.message

    def test_empty_environments(self):
        data = _config_data()
        data["environments"] = {}
        with pytest.raises(ConfigValidationError, match="non-empty"):
            Config.from_dict(data)

    def test_invalid_sections(self):
        data = _config_data()
        data["project"]["name"] = "Bad Name"
        data["locking"] = {"ttl": 0}
        data["backend"] = {"type": "dynamodb"}
        with pytest.raises(ConfigValidationError) as exc:
            Config.from_dict(data)
        locs = _locs(exc.value)
        assert ("project", "name") in locs
        assert ("locking", "ttl") in locs
        assert any(loc[0] == "backend" for loc in locs)

    def test_all_is_reserved(self):
        data = _config_data()
        data["environments"]["all"] = {"modules": []}
        with pytest.raises(ConfigValidationError) as exc:
            Config.from_dict(data)
        assert "reserved" in _messages(exc.value)

    def test_module_from_other_environment(self):
        data = _config_data()
        data["environments"]["dev"]["modules"].append({"path": "db", "environment": "prod"})
        with pytest.raises(ConfigValidationError, match="belongs to 'prod'"):
            Config.from_dict(data)

    def test_destructive_mock_operations(self):
        data = _config_data()
        dependency = data["environments"]["dev"]["modules"][1]["dependencies"][0]
        dependency["mock_outputs_allowed_operations"] = ["plan", "apply"]
        with pytest.raises(ConfigValidationError) as exc:
            Config.from_dict(data)
        assert "destructive" in _messages(exc.value)

    def test_cycle_is_reported(self):
        data = _config_data()
        data["environments"]["dev"]["modules"][0]["dependencies"] = [{"module": "compute"}]
        with pytest.raises(ConfigValidationError) as exc:
            Config.from_dict(data)
        assert "Circular dependency" in _messages(exc.value)
        assert ("environments", "dev", "modules") in _locs(exc.value)

    def test_unknown_dependency(self):
        data = _config_data()
        data["environments"]["prod"]["modules"].append({"path": "app", "dependencies": [{"module": "db"}]})
        with pytest.raises(ConfigValidationError, match="does not exist"):
            Config.from_dict(data)

    def test_overlapping_state_prefixes(self):
        data = _config_data()
        data["environments"]["dev"]["state_prefix"] = "state/production/dev"
        with pytest.raises(ConfigValidationError, match="overlap"):
            Config.from_dict(data)

    def test_error_formatting(self):
        with pytest.raises(ConfigValidationError) as exc:
            Config.from_dict({"environments": {"dev": {}}})
        assert "  - project: Required field 'project' is missing" in str(exc.value)


# ═══════════════════════════════════════════════════════════════════
#  Files
# ═══════════════════════════════════════════════════════════════════


class TestLoad:
    """Loading infra.yaml from disk."""

    def test_load(self, tmp_path: Path):
        path = tmp_path / "infra.yaml"
        path.write_text(textwrap.dedent("""\
            project:
              name: acme-infra
            environments:
              dev:
                modules:
                  - path: vpc
        """))

        config = Config(str(path)).load()

        assert config.repo_root == tmp_path.resolve()
        assert config.backend.type == "local"
        assert config.get_module("dev", "vpc") is not None

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            Config(str(tmp_path / "infra.yaml")).load()

    def test_invalid_yaml(self, tmp_path: Path):
        path = tmp_path / "infra.yaml"
        path.write_text("project: [unclosed\n")
        with pytest.raises(ConfigValidationError, match="Failed to parse YAML"):
            Config(str(path)).load()

    def test_not_a_mapping(self, tmp_path: Path):
        path = tmp_path / "infra.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ConfigValidationError) as exc:
            Config(str(path)).load()
        assert "must be a mapping" in _messages(exc.value)


class TestDiscovery:
    """Modules discovered from module.yaml files."""

    @pytest.fixture
    def repo(self, tmp_path: Path) -> Path:
        live = tmp_path / "infrastructure-live" / "dev"
        (live / "network" / "vpc").mkdir(parents=True)
        (live / "network" / "vpc" / "module.yaml").write_text("source: vpc\ninputs:\n  cidr: 10.0.0.0/16\n")
        (live / "network" / "vpc" / "nested").mkdir()
        (live / "network" / "vpc" / "nested" / "module.yaml").write_text("source: ignored\n")
        (live / "app").mkdir()
        (live / "app" / "module.yaml").write_text(textwrap.dedent("""\
            source: app
            dependencies:
              - module: network/vpc
                outputs: [subnet_id]
        """))
        (live / ".terraform" / "junk").mkdir(parents=True)
        (live / ".terraform" / "junk" / "module.yaml").write_text("source: junk\n")
        return tmp_path

    def test_discover(self, repo: Path):
        modules = ModuleDiscovery(repo, "infrastructure-live").discover("dev")

        assert [m.path for m in modules] == ["app", "network/vpc"]
        vpc = modules[1]
        assert vpc.environment == "dev"
        assert vpc.inputs == {"cidr": "10.0.0.0/16"}
        assert vpc.config_path == "infrastructure-live/dev/network/vpc"

    def test_missing_environment_directory(self, repo: Path):
        assert ModuleDiscovery(repo, "infrastructure-live").discover("prod") == []

    def test_malformed_module_file(self, repo: Path):
        (repo / "infrastructure-live" / "dev" / "app" / "module.yaml").write_text("- not a mapping\n")
        with pytest.raises(ConfigValidationError, match="Module discovery failed"):
            ModuleDiscovery(repo, "infrastructure-live").discover("dev")

    def test_merge_prefers_declared(self):
        declared = [Module(environment="dev", path="app", source="declared")]
        discovered = [
            Module(environment="dev", path="app", source="discovered"),
            Module(environment="dev", path="db"),
        ]
        merged = ModuleDiscovery(Path("."), "live").merge(declared, discovered)
        assert [(m.path, m.source) for m in merged] == [("app", "declared"), ("db", None)]

    def test_config_with_discovery(self, repo: Path):
        data = {
            "project": {"name": "acme-infra"},
            "environments": {"dev": {"discover": True, "modules": [{"path": "dns"}]}},
        }
        config = Config.from_dict(data, repo_root=str(repo))
        assert [m.path for m in config.get_environment("dev").modules] == ["dns", "app", "network/vpc"]
