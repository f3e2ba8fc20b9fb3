import pytest

from tessera.errors import ConfigurationError
from tessera.servers.config import (
  ContainerSpec,
  HealthCheckConfig,
  HealthCheckStrategy,
  ServerConfig,
  load_server_configs,
  parse_server_config,
)


class TestParseServerConfig:
  def test_stdio_server(self):
    config = parse_server_config(
      "files",
      {
        "command": "npx",
        "args": ["-y", "files-server", "/tmp"],
        "env": {"LOG_LEVEL": "debug"},
        "autoApprove": ["read_file"],
        "timeoutMs": 1500,
      },
    )

    assert config.id == "files"
    assert config.command == "npx"
    assert config.args == ["-y", "files-server", "/tmp"]
    assert config.env == {"LOG_LEVEL": "debug"}
    assert config.timeout == 1.5
    assert config.is_auto_approved("read_file")
    assert not config.is_auto_approved("write_file")
    assert config.health_check == HealthCheckConfig()

  def test_health_check_settings(self):
    config = parse_server_config(
      "search",
      {
        "address": "tcp://localhost:7000",
        "healthCheck": {
          "strategy": "specific_tool",
          "intervalMs": 500,
          "timeoutMs": 250,
          "maxRetries": 5,
          "specificTool": {"name": "status", "args": {"verbose": True}},
        },
      },
    )

    health = config.health_check
    assert health.strategy == HealthCheckStrategy.SPECIFIC_TOOL
    assert health.interval == 0.5
    assert health.timeout == 0.25
    assert health.max_retries == 5
    assert health.specific_tool.name == "status"
    assert health.specific_tool.arguments == {"verbose": True}

  def test_container_shorthand(self):
    config = parse_server_config("sandbox", {"container": "ghcr.io/acme/sandbox:1"})

    assert config.container == ContainerSpec(image="ghcr.io/acme/sandbox:1")

  @pytest.mark.parametrize(
    "data, reason",
    [
      ({}, "exactly one of"),
      ({"command": "npx", "address": "http://localhost:8080/rpc"}, "exactly one of"),
      ({"address": "ftp://example.com"}, "unsupported address scheme"),
      ({"address": "tcp://localhost"}, "tcp://host:port"),
      ({"command": "npx", "healthCheck": {"strategy": "specific_tool"}}, "specificTool"),
      ({"command": "npx", "healthCheck": {"strategy": "sometimes"}}, "malformed configuration"),
      ({"command": "npx", "healthCheck": {"intervalMs": 0}}, "intervalMs"),
      ({"command": "npx", "timeoutMs": "soon"}, "malformed configuration"),
      ({"command": "npx", "args": ["--port", 8080]}, "args must be strings"),
      ("npx files-server", "expected an object"),
    ],
  )
  def test_invalid_configuration(self, data, reason):
    with pytest.raises(ConfigurationError) as info:
      parse_server_config("broken", data)

    assert reason in info.value.reason
    assert info.value.server_id == "broken"


class TestLoadServerConfigs:
  def test_invalid_entries_do_not_stop_parsing(self):
    configs = load_server_configs(
      {
        "files": {"command": "npx"},
        "broken": {"address": "gopher://example.com"},
        "web": {"address": "https://tools.example.com/rpc", "disabled": True},
      }
    )

    assert isinstance(configs["files"], ServerConfig)
    assert isinstance(configs["broken"], ConfigurationError)
    assert configs["web"].disabled


class TestValidate:
  def test_validate_returns_config(self):
    config = ServerConfig(id="files", command="npx")

    assert config.validate() is config

  def test_empty_id(self):
    with pytest.raises(ConfigurationError):
      ServerConfig(id="", command="npx").validate()

  def test_negative_retries(self):
    with pytest.raises(ConfigurationError):
      ServerConfig(id="files", command="npx", health_check=HealthCheckConfig(max_retries=-1)).validate()
