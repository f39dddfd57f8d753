import pytest

from speedcheck.stability import StabilityConfig
from speedcheck_server.config import MIB, ClientConfig, ServerConfig
from speedcheck_server.errors import ConfigError


def test_server_defaults():
    config = ServerConfig()
    assert config.port == 3000
    assert config.max_download_size_mb == 50
    assert config.max_upload_size_mb == 50
    assert config.max_inflight_requests == 100
    assert config.upload_limit_bytes == 50 * MIB


def test_from_env_reads_variables():
    config = ServerConfig.from_env({
        "PORT": "8080",
        "MAX_DOWNLOAD_SIZE_MB": "200",
        "MAX_UPLOAD_SIZE_MB": "20",
        "MAX_INFLIGHT_REQUESTS": "5",
        "SERVER_LOCATION": "Oslo",
        "LOG_LEVEL": "debug",
    })
    assert config.port == 8080
    assert config.max_download_size_mb == 200
    assert config.max_upload_size_mb == 20
    assert config.max_inflight_requests == 5
    assert config.server_location == "Oslo"
    assert config.log_level == "debug"


def test_from_env_overrides_win_and_none_ignored():
    config = ServerConfig.from_env({"PORT": "8080"}, port=9090, server_location=None)
    assert config.port == 9090
    assert config.server_location == "Local"


def test_from_env_empty_uses_defaults():
    assert ServerConfig.from_env({"PORT": ""}) == ServerConfig()


def test_non_integer_env_is_config_error():
    with pytest.raises(ConfigError, match="MAX_DOWNLOAD_SIZE_MB"):
        ServerConfig.from_env({"MAX_DOWNLOAD_SIZE_MB": "lots"})


def test_all_validation_errors_reported_together():
    with pytest.raises(ConfigError) as excinfo:
        ServerConfig(port=70000, max_download_size_mb=0, max_upload_size_mb=5000,
                     max_inflight_requests=0, log_level="loud")
    errors = excinfo.value.errors
    assert len(errors) == 5
    assert str(excinfo.value).startswith("Configuration validation failed:")


def test_chunk_bounds_validation():
    with pytest.raises(ConfigError):
        ServerConfig(default_chunk_kb=8)
    with pytest.raises(ConfigError):
        ServerConfig(chunk_size_bounds_kb=(64, 16))


def test_client_defaults():
    config = ClientConfig()
    assert config.durations("download") == (3500.0, 8000.0)
    assert config.durations("upload") == (3000.0, 6000.0)
    assert config.threads("download") == 4
    assert config.stability == StabilityConfig()


def test_client_strips_trailing_slash():
    assert ClientConfig(base_url="http://host:3000/").base_url == "http://host:3000"


@pytest.mark.parametrize("kwargs", [
    {"download_threads": 0},
    {"upload_threads": 9},
    {"download_min_s": 10, "download_max_s": 5},
    {"upload_max_s": 0},
    {"ping_count": 0},
    {"sample_interval_s": 0},
    {"grace_s": -1},
])
def test_client_invalid(kwargs):
    with pytest.raises(ConfigError):
        ClientConfig(**kwargs)
