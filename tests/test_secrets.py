import json

import pytest

from rotation.secrets import KrakenCredentials, load_credentials


def test_load_credentials_from_env():
    creds = load_credentials(environ={"KRAKEN_API_KEY": "test_key", "KRAKEN_API_SECRET": "dGVzdF9zZWNyZXQ="})
    assert creds == KrakenCredentials("test_key", "dGVzdF9zZWNyZXQ=")


def test_load_credentials_from_config_file(tmp_path):
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps({"api_key": "file_key", "api_secret": "ZmlsZV9zZWNyZXQ="}))

    creds = load_credentials(config_path=str(config_file), environ={})
    assert creds.api_key == "file_key"
    assert creds.api_secret == "ZmlsZV9zZWNyZXQ="


def test_config_path_from_environment(tmp_path):
    config_file = tmp_path / "kraken.json"
    config_file.write_text(json.dumps({"api_key": "k", "api_secret": "s"}))

    creds = load_credentials(environ={"KRAKEN_CONFIG_PATH": str(config_file)})
    assert creds.api_key == "k"


def test_env_overrides_config_file(tmp_path):
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps({"api_key": "file_key", "api_secret": "ZmlsZV9zZWNyZXQ="}))

    creds = load_credentials(
        config_path=str(config_file),
        environ={"KRAKEN_API_KEY": "env_key", "KRAKEN_API_SECRET": "ZW52X3NlY3JldA=="},
    )
    assert creds.api_key == "env_key"


def test_load_credentials_missing_raises():
    with pytest.raises(ValueError, match="Missing Kraken credentials"):
        load_credentials(config_path="/nonexistent/path.json", environ={})


def test_corrupt_config_file_raises(tmp_path):
    config_file = tmp_path / "config.json"
    config_file.write_text("{not json")
    with pytest.raises(ValueError, match="Failed to load config"):
        load_credentials(config_path=str(config_file), environ={})
