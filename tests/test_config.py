"""
Tests for configuration loading.

Validates:
- Source priority (override > environment > file > default)
- Properties file parsing
- Enablement rules
- Invalid numeric values fall back to defaults
"""

import pytest

from m00n_reporter.config import ReporterConfig, parse_tags, read_properties


@pytest.fixture
def no_file(tmp_path):
    return tmp_path / "missing.properties"


@pytest.fixture
def properties(tmp_path):
    path = tmp_path / "m00n.properties"
    path.write_text(
        "# comment\n"
        "! another comment\n"
        "m00n.server_url = http://from-file:4000\n"
        "m00n.api_key=file-key\n"
        "m00n.launch: File launch\n"
        "m00n.attribute.team = checkout\n"
        "unrelated.key = ignored\n",
        encoding="utf-8",
    )
    return path


def test_defaults(no_file):
    """Nothing configured: disabled with documented defaults."""
    config = ReporterConfig.load(environ={}, properties_path=no_file)

    assert config.enabled is False
    assert config.server_url is None
    assert config.launch == "Pytest Tests"
    assert config.tags == ()
    assert config.timeout_ms == 30000
    assert config.max_retries == 3
    assert config.project == "python"
    assert config.debug is False


def test_enabled_requires_url_and_key(no_file):
    """Both server URL and API key must be set."""
    only_url = ReporterConfig.load(environ={"M00N_SERVER_URL": "http://x"}, properties_path=no_file)
    both = ReporterConfig.load(
        environ={"M00N_SERVER_URL": "http://x", "M00N_API_KEY": "k"}, properties_path=no_file
    )

    assert only_url.enabled is False
    assert both.enabled is True


def test_enabled_flag_false_disables(no_file):
    """enabled=false wins even with URL and key."""
    config = ReporterConfig.load(
        environ={"M00N_SERVER_URL": "http://x", "M00N_API_KEY": "k", "M00N_ENABLED": "false"},
        properties_path=no_file,
    )
    assert config.enabled is False


def test_properties_file(properties):
    """Prefixed keys are read with '=' or ':' separators; comments ignored."""
    config = ReporterConfig.load(environ={}, properties_path=properties)

    assert config.server_url == "http://from-file:4000"
    assert config.api_key == "file-key"
    assert config.launch == "File launch"
    assert config.attributes == {"team": "checkout"}


def test_environment_overrides_file(properties):
    config = ReporterConfig.load(
        environ={"M00N_SERVER_URL": "http://from-env"}, properties_path=properties
    )
    assert config.server_url == "http://from-env"
    assert config.api_key == "file-key"


def test_override_beats_environment(properties):
    config = ReporterConfig.load(
        overrides={"server_url": "http://from-cli"},
        environ={"M00N_SERVER_URL": "http://from-env"},
        properties_path=properties,
    )
    assert config.server_url == "http://from-cli"


def test_empty_values_count_as_unset(properties):
    """Empty override and environment values fall through to the file."""
    config = ReporterConfig.load(
        overrides={"server_url": ""},
        environ={"M00N_SERVER_URL": ""},
        properties_path=properties,
    )
    assert config.server_url == "http://from-file:4000"


def test_file_values_layer_over_properties(properties):
    """ini values win over m00n.properties."""
    config = ReporterConfig.load(
        environ={},
        file_values={"launch": "Ini launch", "project": ""},
        properties_path=properties,
    )
    assert config.launch == "Ini launch"
    assert config.project == "python"


def test_invalid_numbers_use_defaults(no_file):
    config = ReporterConfig.load(
        environ={"M00N_TIMEOUT": "soon", "M00N_MAX_RETRIES": "many"}, properties_path=no_file
    )
    assert config.timeout_ms == 30000
    assert config.max_retries == 3


def test_numbers_and_debug(no_file):
    config = ReporterConfig.load(
        environ={"M00N_TIMEOUT": "5000", "M00N_MAX_RETRIES": "1", "M00N_DEBUG": "true"},
        properties_path=no_file,
    )
    assert config.timeout_ms == 5000
    assert config.timeout_seconds == 5.0
    assert config.max_retries == 1
    assert config.debug is True


def test_environment_attributes(no_file):
    config = ReporterConfig.load(
        environ={"M00N_ATTRIBUTE_BRANCH": "main", "M00N_ATTRIBUTE_": "ignored"},
        properties_path=no_file,
    )
    assert config.attributes == {"branch": "main"}


def test_parse_tags():
    assert parse_tags(" smoke, ,regression ,") == ("smoke", "regression")
    assert parse_tags("") == ()
    assert parse_tags(None) == ()


def test_read_properties_missing_file(no_file):
    assert read_properties(no_file) == {}


@pytest.mark.parametrize("url, valid", [
    ("http://localhost:4000", True),
    ("https://m00n.example.com/", True),
    ("localhost:4000", False),
    ("ftp://m00n.example.com", False),
    ("", False),
])
def test_has_valid_url(url, valid):
    assert ReporterConfig(server_url=url, api_key="k").has_valid_url() is valid


def test_base_url_strips_trailing_slash():
    assert ReporterConfig(server_url="http://x:4000/").base_url == "http://x:4000"


def test_config_is_frozen():
    config = ReporterConfig()
    with pytest.raises(Exception):
        config.launch = "other"
