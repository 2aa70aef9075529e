from datetime import timedelta
from pathlib import Path

import pytest

from pgbackup.config import BackupConfig, RunPurpose, load_config, parse_duration
from pgbackup.errors import ConfigurationError

BASE_ENV = {"DB_USER": "myuser", "DB_PASSWORD": "mypass", "DB_NAME": "mydatabase"}


def test_load_config_applies_defaults():
    config = load_config(BASE_ENV)

    assert config.host == "postgres-db"
    assert config.port == 5432
    assert config.backup_root == Path("/mnt/backups")
    assert config.retention == timedelta(days=7)
    assert config.encrypt is False
    assert config.prefix == "bica"
    assert config.readiness_interval == 3.0
    assert config.readiness_timeout == 300.0
    config.validate()


def test_password_is_hidden_from_repr():
    config = load_config({**BASE_ENV, "ENCRYPT_PASS": "topsecret"})

    assert "mypass" not in repr(config)
    assert "topsecret" not in repr(config)


@pytest.mark.parametrize("missing", ["DB_USER", "DB_PASSWORD", "DB_NAME"])
def test_missing_mandatory_field_is_fatal(missing):
    env = {key: value for key, value in BASE_ENV.items() if key != missing}
    config = load_config(env)

    with pytest.raises(ConfigurationError, match=missing):
        config.validate()


def test_encryption_without_passphrase_is_rejected():
    config = load_config({**BASE_ENV, "ENCRYPT": "true", "ENCRYPT_PASS": ""})

    with pytest.raises(ConfigurationError, match="ENCRYPT_PASS"):
        config.validate()


def test_retention_duration_takes_precedence_over_days():
    config = load_config({**BASE_ENV, "RETENTION": "90m", "RETENTION_DAYS": "3"})
    assert config.retention == timedelta(minutes=90)

    legacy = load_config({**BASE_ENV, "RETENTION_DAYS": "3"})
    assert legacy.retention == timedelta(days=3)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("7d", timedelta(days=7)),
        ("12h", timedelta(hours=12)),
        ("30s", timedelta(seconds=30)),
        ("2w", timedelta(weeks=2)),
        ("5", timedelta(days=5)),
    ],
)
def test_parse_duration(raw, expected):
    assert parse_duration(raw) == expected


def test_malformed_values_raise_configuration_error():
    with pytest.raises(ConfigurationError):
        load_config({**BASE_ENV, "DB_PORT": "abc"})
    with pytest.raises(ConfigurationError):
        load_config({**BASE_ENV, "RETENTION": "forever"})
    with pytest.raises(ConfigurationError):
        load_config({**BASE_ENV, "ENCRYPT": "maybe"})


def test_zero_readiness_timeout_means_unbounded():
    config = load_config({**BASE_ENV, "READINESS_TIMEOUT": "0"})

    assert config.readiness_timeout is None
    config.validate()


def test_unknown_probe_is_rejected():
    config = BackupConfig(user="u", password="p", database="d", readiness_probe="telnet")

    with pytest.raises(ConfigurationError, match="READINESS_PROBE"):
        config.validate()


def test_run_purpose_parse():
    assert RunPurpose.parse("with-retention") is RunPurpose.WITH_RETENTION
    assert RunPurpose.parse(" REGULAR ") is RunPurpose.REGULAR
    with pytest.raises(ConfigurationError):
        RunPurpose.parse("0300")


@pytest.mark.parametrize(
    "key, value",
    [
        ("RETENTION", "99999999999d"),
        ("RETENTION_DAYS", "nan"),
        ("RETENTION_DAYS", "inf"),
        ("RETENTION_DAYS", "1e12"),
        ("READINESS_INTERVAL", "nan"),
        ("READINESS_TIMEOUT", "inf"),
    ],
)
def test_non_finite_or_overflowing_numbers_are_configuration_errors(key, value):
    with pytest.raises(ConfigurationError, match=key):
        load_config({**BASE_ENV, key: value})
