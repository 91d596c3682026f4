from pathlib import Path

import pytest

from giveaway_engine.config import ConfigError, load_config

MINIMAL = """
token: "${GIVEAWAY_TEST_TOKEN}"
application_id: 1234
"""


def write(tmp_path, text: str) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_defaults_fill_missing_sections(tmp_path, monkeypatch):
    monkeypatch.setenv("GIVEAWAY_TEST_TOKEN", "secret-token")
    config = load_config(write(tmp_path, MINIMAL))

    assert config.token == "secret-token"
    assert config.application_id == 1234
    assert config.logging.level == "INFO"
    assert config.storage.path == Path("data") / "giveaways.sqlite"
    assert config.defaults.claim_timeout_seconds == 300
    assert config.defaults.max_reroll_count == 5
    assert config.scheduler.max_retries == 3
    assert config.scheduler.base_delay_seconds == 1.0
    assert config.scheduler.lease_seconds == 30.0
    assert config.permissions.admin_roles == []


def test_full_configuration_is_parsed(tmp_path):
    config = load_config(
        write(
            tmp_path,
            """
token: plain-token
application_id: "99"
logging:
  level: DEBUG
  logger_channel_id: 4242
storage:
  path: /var/lib/giveaways/db.sqlite
defaults:
  claim_timeout_seconds: 120
  max_reroll_count: 0
scheduler:
  workers: 4
  poll_interval_seconds: 0.5
  max_retries: 5
permissions:
  admin_roles: [11, "12"]
  development_guild_id: 777
""",
        )
    )

    assert config.application_id == 99
    assert config.logging.logger_channel_id == 4242
    assert config.storage.path == Path("/var/lib/giveaways/db.sqlite")
    assert config.defaults.claim_timeout_seconds == 120
    assert config.defaults.max_reroll_count == 0
    assert config.scheduler.workers == 4
    assert config.scheduler.poll_interval_seconds == 0.5
    assert config.scheduler.max_retries == 5
    assert config.permissions.admin_roles == [11, 12]
    assert config.permissions.development_guild_id == 777


def test_missing_file_is_reported(tmp_path):
    with pytest.raises(ConfigError):
        load_config(tmp_path / "missing.yaml")


def test_unset_environment_reference_is_reported(tmp_path, monkeypatch):
    monkeypatch.delenv("GIVEAWAY_TEST_TOKEN", raising=False)
    with pytest.raises(ConfigError, match="GIVEAWAY_TEST_TOKEN"):
        load_config(write(tmp_path, MINIMAL))


@pytest.mark.parametrize(
    "extra, key",
    [
        ("scheduler:\n  workers: 0\n", "scheduler.workers"),
        ("scheduler:\n  base_delay_seconds: nope\n", "scheduler.base_delay_seconds"),
        ("defaults:\n  claim_timeout_seconds: -5\n", "defaults.claim_timeout_seconds"),
        ("defaults:\n  max_reroll_count: -1\n", "defaults.max_reroll_count"),
        ("permissions:\n  admin_roles: [abc]\n", "permissions.admin_roles"),
        ("logging: []\n", "logging"),
    ],
)
def test_malformed_values_name_the_key(tmp_path, extra, key):
    text = "token: abc\napplication_id: 1\n" + extra
    with pytest.raises(ConfigError, match=key.replace(".", r"\.")):
        load_config(write(tmp_path, text))
