import pytest

from rh_market import config

ENV_VARS = (
    "MARKET_DB_PATH",
    "DISCORD_WEBHOOK_URL",
    "MARKET_FRONTEND_URL",
    "MARKET_ITEM_DEFS",
    "MARKET_TRANSACTION_RETRIES",
)


@pytest.fixture
def clean_env(monkeypatch):
    monkeypatch.setattr(config, "load_dotenv", lambda: None)
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_defaults(clean_env):
    settings = config.load_settings()
    assert settings == config.Settings()
    assert settings.webhook_url is None


def test_reads_environment(clean_env):
    clean_env.setenv("MARKET_DB_PATH", "/tmp/ledger.db")
    clean_env.setenv("DISCORD_WEBHOOK_URL", "https://discord.com/api/webhooks/1/abc")
    clean_env.setenv("MARKET_FRONTEND_URL", "https://market.example/")
    clean_env.setenv("MARKET_ITEM_DEFS", "items.json")
    clean_env.setenv("MARKET_TRANSACTION_RETRIES", "5")

    settings = config.load_settings()

    assert settings.database_path == "/tmp/ledger.db"
    assert settings.webhook_url == "https://discord.com/api/webhooks/1/abc"
    assert settings.frontend_url == "https://market.example"
    assert settings.item_defs_path == "items.json"
    assert settings.transaction_retries == 5


def test_blank_webhook_disables_notifications(clean_env):
    clean_env.setenv("DISCORD_WEBHOOK_URL", "")
    clean_env.setenv("MARKET_TRANSACTION_RETRIES", "  ")
    settings = config.load_settings()
    assert settings.webhook_url is None
    assert settings.transaction_retries == 3


@pytest.mark.parametrize("raw", ["many", "0", "-2"])
def test_rejects_bad_retry_count(clean_env, raw):
    clean_env.setenv("MARKET_TRANSACTION_RETRIES", raw)
    with pytest.raises(RuntimeError, match="MARKET_TRANSACTION_RETRIES"):
        config.load_settings()
