import pytest

from jokepay_x402.config import AgentConfig, ConfigError, ServerConfig


def test_server_defaults_from_empty_env():
    config = ServerConfig.from_env({})
    assert config.port == 3000
    assert config.path == "/joke"
    assert config.price_cents == 1
    assert config.mock_facilitator is True
    assert config.asset_decimals == 6
    assert config.resource == "http://localhost:3000/joke"


def test_server_env_overrides():
    config = ServerConfig.from_env(
        {
            "PORT": "8080",
            "JOKE_PATH": "premium",
            "JOKE_PRICE_CENTS": "150",
            "MOCK_FACILITATOR": "0",
            "JOKE_NETWORK": "custom-net",
            "ASSET_ADDRESS": "0xasset",
            "ASSET_DECIMALS": "0",
            "RESOURCE_URL": "https://jokes.example/premium",
            "FACILITATOR_API_KEY": "key",
        }
    )
    assert config.port == 8080
    assert config.path == "/premium"
    assert config.price_cents == 150
    assert config.mock_facilitator is False
    assert config.asset_decimals == 0
    assert config.resource == "https://jokes.example/premium"
    assert config.facilitator_api_key == "key"


def test_unknown_network_needs_asset():
    with pytest.raises(ConfigError):
        ServerConfig.from_env({"JOKE_NETWORK": "custom-net"})


def test_invalid_numbers():
    with pytest.raises(ConfigError):
        ServerConfig.from_env({"PORT": "eighty"})
    with pytest.raises(ConfigError):
        ServerConfig.from_env({"INVOICE_TTL_MS": "0"})


def test_agent_config():
    assert AgentConfig.from_env({}).authorizer == "mock"
    assert AgentConfig.from_env({"MOCK_AUTHORIZER": "0"}).authorizer == "policy"
    config = AgentConfig.from_env({"AUTHORIZER": "signer", "MAX_SPEND_CENTS": "5"})
    assert config.authorizer == "signer"
    assert config.max_spend_cents == 5
    with pytest.raises(ConfigError):
        AgentConfig.from_env({"AUTHORIZER": "wallet"})
