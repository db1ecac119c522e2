import pytest

from open_payments.core.config import (
    ClientConfig,
    ClientParameters,
    ConfigError,
    load_client_config,
)
from open_payments.core.errors import KeyUnavailable

from support import TEST_KEY_ID, TEST_PRIVATE_KEY_PEM

REQUIRED = {
    "OPEN_PAYMENTS_WALLET_ADDRESS": "https://wallet.example/client/",
    "OPEN_PAYMENTS_KEY_ID": TEST_KEY_ID,
    "OPEN_PAYMENTS_PRIVATE_KEY": TEST_PRIVATE_KEY_PEM,
}


def test_defaults():
    config = ClientConfig.from_mapping(REQUIRED)
    assert config.wallet_address == "https://wallet.example/client"
    assert config.request_timeout_seconds == 10.0
    assert config.connect_timeout_seconds == 10.0
    assert config.max_retries == 3
    assert config.backoff_base_seconds == 0.5
    assert config.backoff_max_seconds == 8.0
    assert config.poll_wait_floor_seconds == 1.0
    assert config.token_refresh_leeway_seconds == 5.0
    assert config.transaction_expiration_seconds == 600
    assert config.max_concurrent_grants == 8


def test_payment_pointer_is_normalized():
    values = dict(REQUIRED, OPEN_PAYMENTS_WALLET_ADDRESS="$wallet.example/client")
    assert ClientConfig.from_mapping(values).wallet_address == "https://wallet.example/client"


@pytest.mark.parametrize(
    "key, value",
    [
        ("OPEN_PAYMENTS_WALLET_ADDRESS", ""),
        ("OPEN_PAYMENTS_WALLET_ADDRESS", "ftp://wallet.example"),
        ("OPEN_PAYMENTS_KEY_ID", " "),
        ("OPEN_PAYMENTS_MAX_RETRIES", "three"),
        ("OPEN_PAYMENTS_MAX_RETRIES", "-1"),
        ("OPEN_PAYMENTS_REQUEST_TIMEOUT_SECONDS", "0"),
        ("OPEN_PAYMENTS_MAX_CONCURRENT_GRANTS", "0"),
        ("OPEN_PAYMENTS_BACKOFF_MAX_SECONDS", "0.1"),
    ],
)
def test_invalid_values(key, value):
    with pytest.raises(ConfigError):
        ClientConfig.from_mapping(dict(REQUIRED, **{key: value}))


def test_private_key_is_required():
    values = {k: v for k, v in REQUIRED.items() if k != "OPEN_PAYMENTS_PRIVATE_KEY"}
    with pytest.raises(ConfigError):
        ClientConfig.from_mapping(values)


def test_private_key_is_not_in_repr():
    assert "PRIVATE KEY" not in repr(ClientConfig.from_mapping(REQUIRED))


def test_load_key_store_from_inline_key():
    assert ClientConfig.from_mapping(REQUIRED).load_key_store().key_id == TEST_KEY_ID


def test_load_key_store_from_path(tmp_path):
    path = tmp_path / "key.pem"
    path.write_text(TEST_PRIVATE_KEY_PEM)
    values = {k: v for k, v in REQUIRED.items() if k != "OPEN_PAYMENTS_PRIVATE_KEY"}
    values["OPEN_PAYMENTS_PRIVATE_KEY_PATH"] = str(path)
    assert ClientConfig.from_mapping(values).load_key_store().key_id == TEST_KEY_ID


def test_broken_inline_key_raises_key_unavailable():
    config = ClientConfig.from_mapping(dict(REQUIRED, OPEN_PAYMENTS_PRIVATE_KEY="garbage"))
    with pytest.raises(KeyUnavailable):
        config.load_key_store()


def test_explicit_parameters_override_environment():
    base = dict(REQUIRED, OPEN_PAYMENTS_MAX_RETRIES="7")
    config = load_client_config(env_file=None, base=base, max_retries=2, poll_wait_floor_seconds=0.5)
    assert config.max_retries == 2
    assert config.poll_wait_floor_seconds == 0.5


def test_parameters_bundle():
    parameters = ClientParameters(
        wallet_address="https://wallet.example/client",
        key_id=TEST_KEY_ID,
        private_key=TEST_PRIVATE_KEY_PEM,
        request_timeout_seconds=3,
    )
    config = load_client_config(env_file=None, base={}, parameters=parameters)
    assert config.request_timeout_seconds == 3.0
    assert "OPEN_PAYMENTS_PRIVATE_KEY" in parameters.as_overrides()


def test_unknown_parameter_is_rejected():
    with pytest.raises(TypeError):
        load_client_config(env_file=None, base=REQUIRED, colour="blue")
