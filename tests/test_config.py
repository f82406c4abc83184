import sys
import pytest
from config import load_config

ENV = {}

# Mock the os.environ.get to control environment variables during tests
def mock_environ_get(key, default=None):
    return ENV.get(key, default)

@pytest.fixture(autouse=True)
def setup_env(monkeypatch):
    ENV.clear()
    monkeypatch.setattr('os.environ.get', mock_environ_get)
    yield
    ENV.clear()

def _load(monkeypatch, *args):
    monkeypatch.setattr(sys, 'argv', ['main.py', *args])
    return load_config()

def test_demo_mode_runs_without_api_keys(monkeypatch):
    config = _load(monkeypatch, '--demo-mode', '--token', 'usdc', 'weth', 'dai')
    assert config.demo_mode is True
    assert config.tokens == ['USDC', 'WETH', 'DAI']
    assert config.start_tokens == ['USDC']
    assert config.enable_real_trading is False
    assert config.execution_mode == 'simulation'
    assert config.max_price_impact_percent == 1.0
    assert config.check_revert is True
    assert config.single_approve is True

def test_live_mode_requires_oneinch_key(monkeypatch):
    ENV['ETHERSCAN_API_KEY'] = 'mock_etherscan_key'
    with pytest.raises(SystemExit):
        _load(monkeypatch)

def test_live_mode_with_keys(monkeypatch):
    ENV['ETHERSCAN_API_KEY'] = 'mock_etherscan_key'
    ENV['ONEINCH_API_KEY'] = 'mock_oneinch_key'
    config = _load(monkeypatch, '--chain', 'polygon', 'arbitrum', '--max-hops', '4')
    assert config.chains == ['polygon', 'arbitrum']
    assert config.max_hops == 4
    assert config.oneinch_api_key == 'mock_oneinch_key'

def test_price_impact_limit_from_environment(monkeypatch):
    ENV['MAX_PRICE_IMPACT_PERCENT'] = '2.5'
    assert _load(monkeypatch, '--demo-mode').max_price_impact_percent == 2.5
    # the flag wins over the environment
    assert _load(monkeypatch, '--demo-mode', '--max-price-impact', '0.5').max_price_impact_percent == 0.5

def test_invalid_price_impact_environment(monkeypatch):
    ENV['MAX_PRICE_IMPACT_PERCENT'] = 'lots'
    with pytest.raises(SystemExit):
        _load(monkeypatch, '--demo-mode')

def test_real_trading_cannot_run_in_demo_mode(monkeypatch):
    ENV['TRADING_PRIVATE_KEY'] = '0x' + '11' * 32
    with pytest.raises(SystemExit):
        _load(monkeypatch, '--demo-mode', '--enable-real-trading', '--rpc-url', 'http://localhost:8545')

def test_real_trading_requires_private_key(monkeypatch):
    ENV['ETHERSCAN_API_KEY'] = 'mock_etherscan_key'
    ENV['ONEINCH_API_KEY'] = 'mock_oneinch_key'
    with pytest.raises(SystemExit):
        _load(monkeypatch, '--enable-real-trading', '--rpc-url', 'http://localhost:8545')

    ENV['TRADING_PRIVATE_KEY'] = '0x' + '11' * 32
    config = _load(monkeypatch, '--enable-real-trading', '--rpc-url', 'http://localhost:8545', '--execution-mode', 'real')
    assert config.enable_real_trading is True
    assert config.execution_mode == 'real'

def test_real_execution_mode_requires_opt_in(monkeypatch):
    with pytest.raises(SystemExit):
        _load(monkeypatch, '--demo-mode', '--execution-mode', 'real')

def test_max_hops_lower_bound(monkeypatch):
    with pytest.raises(SystemExit):
        _load(monkeypatch, '--demo-mode', '--max-hops', '1')

def test_auto_transfer_requirements(monkeypatch):
    with pytest.raises(SystemExit):
        _load(monkeypatch, '--demo-mode', '--auto-transfer')

    ENV['SETTLEMENT_DESTINATION'] = '0x' + '22' * 20
    with pytest.raises(SystemExit):
        _load(monkeypatch, '--demo-mode', '--auto-transfer')

def test_telegram_requires_credentials(monkeypatch):
    with pytest.raises(SystemExit):
        _load(monkeypatch, '--demo-mode', '--telegram-enabled')

    ENV['TELEGRAM_BOT_TOKEN'] = '123:abc'
    ENV['TELEGRAM_CHAT_ID'] = '42'
    config = _load(monkeypatch, '--demo-mode', '--telegram-enabled')
    assert config.telegram_chat_id == '42'
