import asyncio
import json

import pytest

from orderstake_indexer import connection
from orderstake_indexer.config import ContractConfig
from orderstake_indexer.connection import ConnectionManager, bind_contract
from orderstake_indexer.errors import ChainConnectionError, EnrichmentError, NetworkMismatchError, QueryRangeError

from .fakes import FACTORY, TOY_FACTORY_ABI, load_abi


async def _value(value):
    if isinstance(value, Exception):
        raise value
    return value


class FakeEth:
    def __init__(self, chain_id=43114, block_number=1000, logs_error=None, logs=None):
        self._chain_id = chain_id
        self._block_number = block_number
        self._logs_error = logs_error
        self._logs = logs or []

    @property
    def chain_id(self):
        return _value(self._chain_id)

    @property
    def block_number(self):
        return _value(self._block_number)

    async def get_logs(self, params):
        if self._logs_error:
            raise self._logs_error
        return self._logs


class FakeWeb3:
    codec = None

    def __init__(self, eth):
        self.eth = eth


class FlakyFactory:
    """Web3 factory failing the first ``failures`` connections."""

    def __init__(self, failures=0, chain_id=43114, **eth_kwargs):
        self.failures = failures
        self.chain_id = chain_id
        self.eth_kwargs = eth_kwargs
        self.attempts = 0

    def __call__(self, config):
        self.attempts += 1
        if self.attempts <= self.failures:
            return FakeWeb3(FakeEth(chain_id=ConnectionError("refused")))
        return FakeWeb3(FakeEth(chain_id=self.chain_id, **self.eth_kwargs))


def test_connect_retries_then_succeeds(config):
    factory = FlakyFactory(failures=2)
    manager = ConnectionManager(config, web3_factory=factory)

    asyncio.run(manager.connect())

    assert factory.attempts == 3
    assert manager.healthy is True
    assert asyncio.run(manager.current_block_height()) == 1000


def test_connect_gives_up(config):
    config.retry_attempts = 1
    factory = FlakyFactory(failures=10)
    manager = ConnectionManager(config, web3_factory=factory)

    with pytest.raises(ChainConnectionError):
        asyncio.run(manager.connect())
    assert factory.attempts == 2
    assert manager.healthy is False


def test_chain_mismatch_is_not_retried(config):
    factory = FlakyFactory(chain_id=1)
    manager = ConnectionManager(config, web3_factory=factory)

    with pytest.raises(NetworkMismatchError) as excinfo:
        asyncio.run(manager.connect())
    assert factory.attempts == 1
    assert excinfo.value.expected == 43114
    assert excinfo.value.actual == 1


def test_calls_fail_fast_while_disconnected(config):
    manager = ConnectionManager(config, web3_factory=FlakyFactory())
    with pytest.raises(ChainConnectionError):
        asyncio.run(manager.current_block_height())


def test_get_logs_failure_becomes_query_range_error(config):
    manager = ConnectionManager(config, web3_factory=FlakyFactory(logs_error=ValueError("range too large")))
    asyncio.run(manager.connect())
    handle = bind_contract("Factory", FACTORY, TOY_FACTORY_ABI)

    with pytest.raises(QueryRangeError) as excinfo:
        asyncio.run(manager.get_logs(handle, "Created", 10, 20))
    assert excinfo.value.from_block == 10
    assert excinfo.value.to_block == 20

    with pytest.raises(QueryRangeError):
        asyncio.run(manager.get_logs(handle, "Missing", 10, 20))


def test_load_bindings_skips_unusable_entries(config, tmp_path):
    abi_path = tmp_path / "Factory.json"
    abi_path.write_text(json.dumps({"contractName": "Factory", "abi": TOY_FACTORY_ABI}))
    config.abi_dir = str(tmp_path / "empty")
    config.contracts = {
        "Factory": ContractConfig("Factory", FACTORY, str(abi_path)),
        "Inactive": ContractConfig("Inactive", "0x" + "2" * 40, str(abi_path), active=False),
        "Unset": ContractConfig("Unset", "0x" + "0" * 40, str(abi_path)),
        "Invalid": ContractConfig("Invalid", "0x1234", str(abi_path)),
        "NoAbi": ContractConfig("NoAbi", "0x" + "3" * 40),
    }
    manager = ConnectionManager(config)

    bindings = manager.load_bindings()

    assert list(bindings) == ["Factory"]
    assert set(bindings["Factory"].events) == {"Created", "Ping"}
    assert manager.get_contract("NoAbi") is None


def test_interfaces_resolve_from_abi_dir(config, tmp_path):
    (tmp_path / "EcosystemStaking.json").write_text(json.dumps(load_abi("EcosystemStaking")))
    config.abi_dir = str(tmp_path)
    manager = ConnectionManager(config)

    handle = manager.contract_at("0x" + "6" * 40, "EcosystemStaking")

    assert handle is not None
    assert handle.name == "EcosystemStaking"
    assert "Staked" in handle.events
    assert handle.topic("Staked").startswith("0x")
    assert manager.contract_at("0x" + "6" * 40, "Unknown") is None


def test_new_head_wakes_waiter(config):
    manager = ConnectionManager(config)

    async def scenario():
        waiter = asyncio.ensure_future(manager.wait_for_new_head(5))
        await asyncio.sleep(0)
        await manager.notify_head(1234)
        return await waiter

    assert asyncio.run(scenario()) is True
    assert manager.latest_head == 1234


def test_wait_for_new_head_times_out(config):
    manager = ConnectionManager(config)
    assert asyncio.run(manager.wait_for_new_head(0.01)) is False


def test_call_failure_is_enrichment_error(config):
    manager = ConnectionManager(config)
    handle = bind_contract("Factory", FACTORY, TOY_FACTORY_ABI)

    with pytest.raises(EnrichmentError):
        asyncio.run(manager.call(handle, "symbol"))
    with pytest.raises(EnrichmentError):
        asyncio.run(manager.call(FACTORY, "symbol"))


class SequenceFactory:
    """Web3 factory handing out one FakeEth per connection, repeating the last."""

    def __init__(self, *eths):
        self.eths = list(eths)
        self.attempts = 0

    def __call__(self, config):
        eth = self.eths[min(self.attempts, len(self.eths) - 1)]
        self.attempts += 1
        return FakeWeb3(eth)


def test_reconnect_backs_off_and_reloads_bindings(config, tmp_path, monkeypatch):
    abi_path = tmp_path / "Factory.json"
    abi_path.write_text(json.dumps(TOY_FACTORY_ABI))
    config.contracts = {"Factory": ContractConfig("Factory", FACTORY, str(abi_path))}
    config.max_backoff = 4
    manager = ConnectionManager(config, web3_factory=FlakyFactory(failures=4))
    delays = []
    refused = []

    async def no_wait(stop, timeout):
        delays.append(timeout)
        try:
            await manager.current_block_height()
        except ChainConnectionError:
            refused.append(timeout)
        return False

    monkeypatch.setattr(connection, "wait_or_stop", no_wait)

    async def scenario():
        return await manager.reconnect(asyncio.Event())

    assert asyncio.run(scenario()) is True
    assert delays == [1, 2, 4, 4]
    assert refused == delays
    assert manager.healthy is True
    assert list(manager.contracts) == ["Factory"]


def test_health_check_recovers_connection(config):
    config.health_check_interval = 0.01
    factory = SequenceFactory(FakeEth(block_number=ConnectionError("gone")), FakeEth(block_number=2000))
    manager = ConnectionManager(config, web3_factory=factory)

    async def scenario():
        await manager.connect()
        stop = asyncio.Event()
        task = asyncio.ensure_future(manager.health_check_loop(stop))
        for _ in range(500):
            await asyncio.sleep(0.01)
            if factory.attempts == 2 and manager.healthy:
                break
        stop.set()
        await asyncio.wait_for(task, 5)
        return await manager.current_block_height()

    assert asyncio.run(scenario()) == 2000
    assert factory.attempts == 2
    assert manager.healthy is True


def test_health_check_stops_on_chain_switch(config):
    config.health_check_interval = 0.01
    factory = SequenceFactory(FakeEth(block_number=ConnectionError("gone")), FakeEth(chain_id=1))
    manager = ConnectionManager(config, web3_factory=factory)

    async def scenario():
        await manager.connect()
        await asyncio.wait_for(manager.health_check_loop(asyncio.Event()), 5)

    with pytest.raises(NetworkMismatchError):
        asyncio.run(scenario())
    assert manager.healthy is False
    with pytest.raises(ChainConnectionError):
        asyncio.run(manager.current_block_height())


def test_undecodable_log_becomes_query_range_error(config):
    manager = ConnectionManager(config, web3_factory=FlakyFactory(logs=[{"topics": [], "data": "0x"}]))
    asyncio.run(manager.connect())
    handle = bind_contract("Factory", FACTORY, TOY_FACTORY_ABI)

    with pytest.raises(QueryRangeError):
        asyncio.run(manager.get_logs(handle, "Created", 10, 20))
