import pytest

from orderstake_indexer.config import IndexerConfig
from orderstake_indexer.store import RecordStore

from .fakes import FakeChain


@pytest.fixture()
def config(tmp_path):
    return IndexerConfig(
        rpc_url="http://localhost:8545",
        chain_id=43114,
        data_dir=str(tmp_path / "data"),
        start_block=100,
        poll_interval=0.01,
        chunk_delay=0,
        retry_delay=0,
        retry_attempts=2,
    )


@pytest.fixture()
def store(config):
    return RecordStore(config.data_dir)


@pytest.fixture()
def chain():
    return FakeChain(head=300)
