import asyncio
import os

from orderstake_indexer.staking import StakingEngine

from .fakes import FakeChain, load_abi

FACTORY = "0x" + "1" * 40
STAKE_TOKEN = "0x" + "4" * 40
REWARD_TOKEN = "0x" + "5" * 40
POOL = "0x" + "6" * 40
CREATOR = "0x" + "7" * 40
USER = "0x" + "8" * 40
ACCOUNT = "0x" + "9" * 40


def _setup(store, config, head=500):
    chain = FakeChain(head=head)
    chain.bind("EcosystemStakingFactory", FACTORY, load_abi("EcosystemStakingFactory"))
    chain.interfaces["EcosystemStaking"] = load_abi("EcosystemStaking")
    chain.add_log(
        FACTORY,
        "PoolCreated",
        150,
        0,
        poolAddress=POOL,
        creator=CREATOR,
        stakingToken=STAKE_TOKEN,
        rewardToken=REWARD_TOKEN,
        rewardPerBlock=500000,
        startBlock=100,
        endBlock=10000,
    )
    return chain, StakingEngine(chain, store, config)


def test_pool_created_with_partial_enrichment(store, config):
    chain, engine = _setup(store, config)
    chain.set_call(
        POOL,
        "getPoolInfo",
        (STAKE_TOKEN, REWARD_TOKEN, 1000 * 10**18, 500000, 100, 10000, 120, CREATOR),
    )
    # getPoolMetadata and every staking-token read fail
    chain.set_call(REWARD_TOKEN, "name", "Reward")
    chain.set_call(REWARD_TOKEN, "symbol", "RWD")
    chain.set_call(REWARD_TOKEN, "decimals", 6)
    chain.set_call(REWARD_TOKEN, "totalSupply", 10**12)

    asyncio.run(engine.index_past_events())

    [record] = store.load("staking")
    assert record["event_name"] == "PoolCreated"
    assert record["args"]["rewardPerBlock"] == "500000"
    assert record["display"]["rewardPerBlock"] == "0.5"
    assert record["display"]["rewardSymbol"] == "RWD"
    assert record["display"]["stakingSymbol"] == "UNKNOWN"
    assert record["display"]["poolName"] == "Unknown Pool"
    assert record["display"]["poolAddress"] == "0x6666...6666"

    projection = store.get_projection(POOL)
    assert projection["source"] == "chain"
    assert projection["pool_data"]["total_staked"] == str(1000 * 10**18)
    assert projection["pool_data"]["last_reward_block"] == "120"
    assert projection["pool_metadata"] is None
    assert projection["token_info"]["reward_token"]["decimals"] == 6
    assert projection["token_info"]["staking_token"]["symbol"] is None
    assert projection["pool_stats"]["is_active"] is True
    assert projection["pool_stats"]["blocks_remaining"] == 9500
    assert "last_updated" in projection
    assert engine.known_entities == {POOL}


def test_pool_snapshot_falls_back_to_event_args(store, config):
    chain, engine = _setup(store, config, head=20000)

    asyncio.run(engine.index_past_events())

    projection = store.get_projection(POOL)
    assert projection["source"] == "event"
    assert projection["pool_data"]["reward_per_block"] == "500000"
    assert projection["pool_stats"]["has_ended"] is True
    assert projection["pool_stats"]["blocks_remaining"] == 0
    assert projection["creator"] == CREATOR
    [record] = store.load("staking")
    assert record["display"]["rewardPerBlock"] == "0.0000000000005"


def test_pool_events_and_factory_labels(store, config):
    chain, engine = _setup(store, config)
    chain.add_log(FACTORY, "WhitelistUpdated", 160, 0, account=ACCOUNT, status=True)
    chain.add_log(FACTORY, "WhitelistUpdated", 161, 0, account=ACCOUNT, status=False)
    chain.add_log(POOL, "Staked", 170, 0, user=USER, amount=25 * 10**17)
    chain.add_log(POOL, "RewardClaimed", 180, 2, user=USER, amount=10**16)

    asyncio.run(engine.index_past_events())

    records = store.load("staking")
    assert [r["event_name"] for r in records] == [
        "PoolCreated",
        "WhitelistUpdated",
        "WhitelistUpdated",
        "Staked",
        "RewardClaimed",
    ]
    assert [r["display"]["status"] for r in records[1:3]] == ["Whitelisted", "Removed"]
    staked = records[3]
    assert staked["contract_name"] == "EcosystemStaking"
    assert staked["display"]["amount"] == "2.5"
    assert staked["display"]["pool"] == "0x6666...6666"
    assert store.get_checkpoint("staking") == 500


def test_pool_updated_refreshes_snapshot(store, config):
    chain, engine = _setup(store, config)
    asyncio.run(engine.index_past_events())
    assert store.get_projection(POOL)["source"] == "event"

    chain.head = 600
    chain.add_log(POOL, "PoolUpdated", 550, 0, lastRewardBlock=550, accRewardPerShare=10**18)
    chain.set_call(
        POOL,
        "getPoolInfo",
        (STAKE_TOKEN, REWARD_TOKEN, 7 * 10**18, 500000, 100, 10000, 550, CREATOR),
    )

    assert asyncio.run(engine.poll_once()) is True

    projection = store.get_projection(POOL)
    assert projection["source"] == "chain"
    assert projection["pool_data"]["total_staked"] == str(7 * 10**18)
    assert projection["pool_stats"]["current_block"] == 600


def test_restart_does_not_rebuild_existing_pool(store, config):
    chain, engine = _setup(store, config)
    asyncio.run(engine.index_past_events())
    first = store.get_projection(POOL)["last_updated"]

    again = StakingEngine(chain, store, config)
    asyncio.run(again.process_range(100, 500))

    assert len(store.load("staking")) == 1
    assert store.get_projection(POOL)["last_updated"] == first


def test_lost_projection_is_restored_on_restart(store, config):
    chain, engine = _setup(store, config)
    asyncio.run(engine.index_past_events())
    os.remove(os.path.join(config.data_dir, "projections.json"))
    assert store.get_projection(POOL) is None

    restarted = StakingEngine(chain, store, config)
    restarted.rehydrate()
    assert asyncio.run(restarted.restore_projections()) == 1

    projection = store.get_projection(POOL)
    assert projection["source"] == "event"
    assert projection["pool_data"]["reward_per_block"] == "500000"
    assert asyncio.run(restarted.restore_projections()) == 0
