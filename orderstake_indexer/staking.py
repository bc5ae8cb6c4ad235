import logging
from typing import Any, Mapping, Optional

from .connection import ContractHandle
from .engine import EventKind, IndexingEngine
from .normalize import amount, label, stringify
from .projections import PoolSnapshot, TokenInfoCache, build_pool_snapshot

log = logging.getLogger(__name__)

STREAM = "staking"

POOL_CREATED = EventKind("PoolCreated", STREAM, {"rewardPerBlock": amount()})
BURN_AMOUNT_UPDATED = EventKind("BurnAmountUpdated", STREAM, {"oldAmount": amount(), "newAmount": amount()})
WHITELIST_UPDATED = EventKind("WhitelistUpdated", STREAM, {"status": label("Whitelisted", "Removed")})

STAKED = EventKind("Staked", STREAM, {"amount": amount()})
UNSTAKED = EventKind("Unstaked", STREAM, {"amount": amount()})
REWARD_CLAIMED = EventKind("RewardClaimed", STREAM, {"amount": amount()})
EMERGENCY_WITHDRAW = EventKind("EmergencyWithdraw", STREAM, {"amount": amount()})
POOL_UPDATED = EventKind("PoolUpdated", STREAM, {"accRewardPerShare": amount()})


class StakingEngine(IndexingEngine):
    """Staking factory and the pools it deploys."""

    name = "staking"
    factory_contract = "EcosystemStakingFactory"
    child_interface = "EcosystemStaking"
    creation_event = "PoolCreated"
    child_address_arg = "poolAddress"
    child_label = "pool"
    checkpoint_stream = STREAM
    factory_events = (POOL_CREATED, BURN_AMOUNT_UPDATED, WHITELIST_UPDATED)
    child_events = (STAKED, UNSTAKED, REWARD_CLAIMED, EMERGENCY_WITHDRAW, POOL_UPDATED)

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.tokens = TokenInfoCache(self.connection)

    async def process_event(self, kind: EventKind, entry: Mapping[str, Any], handle: ContractHandle) -> bool:
        if kind is POOL_CREATED:
            return await self._pool_created(entry, handle)

        added = await super().process_event(kind, entry, handle)
        if added and kind is POOL_UPDATED:
            await self.refresh_pool(handle.address)
        return added

    async def _pool_created(self, entry: Mapping[str, Any], handle: ContractHandle) -> bool:
        record = self.normalize(POOL_CREATED, entry, handle)
        if self.store.contains(POOL_CREATED.stream, record.key):
            return False

        args = stringify(dict(entry.get("args") or {}))
        snapshot = await self.build_snapshot(args[self.child_address_arg], args)
        rules = {"rewardPerBlock": amount(snapshot.reward_decimals)}
        record = self.normalize(POOL_CREATED, entry, handle, rules, snapshot.display())

        added = self.append(POOL_CREATED, record)
        if added:
            self.store.put_projection(snapshot.address, snapshot.to_dict())
            log.info("Saved pool snapshot for %s", record.display.get("poolAddress"))
        return added

    async def build_snapshot(self, pool_address: str, event_args: Mapping[str, Any]) -> PoolSnapshot:
        pool_abi = self.connection.load_interface(self.child_interface)
        return await build_pool_snapshot(self.connection, pool_address, event_args, pool_abi, self.tokens)

    async def rebuild_projection(self, address: str, record: Mapping[str, Any]) -> bool:
        await self.refresh_pool(address)
        return True

    async def refresh_pool(self, pool_address: str) -> Optional[PoolSnapshot]:
        created = self.store.query(STREAM, {"event_name": self.creation_event, self.child_address_arg: pool_address})
        event_args = created[0].get("args", {}) if created else {}
        snapshot = await self.build_snapshot(pool_address, event_args)
        self.store.put_projection(snapshot.address, snapshot.to_dict())
        return snapshot
