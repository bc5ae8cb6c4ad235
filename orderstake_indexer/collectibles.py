import logging
from typing import Any, Mapping

from .connection import ContractHandle
from .engine import EventKind, IndexingEngine
from .normalize import amount, stringify
from .projections import TokenInfoCache, build_collection_snapshot

log = logging.getLogger(__name__)

COLLECTIONS = "collections"
LISTINGS = "listings"
SALES = "sales"

COLLECTION_CREATED = EventKind("CollectionCreated", COLLECTIONS, {"mintPrice": amount()})
BURN_AMOUNT_UPDATED = EventKind("BurnAmountUpdated", COLLECTIONS, {"oldAmount": amount(), "newAmount": amount()})

TOKEN_LISTED = EventKind("TokenListed", LISTINGS, {"price": amount()})
TOKEN_UNLISTED = EventKind("TokenUnlisted", LISTINGS)
TOKEN_SOLD = EventKind("TokenSold", SALES, {"price": amount(), "marketplaceFee": amount()})
REVENUE_WITHDRAWN = EventKind("RevenueWithdrawn", SALES, {"amount": amount()})


class CollectiblesEngine(IndexingEngine):
    """NFT launch factory and the collections it deploys."""

    name = "collectibles"
    factory_contract = "OrderNFTLaunch"
    child_interface = "OrderNFTCollection"
    creation_event = "CollectionCreated"
    child_address_arg = "collection"
    child_label = "collection"
    checkpoint_stream = COLLECTIONS
    factory_events = (COLLECTION_CREATED, BURN_AMOUNT_UPDATED)
    child_events = (TOKEN_LISTED, TOKEN_UNLISTED, TOKEN_SOLD, REVENUE_WITHDRAWN)

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.tokens = TokenInfoCache(self.connection)

    async def process_event(self, kind: EventKind, entry: Mapping[str, Any], handle: ContractHandle) -> bool:
        if kind is not COLLECTION_CREATED:
            return await super().process_event(kind, entry, handle)

        record = self.normalize(kind, entry, handle)
        if self.store.contains(kind.stream, record.key):
            return False

        args = stringify(dict(entry.get("args") or {}))
        snapshot = await build_collection_snapshot(
            args[self.child_address_arg], args, self.tokens, created_block=record.block_number
        )
        rules = {"mintPrice": amount(snapshot.mint_decimals)}
        record = self.normalize(kind, entry, handle, rules, {"mintSymbol": snapshot.display()["mintSymbol"]})

        added = self.append(kind, record)
        if added:
            self.store.put_projection(snapshot.address, snapshot.to_dict())
            log.info("Saved collection snapshot for %s", record.display.get("collection"))
        return added

    async def rebuild_projection(self, address: str, record: Mapping[str, Any]) -> bool:
        snapshot = await build_collection_snapshot(
            address, record.get("args") or {}, self.tokens, created_block=record.get("block_number")
        )
        self.store.put_projection(snapshot.address, snapshot.to_dict())
        return True
