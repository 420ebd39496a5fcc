import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

import txwatch.constants as C
from txwatch.chain import ChainClient, JsonRpcChainClient
from txwatch.config import cfg
from txwatch.engine import SyncEngine, SyncStatus, periodic_update
from txwatch.errors import ChainUnavailable, InvalidAddress, InvariantViolation, NotSubscribed
from txwatch.logging_config import setup_logging
from txwatch.models import SubscriptionState, Transaction
from txwatch.store import SubscriberStore, build_store

log = logging.getLogger("txwatch.app")

ERROR_STATUS = {
    InvalidAddress: 422,
    NotSubscribed: 404,
    ChainUnavailable: 503,
    InvariantViolation: 409,
}


class TransactionOut(BaseModel):
    hash: str
    block_height: int
    sender: str
    recipient: str | None = None
    value: str

    @classmethod
    def from_tx(cls, tx: Transaction) -> "TransactionOut":
        return cls(hash=tx.hash, block_height=tx.block_height, sender=tx.sender, recipient=tx.recipient, value=tx.value)


class SubscriptionOut(BaseModel):
    address: str
    last_processed_height: int
    transaction_count: int

    @classmethod
    def from_state(cls, st: SubscriptionState) -> "SubscriptionOut":
        return cls(address=st.address, last_processed_height=st.last_processed_height, transaction_count=len(st.transactions))


class TransactionsResp(BaseModel):
    address: str
    last_processed_height: int
    transactions: list[TransactionOut]


class BlockResp(BaseModel):
    block_number: int


def create_app(
    config: dict | None = None,
    *,
    client: ChainClient | None = None,
    store: SubscriberStore | None = None,
) -> FastAPI:
    """Build the API. ``client`` and ``store`` default to the ones named in ``config``."""
    config = config if config is not None else cfg

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        node = config.get("node", {})
        sync = config.get("sync", {})
        stop = asyncio.Event()

        owned = None
        chain = client
        if chain is None:
            owned = JsonRpcChainClient(node.get("url", C.DEFAULT_RPC_URL), timeout=node.get("timeout", C.RPC_TIMEOUT))
            chain = owned
            retries = node.get("probe_retries", C.PROBE_RETRIES)
            if retries:
                log.info("Probing RPC endpoint %s...", owned.url)
                await owned.probe(retries, node.get("probe_delay", C.PROBE_DELAY))

        app.state.engine = SyncEngine(chain, store if store is not None else build_store(config))
        app.state.sync_status = SyncStatus()
        app.state.stop = stop

        try:
            async with asyncio.TaskGroup() as tg:
                if sync.get("enabled", True):
                    tg.create_task(
                        periodic_update(app.state.engine, stop, sync.get("interval", C.SYNC_INTERVAL), app.state.sync_status),
                        name="periodic_update",
                    )
                    log.info("Background tasks started: periodic_update")
                try:
                    yield
                finally:
                    log.info("Shutting down...")
                    stop.set()
        finally:
            if owned is not None:
                await owned.aclose()
            log.info("Shutdown complete")

    app = FastAPI(
        title="txwatch",
        lifespan=lifespan,
        openapi_tags=[
            {"name": "Chain", "description": "Ledger node queries"},
            {"name": "Subscriptions", "description": "Subscribe and unsubscribe addresses"},
            {"name": "Transactions", "description": "Transactions of subscribed addresses"},
        ],
    )

    async def txwatch_error(request: Request, exc: Exception) -> JSONResponse:
        status = next(code for kind, code in ERROR_STATUS.items() if isinstance(exc, kind))
        return JSONResponse(status_code=status, content={"detail": str(exc), "error": exc.__class__.__name__})

    for kind in ERROR_STATUS:
        app.add_exception_handler(kind, txwatch_error)

    app.include_router(r_chain)
    app.include_router(r_subscriptions)
    app.include_router(r_transactions)
    return app


r_chain = APIRouter(tags=["Chain"])
r_subscriptions = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])
r_transactions = APIRouter(prefix="/transactions", tags=["Transactions"])


def _engine(request: Request) -> SyncEngine:
    return request.app.state.engine


@r_chain.get("/health")
async def health(request: Request):
    status: SyncStatus = request.app.state.sync_status
    return {"status": "ok" if status.healthy else "degraded", "sync": status.to_dict()}


@r_chain.get("/block", response_model=BlockResp)
async def current_block(request: Request):
    return BlockResp(block_number=await _engine(request).get_current_block())


@r_chain.post("/sync")
async def sync_now(request: Request):
    """Run one batch advance now instead of waiting for the next tick."""
    report = await _engine(request).update_transactions_data(request.app.state.stop)
    request.app.state.sync_status.record(report)
    return report.to_dict()


@r_subscriptions.get("", response_model=list[SubscriptionOut])
async def list_subscriptions(request: Request):
    states = await _engine(request).store.get_all()
    return [SubscriptionOut.from_state(st) for st in states.values()]


@r_subscriptions.post("/{address}", response_model=SubscriptionOut, status_code=201)
async def subscribe(address: str, request: Request):
    st = await _engine(request).subscribe_address(address)
    return SubscriptionOut.from_state(st)


@r_subscriptions.delete("/{address}", status_code=204)
async def unsubscribe(address: str, request: Request):
    await _engine(request).unsubscribe_address(address)


@r_transactions.get("/{address}", response_model=TransactionsResp)
async def get_transactions(address: str, request: Request):
    """Catch the address up to the chain head and return what was found on the way."""
    result = await _engine(request).catch_up(address, request.app.state.stop)
    return TransactionsResp(
        address=result.address,
        last_processed_height=result.last_processed_height,
        transactions=[TransactionOut.from_tx(tx) for tx in result.transactions],
    )


@r_transactions.get("/{address}/history", response_model=TransactionsResp)
async def get_history(address: str, request: Request):
    st = await _engine(request).get_subscription(address)
    return TransactionsResp(
        address=st.address,
        last_processed_height=st.last_processed_height,
        transactions=[TransactionOut.from_tx(tx) for tx in st.transactions],
    )


setup_logging()
app = create_app()
