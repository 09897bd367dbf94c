from contextlib import asynccontextmanager
from typing import Optional
import asyncio, logging, os, signal, sys

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from rich.logging import RichHandler
import uvicorn

from .config import ConfigError, get_config_from_env
from .db import EscrowStore
from .ethereum_watcher import EthereumWatcher
from .query import EscrowQuery, QueryError

log = logging.getLogger("relayer")


def setup_logging():
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(name)-12s %(levelname)-8s %(message)s",
        handlers=[RichHandler(rich_tracebacks=True)],
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    config = get_config_from_env()
    store = EscrowStore(config.store_path).open()
    app.state.query = EscrowQuery(store)
    watcher = EthereumWatcher(config, store)
    app.state.watcher = watcher
    try:
        await watcher.start()
        yield
    finally:
        await watcher.stop()
        store.close()
        log.info("Shutting down the application")


def _dump(models) -> list:
    return [m.model_dump(mode="json", by_alias=True) for m in models]


def create_app(store: Optional[EscrowStore] = None) -> FastAPI:
    """
    With a store the app only serves queries over it; without one it owns
    the full lifecycle (config, store, watcher) through `lifespan`.
    """
    app = FastAPI(lifespan=None if store is not None else lifespan)
    if store is not None:
        app.state.query = EscrowQuery(store)

    @app.exception_handler(QueryError)
    async def query_error_handler(request: Request, exc: QueryError):
        return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()]
        return JSONResponse(status_code=400, content={"success": False, "error": "; ".join(errors)})

    @app.exception_handler(Exception)
    async def internal_error_handler(request: Request, exc: Exception):
        log.error(f"Unhandled error on {request.url.path}: {exc}", exc_info=exc)
        return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    @app.get("/escrows")
    async def list_escrows(request: Request, chain_id: Optional[int] = None, status: Optional[str] = None):
        escrows = request.app.state.query.list_escrows(chain_id=chain_id, status=status)
        return {"success": True, "data": _dump(escrows), "count": len(escrows)}

    @app.get("/escrows/by-hashlock/{hashlock}")
    async def get_escrow_by_hashlock(request: Request, hashlock: str, chain_id: int):
        escrow = request.app.state.query.get_escrow_by_hashlock(hashlock, chain_id)
        if escrow is None:
            return JSONResponse(status_code=404, content={"success": False, "error": "Escrow not found"})
        return {"success": True, "data": escrow.model_dump(mode="json", by_alias=True)}

    @app.get("/escrows/{escrow_address}")
    async def get_escrow(request: Request, escrow_address: str, chain_id: int):
        escrow = request.app.state.query.get_escrow(escrow_address, chain_id)
        if escrow is None:
            return JSONResponse(status_code=404, content={"success": False, "error": "Escrow not found"})
        return {"success": True, "data": escrow.model_dump(mode="json", by_alias=True)}

    @app.get("/events")
    async def list_events(
        request: Request,
        escrow_address: Optional[str] = None,
        hashlock: Optional[str] = None,
        chain_id: Optional[int] = None,
    ):
        events = request.app.state.query.list_events(
            escrow_address=escrow_address, hashlock=hashlock, chain_id=chain_id
        )
        return {"success": True, "data": _dump(events), "count": len(events)}

    @app.get("/checkpoints/{chain_id}")
    async def get_checkpoint(request: Request, chain_id: int):
        return {
            "success": True,
            "chainId": chain_id,
            "lastProcessedBlock": request.app.state.query.get_last_processed_block(chain_id),
        }

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    return app


app = create_app()


async def run_listener():
    """Run the watcher without the HTTP surface until SIGINT/SIGTERM."""
    setup_logging()
    try:
        config = get_config_from_env()
    except ConfigError as e:
        log.error(str(e))
        sys.exit(1)
    with EscrowStore(config.store_path) as store:
        watcher = EthereumWatcher(config, store)
        await watcher.start()
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
        waiter = asyncio.create_task(watcher.wait())
        stopper = asyncio.create_task(stop.wait())
        try:
            await asyncio.wait({waiter, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            log.info("Shutting down...")
            stopper.cancel()
            waiter.cancel()
            await asyncio.gather(waiter, stopper, return_exceptions=True)
            await watcher.stop()
        if waiter.done() and not waiter.cancelled() and waiter.exception() is not None:
            raise waiter.exception()


def listen():
    asyncio.run(run_listener())


def serve():
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("escrow_relayer.main:app", host="0.0.0.0", port=port)


if __name__ == "__main__":
    serve()
