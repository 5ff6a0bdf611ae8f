from contextlib import asynccontextmanager
from pathlib import Path

import conf
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from routes.base import router
from utils import auth, log

from clients.couchbase import check_connection, ensure_indexes
from jobs.scheduler import init_scheduler, shutdown_scheduler
from models.operations import common as operations

log.init(conf.get_log_level(), conf.get_environment())
logger = log.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Check database connection
    logger.info("Verifying Couchbase connection...")
    await check_connection()
    logger.info("Couchbase connection verified.")

    await ensure_indexes()

    app.state.auth_client = auth.AuthClient(conf.get_auth_config())

    bidding_conf = conf.get_bidding_conf()
    operations.configure(**bidding_conf.model_dump())

    init_scheduler(conf.get_scheduler_conf())

    yield

    shutdown_scheduler()


app = FastAPI(
    title="Agrimarket API",
    version="0.1.0",
    docs_url="/docs",
    lifespan=lifespan,
    debug=conf.get_http_expose_errors(),
)

app.include_router(router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

if not conf.validate():
    raise ValueError("Invalid configuration.")

http_conf = conf.get_http_conf()
logger.info(f"Starting API on port {http_conf.port}")

logger.debug("--- Registered Routes ---")
for route in app.routes:
    methods_set = getattr(route, "methods", None)
    methods = ", ".join(methods_set) if methods_set else "Any"
    path = getattr(route, "path", "<unknown>")
    logger.debug(f"{path} [{methods}]")

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=http_conf.host,
        port=http_conf.port,
        reload=http_conf.autoreload,
        log_level="info",
        reload_dirs=[str(Path(__file__).parent), "/models", "/clients"],
        log_config=None,
    )
