# main.py

# 1) Lo primero: cargar el .env
from app.core.config import load_config
settings = load_config()

# 2) Ahora importamos el resto con la configuración ya cargada
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from app.routes import nodes, posts, users
from app.core import errors
from app.core.db import init_db
from app.core.lightning import node_pool

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger("app")

# 3) Inicializar la base de datos (create_all)
init_db()

# Errores tipados del núcleo → HTTP
ERROR_STATUS = [
    (errors.MissingProof, 400),
    (errors.InvalidAmount, 400),
    (errors.InvalidPaymentHash, 400),
    (errors.InvoiceMismatch, 400),
    (errors.AuthError, 401),
    (errors.PaymentNotSettled, 402),
    (errors.SessionNotFound, 404),
    (errors.ActionNotFound, 404),
    (errors.NodeUnavailable, 503),
    (errors.NodeConnectionError, 502),
    (errors.UpstreamError, 502),
]

def status_for(exc: errors.LightpostError) -> int:
    if isinstance(exc, errors.UpstreamError) and exc.timeout:
        return 504
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


async def reap_idle_sessions(interval: float):
    while True:
        await asyncio.sleep(interval)
        node_pool.evict_idle()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("🚀 Arrancando, restaurando sesiones de nodos...")
    await node_pool.restore_sessions()
    reaper = asyncio.create_task(reap_idle_sessions(settings.NODE_POOL_REAP_INTERVAL))

    yield

    reaper.cancel()
    node_pool.close()
    logger.info("Apagado completo")


app = FastAPI(
    title="Lightpost",
    version="0.1.0",
    lifespan=lifespan,
)

@app.exception_handler(errors.LightpostError)
async def lightpost_error_handler(request: Request, exc: errors.LightpostError):
    status_code = status_for(exc)
    if status_code >= 500:
        logger.warning(f"{request.url.path}: {type(exc).__name__}: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={"error": type(exc).__name__, "detail": str(exc)},
    )

# Rutas principales
app.include_router(users.router, prefix="/api", tags=["Users"])
app.include_router(nodes.router, prefix="/api", tags=["Nodes"])
app.include_router(posts.router, prefix="/api", tags=["Posts"])

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
