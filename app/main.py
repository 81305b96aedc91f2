import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request

from starlette.middleware.base import BaseHTTPMiddleware
from app.config import settings
from app.routes import auth, scanner, transactions, returns, mqtt
from app.services.station import build_station

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class LoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log incoming requests for debugging."""
    async def dispatch(self, request: Request, call_next):
        auth_header = request.headers.get("Authorization")
        client_ip = request.client.host if request.client else "unknown"
        logger.info(f"{request.method} {request.url.path} - IP: {client_ip} - Auth: {'Present' if auth_header else 'Missing'}")

        response = await call_next(request)
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager to start/stop the scanner bridge with FastAPI."""
    station = app.state.station
    station.start_scanner_bridge(asyncio.get_running_loop())

    yield

    await station.shutdown()


app = FastAPI(
    title="Scan Station API",
    description="Borrow confirmation and return intake for reusable packaging",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)
app.state.station = build_station()

# Logging middleware (last, to log everything)
app.add_middleware(LoggingMiddleware)

# Include routers
app.include_router(auth.router)
app.include_router(scanner.router)
app.include_router(transactions.router)
app.include_router(returns.router)
app.include_router(mqtt.router)

@app.get("/")
async def root():
    return {"message": "Scan Station API", "version": "1.0.0"}

@app.get("/api/health")
async def health_check():
    return {"status": "healthy"}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=True
    )
