import asyncio
import logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from app.config import settings
from app.modules.users import routes as users_routes
from app.modules.deployments import routes as deployments_routes
from app.modules.subscriptions import routes as subscriptions_routes

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)
logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
app = FastAPI(
    title=settings.app_name,
    debug=settings.debug,
    redirect_slashes=False,
)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception: %s", exc)
    if settings.is_production:
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})
    return JSONResponse(status_code=500, content={"detail": str(exc)})


class SecurityHeadersMiddleware:
    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def send_with_headers(message):
            if message["type"] == "http.response.start":
                message.setdefault("headers", [])
                message["headers"].extend([
                    (b"X-Content-Type-Options", b"nosniff"),
                    (b"X-Frame-Options", b"DENY"),
                ])
            await send(message)

        await self.app(scope, receive, send_with_headers)


app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include module routes
app.include_router(users_routes.router, prefix="/api/v1")
app.include_router(deployments_routes.router, prefix="/api/v1")
app.include_router(subscriptions_routes.router, prefix="/api/v1")

_background_tasks = set()


@app.on_event("startup")
async def startup_event():
    logger.info("Application startup")

    from app.modules.deployments.orchestrator import get_orchestrator
    try:
        leases = await asyncio.to_thread(lambda: get_orchestrator().rebuild_port_leases())
        logger.info(f"Port lease index rebuilt with {leases} port(s)")
    except Exception as e:
        logger.error(f"Could not rebuild port leases: {str(e)}")

    if settings.monitor_enabled:
        from app.modules.subscriptions.monitor import monitor_loop
        task = asyncio.create_task(monitor_loop())
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)
        logger.info(f"Subscription monitor started - sweeping every {settings.monitor_interval_seconds}s")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Application shutdown")
    for task in list(_background_tasks):
        task.cancel()
    from app.modules.deployments.ssh_channel import get_channel
    get_channel().disconnect()


@app.get("/")
async def root():
    return {"message": f"Welcome to {settings.app_name}", "status": "healthy"}


@app.get("/health")
@limiter.exempt
async def health():
    return {"status": "healthy"}


@app.get("/ready")
@limiter.exempt
def ready():
    """Readiness check: managed host reachable and nginx running."""
    from app.modules.deployments.errors import ConnectivityError
    from app.modules.deployments.nginx_provisioner import NginxProvisioner
    from app.modules.deployments.ssh_channel import get_channel
    try:
        nginx = NginxProvisioner(get_channel()).status()
    except ConnectivityError as e:
        return JSONResponse(status_code=503, content={"status": "unavailable", "detail": str(e)})
    if not nginx["running"]:
        return JSONResponse(status_code=503, content={"status": "degraded", "nginx": nginx})
    return {"status": "ready", "nginx": nginx}
