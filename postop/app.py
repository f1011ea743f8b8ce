"""
Post-op Follow-up Server — Application Factory
"""

import os
import time
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# ── 1. Configure logging ──
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("postop-server")

_startup_time = time.time()
logger.info("Server initialization started...")

# ── 2. Create FastAPI app ──
app = FastAPI(title="Post-op Follow-up Server")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── 3. Register routers ──
from postop.routers import health, webhook

app.include_router(health.router)
app.include_router(webhook.router)


# ── 4. Startup / shutdown ──
@app.on_event("startup")
async def startup_event():
    """Wire the pipeline.  Missing webhook credentials abort startup."""
    port = os.environ.get("PORT", "8080")
    logger.info("=" * 60)
    logger.info("Post-op Follow-up Server Starting")
    logger.info(f"Listening on port: {port}")

    from postop.gateway.setup import initialize_gateway
    await initialize_gateway()

    logger.info(f"Total init time: {time.time() - _startup_time:.2f}s")
    logger.info("=" * 60)


@app.on_event("shutdown")
async def shutdown_event():
    from postop.gateway.setup import shutdown_gateway
    await shutdown_gateway()
