from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.env import env_str
from core.logging import setup_logging
from web import routers

setup_logging()

app = FastAPI(
    title="Subscription Billing API",
    description="Subscription lifecycle, checkout, entitlements and processor webhooks.",
    version="0.1.0",
)

origins = [
    origin.strip()
    for origin in (env_str("CORS_ALLOW_ORIGINS", "http://localhost:3000") or "").split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/", summary="Health Check", tags=["Default"])
def health_check():
    return {"status": "ok", "message": "Subscription Billing API is running."}


app.include_router(routers.subscription.router, prefix="/api/v1")
app.include_router(routers.webhooks.router, prefix="/api/v1")
app.include_router(routers.health.router, prefix="/api/v1")
