import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from examprep.core import config
from examprep.core.logging_config import sanitize_log_data, setup_logging
from examprep.api.routes import billing, billing_webhook, health

setup_logging(config.LOG_LEVEL, config.LOG_DIR)
logger = logging.getLogger(__name__)

logger.info("Starting with settings: %s", sanitize_log_data({
    "database_url": config.DATABASE_URL,
    "stripe_secret_key": config.STRIPE_SECRET_KEY,
    "stripe_webhook_secret": config.STRIPE_WEBHOOK_SECRET,
    "billing_currency": config.BILLING_CURRENCY,
    "cors_origins": config.CORS_ORIGINS,
}))

if config.RUN_MIGRATIONS:
    from examprep.db.migrate import run_migrations
    run_migrations()


# ============================================
# ✅ FASTAPI APP INIT
# ============================================

app = FastAPI(title="ConcurseIA Billing API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Authorization", "Content-Type"],
)


# ============================================
# ✅ REGISTER ALL ROUTERS
# ============================================

app.include_router(billing.router)
app.include_router(billing_webhook.router)
app.include_router(health.router)


@app.get("/")
def root():
    return {"status": "ConcurseIA API running"}
