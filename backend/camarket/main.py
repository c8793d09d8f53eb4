from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

from camarket.logging_config import setup_logging
from camarket.routers import auth, coupons, events, payments, providers, requests
from camarket.services.database import database
from camarket.settings import LOG_FILE, LOG_LEVEL, parse_csv_env

setup_logging(level=LOG_LEVEL, logfile=LOG_FILE)

app = FastAPI(title="CA Marketplace Settlement API", version="0.1.0")

cors_origins = parse_csv_env("CORS_ORIGINS", "*")
allow_any_origin = len(cors_origins) == 1 and cors_origins[0] == "*"

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    # Browsers reject wildcard CORS with credentials enabled.
    allow_credentials=not allow_any_origin,
    allow_methods=["*"],
    allow_headers=["*"],
)

trusted_hosts = parse_csv_env("TRUSTED_HOSTS", "*")
if not (len(trusted_hosts) == 1 and trusted_hosts[0] == "*"):
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=trusted_hosts)

app.include_router(requests.router)
app.include_router(payments.router)
app.include_router(coupons.router)
app.include_router(providers.router)
app.include_router(events.router)
app.include_router(auth.router)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/ready")
def ready():
    with database.read() as conn:
        conn.execute("SELECT 1").fetchone()
    return {"status": "ready", "db_path": database.db_path}
