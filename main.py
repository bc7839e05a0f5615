from fastapi import FastAPI
from core import database
from core.middleware import RateLimitMiddleware, RequestIDMiddleware
from api.routers import login, logout, registration, practice, service_mappings, call_logs, appointments, nexhealth, webhooks
from fastapi.middleware.cors import CORSMiddleware
from config import settings
from sdk.nexhealth_sdk import NexHealthApi
from sdk.vapi_sdk import VapiApi
import logging

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

log = logging.getLogger("uvicorn.error")

origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
app = FastAPI(title="Laine Admin API")
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],

)
if settings.rate_limit_enabled:
    app.add_middleware(RateLimitMiddleware)
# added last so it wraps everything, including rate-limited responses
app.add_middleware(RequestIDMiddleware)

# one gateway client per process, so the NexHealth token cache is shared
app.state.nexhealth = NexHealthApi()
app.state.vapi = VapiApi()

app.include_router(registration.router)
app.include_router(login.router)
app.include_router(logout.router)
app.include_router(practice.router)
app.include_router(service_mappings.router)
app.include_router(call_logs.router)
app.include_router(appointments.router)
app.include_router(nexhealth.router)
app.include_router(webhooks.router)


@app.on_event("startup")
def verify_db_on_start():
    ok, msg = database.ping_db()
    if ok:
        log.info(msg)
        database.init_db()
    else:
        log.error(msg)


@app.get('/')
async def root():
     return {"status": "running", "message": "Welcome to the Laine admin API"}


@app.get('/health')
async def health():
    ok, msg = database.ping_db()
    return {"status": "ok" if ok else "degraded", "database": msg}
