import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlmodel import Session

load_dotenv()

from core.config import settings  # noqa: E402
from core.database import create_db_and_tables, engine  # noqa: E402
from routes.billing import router as billing_router  # noqa: E402
from routes.webhooks import router as webhooks_router  # noqa: E402
from services.checkout import CheckoutService  # noqa: E402

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# =========================================
# 🧹 Periodic stale-checkout sweep
# =========================================
def run_stale_checkout_sweep() -> int:
    with Session(engine) as session:
        return CheckoutService(session).sweep_stale_checkouts()


async def stale_checkout_sweeper(interval_seconds: int):
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(run_stale_checkout_sweep)
        except Exception as e:
            logger.error(f"❌ Stale checkout sweep failed: {e}")


# =========================================
# 🏁 Lifespan (DB initialization)
# =========================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    create_db_and_tables()
    print("✅ Database tables created on startup.")

    sweeper = None
    if settings.BILLING_SWEEP_INTERVAL_SECONDS > 0:
        sweeper = asyncio.create_task(stale_checkout_sweeper(settings.BILLING_SWEEP_INTERVAL_SECONDS))
        print(f"✅ Stale checkout sweep every {settings.BILLING_SWEEP_INTERVAL_SECONDS}s.")
    yield
    if sweeper:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
    print("✅ Application shutting down.")

# =========================================
#  ✅ FastAPI App
# =========================================
app = FastAPI(lifespan=lifespan, title="Billing Backend")

allowed_origins = [
    settings.FRONTEND_URL.rstrip("/"),
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =========================================
# 📦 Routers
# =========================================
app.include_router(billing_router, prefix="/billing", tags=["Billing"])
app.include_router(webhooks_router, prefix="/webhooks", tags=["Webhooks"])


# =========================================
# 🩺 Health Check
# =========================================
@app.get("/health")
def health_check():
    return {"status": "ok", "message": "Backend is running"}
