import sys
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from paypulse import auth, billing, tasks
from paypulse.config import settings
from paypulse.database import engine
from paypulse.models import Base

logger.remove()
logger.add(sys.stderr, level=settings.LOG_LEVEL)

app = FastAPI(title="PayPulse Bill Calendar API")

# Allow requests from frontend URL
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL] if settings.FRONTEND_URL else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router, prefix="/auth")
app.include_router(tasks.router, prefix="/api")
app.include_router(billing.router, prefix="/api/stripe")

@app.on_event("startup")
def startup_event():
    logger.info("Starting application...")
    # Auto-create database tables (use migrations in production)
    Base.metadata.create_all(bind=engine)
