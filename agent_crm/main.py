import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agent_crm.api.router import get_api_router
from agent_crm.core.config import get_settings
from agent_crm.middleware.request_id import RequestIdLogFilter, RequestIdMiddleware
from agent_crm.services.insightly_client import get_insightly_client


logger = logging.getLogger(__name__)
settings = get_settings()

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] - %(message)s",
)
for handler in logging.getLogger().handlers:
    handler.addFilter(RequestIdLogFilter())
logging.getLogger("agent_crm").setLevel(settings.log_level)

# Silence noisy libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("hpack").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Close the pooled Insightly client on shutdown"""
    yield

    insightly = get_insightly_client()
    if insightly is not None:
        await insightly.close()
        logger.info("Insightly client closed")


app = FastAPI(title=settings.app_name, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",  # Next.js dashboard
        "http://localhost:3001",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestIdMiddleware)

app.include_router(get_api_router())


@app.get("/")
def root() -> dict:
    return {"message": "Agent CRM backend", "api_prefix": settings.api_prefix}
