from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# IMPORTANT:
# This imports ALL models so SQLAlchemy registers tables correctly
import lnvoucher.models  # noqa: F401

from lnvoucher.core.config import settings
from lnvoucher.core.db import init_db
from lnvoucher.core.logging import configure_logging

# Routers
from lnvoucher.routers.vouchers import router as vouchers_router
from lnvoucher.routers.admin_vouchers import router as admin_vouchers_router
from lnvoucher.routers.lnurl import router as lnurl_router

configure_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    yield


def create_app(*, init_tables: bool = True) -> FastAPI:
    app = FastAPI(title="lnvoucher", lifespan=lifespan if init_tables else None)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Issuance + redemption
    app.include_router(vouchers_router)

    # LNURL-withdraw for wallet apps
    app.include_router(lnurl_router)

    # Admin history / stats / cancel
    app.include_router(admin_vouchers_router)

    return app


app = create_app()
