from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles

from config import Settings
from db import create_db_and_tables, make_engine
from errors import register_error_handlers
from logging_config import configure_logging
from routers import activity, auth, items, loans
from services.accounting import AccountingService
from services.activity import ActivityRecorder
from services.uploads import ImageStore


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = app.state.settings
    settings.upload_dir.mkdir(parents=True, exist_ok=True)
    create_db_and_tables(app.state.engine)
    yield
    app.state.accounting.close()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    engine = make_engine(settings)

    app = FastAPI(title="LabLoan", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.accounting = AccountingService(
        engine,
        ActivityRecorder(engine),
        ImageStore(settings.upload_dir),
        retry_attempts=settings.store_retry_attempts,
        retry_backoff=settings.store_retry_backoff,
    )

    register_error_handlers(app)
    app.mount(
        "/uploads",
        StaticFiles(directory=settings.upload_dir, check_dir=False),
        name="uploads",
    )

    @app.get("/")
    def read_root():
        return {"message": "LabLoan equipment service is running"}

    app.include_router(auth.router)
    app.include_router(items.router, prefix="/items")
    app.include_router(loans.router, prefix="/loans")
    app.include_router(activity.router, prefix="/activity")

    return app


app = create_app()
