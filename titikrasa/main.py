import logging

from fastapi import FastAPI

from titikrasa.config import settings
from titikrasa.db import get_db  # noqa: F401  re-exported for dependency overrides
from titikrasa.errors import register_error_handlers
from titikrasa.routes_auth import router as auth_router
from titikrasa.routes_dashboard import router as dashboard_router
from titikrasa.routes_inventory import router as inventory_router
from titikrasa.routes_kds import router as kds_router
from titikrasa.routes_menus import router as menus_router
from titikrasa.routes_pos import router as pos_router
from titikrasa.routes_procurement import router as procurement_router
from titikrasa.routes_resellers import router as resellers_router
from titikrasa.routes_settings import router as settings_router
from titikrasa.routes_users import router as users_router

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Titikrasa POS")
register_error_handlers(app)

for router in (
    auth_router,
    pos_router,
    kds_router,
    menus_router,
    resellers_router,
    inventory_router,
    procurement_router,
    settings_router,
    users_router,
    dashboard_router,
):
    app.include_router(router)


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}
