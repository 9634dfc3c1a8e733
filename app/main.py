import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core import config
from app.core.database import SessionLocal
from app.core.errors import AppError, ExternalUnavailable
from app.routes import auth, authme, users, roles, rbac, players
from app.services.seed import seed_rbac_defaults

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("portal.main")
logger.setLevel(logging.INFO)


app = FastAPI(title="AuthMe binding portal")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AppError)
def handle_app_error(request: Request, exc: AppError):
    if isinstance(exc, ExternalUnavailable):
        logger.warning(f"{exc.dep} unavailable at stage {exc.stage} on {request.url.path}: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


# Routers - Auth
app.include_router(auth.router)
app.include_router(authme.router)

# Admin Routers
app.include_router(users.router)
app.include_router(roles.router)
app.include_router(rbac.router)
app.include_router(players.router)


@app.on_event("startup")
def on_startup():
    # Default permissions, system roles and the optional first admin
    db = SessionLocal()
    try:
        seed_rbac_defaults(db)
    finally:
        db.close()
