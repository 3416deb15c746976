import logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from .config import LOG_LEVEL
from .routers import admins, auth, member_lists, responses, surveys
from .db import init_db

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="HOA Survey Portal API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
def on_startup():
    init_db()

@app.exception_handler(Exception)
async def unhandled_exception(request: Request, exc: Exception):
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})

app.include_router(auth.router, prefix="/api/auth", tags=["auth"])
app.include_router(admins.router, prefix="/api/admins", tags=["admins"])
app.include_router(member_lists.router, prefix="/api/member-lists", tags=["member-lists"])
app.include_router(surveys.router, prefix="/api/surveys", tags=["surveys"])
app.include_router(responses.router, prefix="/api/responses", tags=["responses"])

@app.get("/")
def root():
    return {"ok": True, "service": "hoa-survey-portal"}
