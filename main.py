from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from campus_share.controllers.auth import router as auth_router
from campus_share.controllers.requests import router as requests_router
from campus_share.controllers.notification import router as notification_router
from campus_share.controllers.live import router as live_router
from campus_share.database.connection import init_db
from campus_share.services.errors import CampusShareError
from campus_share.utils.exception_handlers import campus_share_exception_handler

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    logger.info("Campus Share API started")
    yield


app = FastAPI(title="Campus Share API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(CampusShareError, campus_share_exception_handler)

app.include_router(auth_router, prefix="/auth", tags=["auth"])
app.include_router(requests_router, prefix="/api/requests", tags=["requests"])
app.include_router(notification_router, prefix="/api/notifications", tags=["notifications"])
app.include_router(live_router, prefix="/ws", tags=["live"])


@app.get("/")
async def root():
    return {"message": "Campus Share API is running"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
