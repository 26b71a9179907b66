import asyncio
import logging

from fastapi import FastAPI

from .db import Base, engine, ensure_schema, SessionLocal
from .cleanup import run_housekeeping
from .scoring.processor import run_worker_pass
from .settings import settings
from .routers import auth
from .routers import swipe
from .routers import scoring
from .routers import academia

logging.basicConfig(
	level=getattr(logging, settings.log_level.upper(), logging.INFO),
	format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

HOUSEKEEPING_INTERVAL_S = 60 * 60

app = FastAPI(title="NeoLingus API")
app.include_router(auth.router)
app.include_router(swipe.router)
app.include_router(scoring.router)
app.include_router(academia.router)


@app.get("/info")
def root():
	return {
		"status": "ok",
		"scoring_provider": settings.scoring_default_provider,
		"scoring_worker": settings.scoring_worker_interval_seconds > 0,
		"score_on_complete": settings.score_on_complete,
	}


def _housekeeping() -> None:
	db = SessionLocal()
	try:
		result = run_housekeeping(db)
		logger.info("Housekeeping: %s", result)
	except Exception:
		logger.exception("Housekeeping failed")
	finally:
		db.close()


async def _housekeeping_watcher():
	while True:
		await asyncio.sleep(HOUSEKEEPING_INTERVAL_S)
		_housekeeping()


async def _scoring_worker(interval: int):
	while True:
		await asyncio.sleep(interval)
		try:
			await run_worker_pass()
		except Exception:
			logger.exception("Scoring worker pass failed")


@app.on_event("startup")
async def startup_event():
	Base.metadata.create_all(bind=engine)
	ensure_schema()
	_housekeeping()
	asyncio.create_task(_housekeeping_watcher())
	if settings.scoring_worker_interval_seconds > 0:
		logger.info("Scoring worker every %ds", settings.scoring_worker_interval_seconds)
		asyncio.create_task(_scoring_worker(settings.scoring_worker_interval_seconds))
