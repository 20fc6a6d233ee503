# main.py
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from sqlalchemy.orm import Session, sessionmaker

import crud
import schemas
from config import Settings, load_settings
from database import create_session_factory, init_db
from digest import DigestAggregator, DigestEventStore

# --- LOGGING AND APP SETUP ---
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def get_db(request: Request):
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("FastAPI app starting up...")
    bot_task = None
    if app.state.start_bot:
        from bot import MintwatchBot

        bot = MintwatchBot(app.state.settings, app.state.session_factory)
        app.state.bot = bot
        bot_task = asyncio.create_task(bot.start(app.state.settings.discord_token))
        logger.info("Discord bot is starting in the background.")
    yield
    logger.info("FastAPI app shutting down...")
    if app.state.bot is not None:
        await app.state.bot.close()
    if bot_task is not None:
        bot_task.cancel()
        await asyncio.gather(bot_task, return_exceptions=True)
    logger.info("Discord bot has been shut down.")


def create_app(
    settings: Optional[Settings] = None,
    session_factory: Optional[sessionmaker] = None,
    start_bot: bool = True,
) -> FastAPI:
    """Builds the API. Settings and the session factory default to the environment."""
    settings = settings or load_settings()
    session_factory = session_factory or create_session_factory(settings.database_url)
    init_db(session_factory.kw["bind"])

    app = FastAPI(lifespan=lifespan, title="Mintwatch Bot API")
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.start_bot = start_bot
    app.state.bot = None
    app.state.store = DigestEventStore(session_factory)
    app.state.aggregator = DigestAggregator(session_factory, labels=settings.digest_addr_labels, max_rows=settings.digest_max_rows)

    @app.get("/health", tags=["Ops"])
    def health():
        bot = app.state.bot
        return {"status": "ok", "bot_ready": bool(bot is not None and bot.is_ready())}

    @app.post("/digest-events/", response_model=schemas.RecordResult, status_code=status.HTTP_201_CREATED, tags=["Digest"])
    def record_digest_event(event: Dict[str, Any]):
        """
        Records one mint/sale fact. Accepts the same key aliases as the
        on-chain workers. 409 for a duplicate, 422 for a rejected fact.
        """
        result = app.state.store.record_sync(event)
        if result.inserted:
            return result
        if result.reason == "duplicate":
            raise HTTPException(status_code=409, detail="Digest event already recorded")
        raise HTTPException(status_code=422, detail=result.reason or "Digest event rejected")

    @app.get("/digest/{guild_id}/summary", response_model=schemas.DigestSummary, tags=["Digest"])
    def read_digest_summary(guild_id: str, hours: int = Query(24, ge=1, le=168)):
        return app.state.aggregator.summarize_sync(guild_id, hours)

    @app.get("/digest/{guild_id}/settings", response_model=schemas.DigestSettings, tags=["Digest"])
    def read_digest_settings(guild_id: str, db: Session = Depends(get_db)):
        db_settings = crud.get_digest_settings(db, guild_id)
        if db_settings is None:
            raise HTTPException(status_code=404, detail="Digest not configured")
        return db_settings

    @app.post("/digest/{guild_id}/run", status_code=status.HTTP_202_ACCEPTED, tags=["Digest"])
    async def run_digest_now(guild_id: str):
        bot = app.state.bot
        if bot is None or not bot.is_ready():
            raise HTTPException(status_code=503, detail="Bot is not running")
        posted = await bot.scheduler.run_now(guild_id)
        if not posted:
            raise HTTPException(status_code=404, detail="Digest not configured")
        return {"posted": True}

    @app.get("/contracts/", response_model=List[schemas.TrackedContract], tags=["Tracking"])
    def list_tracked_contracts(db: Session = Depends(get_db)):
        return crud.get_tracked_contracts(db)

    return app


def run() -> None:
    settings = load_settings()
    uvicorn.run("main:create_app", factory=True, host="0.0.0.0", port=settings.api_port)


if __name__ == "__main__":
    run()
