import logging
import os

import uvicorn
from fastapi import Depends, FastAPI

from marketfeed.api.routes import router as api_router
from marketfeed.config import get_settings
from marketfeed.logging_setup import configure_logging
from marketfeed.state import Services, build_services, get_services, set_services

log = logging.getLogger("main")

app = FastAPI(title="Market Feed API", version="0.1.0")
app.include_router(api_router)


@app.on_event("startup")
async def _startup():
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_dir)

    services = build_services(settings)
    set_services(services)

    # Tier refreshers, EOD index snapshot, history reload, alert purge
    services.start()
    log.info("Started app_env=%s provider=%s", settings.app_env, services.provider.__class__.__name__)


@app.on_event("shutdown")
async def _shutdown():
    try:
        services = get_services()
    except RuntimeError:
        return
    await services.stop()
    set_services(None)


@app.get("/health")
def health(services: Services = Depends(get_services)):
    return {
        "status": "ok",
        "app_env": services.settings.app_env,
        "provider_loaded": services.provider.__class__.__name__,
        "market": services.market_clock.status_line(),
        "market_open": services.market_clock.is_open(),
        "governor_load": services.governor.current_load(),
        "governor_cap": services.governor.max_calls,
        "scheduler_running": services.scheduler.running if services.scheduler else False,
    }


if __name__ == "__main__":
    uvicorn.run("marketfeed.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
