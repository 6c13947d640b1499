from __future__ import annotations

import os
import random
import time

from fastapi import FastAPI, HTTPException


VERSION = os.getenv("VERSION", "dev")
STARTUP_DELAY_S = float(os.getenv("STARTUP_DELAY_S", "0"))
FAIL_RATE = float(os.getenv("FAIL_RATE", "0"))  # 0..1

app = FastAPI(title=f"Example Service {VERSION}")

APP_STATE = {"started_at": time.monotonic(), "ready": True, "alive": True}


@app.get("/startup")
def startup() -> dict[str, str]:
    if time.monotonic() - APP_STATE["started_at"] < STARTUP_DELAY_S:
        raise HTTPException(status_code=503, detail="starting")
    return {"status": "healthy"}


@app.get("/ready")
def ready() -> dict[str, str]:
    if not APP_STATE["ready"]:
        raise HTTPException(status_code=503, detail="not ready")
    return {"status": "healthy"}


@app.get("/live")
def live() -> dict[str, str]:
    # Optional fault injection to demo replacement of failed instances.
    if not APP_STATE["alive"] or (FAIL_RATE > 0 and random.random() < FAIL_RATE):
        time.sleep(3)
        raise HTTPException(status_code=503, detail="dead")
    return {"status": "healthy"}


@app.post("/simulate/{what}")
def simulate(what: str) -> dict[str, str]:
    if what == "unready":
        APP_STATE["ready"] = False
    elif what == "dead":
        APP_STATE["alive"] = False
    elif what == "reset":
        APP_STATE["ready"] = True
        APP_STATE["alive"] = True
    else:
        raise HTTPException(status_code=404, detail=f"unknown simulation {what!r}")
    return {"msg": what}
