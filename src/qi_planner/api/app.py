from __future__ import annotations

import os
from importlib import metadata

from fastapi import FastAPI

from qi_planner.api.projects_api import router as projects_router
from qi_planner.api.requirements_api import router as requirements_router

app = FastAPI(title="qi-planner")


@app.get("/healthz")
def healthz() -> dict:
    return {"status": "ok"}


@app.get("/version")
def version() -> dict:
    try:
        payload: dict = {"version": metadata.version("qi-planner")}
    except metadata.PackageNotFoundError:
        payload = {"version": "0.1.0"}
    sha = (os.getenv("QIP_GIT_SHA") or "").strip()
    if sha:
        payload["git_sha"] = sha
    return payload


# Project pipeline (stages, checkpoints, audit) + pure requirement planning.
app.include_router(projects_router)
app.include_router(requirements_router)
