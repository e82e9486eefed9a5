"""Entry point for the Codebase Time Machine FastAPI application."""

import logging
import os
import shutil

# Git installs GitPython should look at when git is not on PATH (Windows)
WINDOWS_GIT_PATHS = [
    r"C:\Program Files\Git\cmd\git.exe",
    r"C:\Program Files (x86)\Git\cmd\git.exe",
]


def _find_git_executable() -> str | None:
    configured = os.getenv("GIT_PYTHON_GIT_EXECUTABLE") or shutil.which("git")
    if configured:
        return configured
    return next((path for path in WINDOWS_GIT_PATHS if os.path.exists(path)), None)


_git_executable = _find_git_executable()
if not _git_executable:
    raise RuntimeError(
        "No git binary found. Install Git (https://git-scm.com/downloads) or point "
        "GIT_PYTHON_GIT_EXECUTABLE at it"
    )
os.environ["GIT_PYTHON_GIT_EXECUTABLE"] = _git_executable

import git

git.refresh(path=_git_executable)

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import router as api_router

logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Codebase Time Machine Backend", version="0.1.0")

# Comma-separated origins; "*" during local development
cors_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)


@app.get("/")
async def root() -> dict:
    """Heartbeat confirming the API is up."""
    return {"status": "ok", "app": "Codebase Time Machine Backend"}
