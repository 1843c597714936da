"""Shared FastAPI dependencies."""

import os
import threading

from fastapi import Request

from utils.storage_adapters import StorageAdapter, create_storage_adapter

_storage_lock = threading.Lock()


def storage_from_env() -> StorageAdapter:
    """Cache storage from REPO_CACHE_BACKEND (memory, file, table) and REPO_CACHE_DIR."""
    directory = os.environ.get("REPO_CACHE_DIR") or ".repo_cache"
    return create_storage_adapter(
        os.environ.get("REPO_CACHE_BACKEND", "file"),
        directory=directory,
        db_path=os.path.join(directory, "cache.db"),
    )


def get_storage(request: Request) -> StorageAdapter:
    """The app's cache storage, created from the environment on first use."""
    state = request.app.state
    with _storage_lock:
        if getattr(state, "storage", None) is None:
            state.storage = storage_from_env()
        return state.storage


def get_user_id(request: Request) -> str:
    """Caller identity: X-User-Id header, else the client address."""
    user_id = (request.headers.get("X-User-Id") or "").strip()
    if user_id:
        return user_id
    return request.client.host if request.client else "anonymous"
