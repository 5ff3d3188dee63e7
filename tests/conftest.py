"""Shared pytest fixtures for tests."""

import asyncio
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
os.environ.setdefault("BOT_TOKEN", "123456789:TESTTOKENEXAMPLEEXAMPLEEXAMPLEEX")

import db  # noqa: E402


@pytest.fixture
def task_spy():
    """Return a task list and a replacement for ``asyncio.create_task``."""
    tasks = []
    orig_create_task = asyncio.create_task

    def fake_create_task(coro):
        task = orig_create_task(coro)
        tasks.append(task)
        return task

    return tasks, fake_create_task


@pytest.fixture
def db_file(tmp_path, monkeypatch):
    """Point the store at a fresh SQLite file; tests still call ``init_db``."""
    path = tmp_path / "test.sqlite"
    monkeypatch.setenv("DB_PATH", str(path))
    monkeypatch.setattr(db, "DB_PATH", str(path))
    return path
