# migrations/env.py
from __future__ import annotations

import logging
import os
import sys
from logging.config import fileConfig

from alembic import context

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

config = context.config
if config.config_file_name:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

logger = logging.getLogger("alembic.env")

# Host application tables sharing the database; never autogenerated here
FOREIGN_TABLES = {"session", "task", "calendar_event", "expense", "email_log"}


def include_object(object_, name, type_, reflected, compare_to):
    return not (type_ == "table" and name in FOREIGN_TABLES)


def process_revision_directives(ctx, revision, directives):
    cmd_opts = getattr(config, "cmd_opts", None)
    if cmd_opts and getattr(cmd_opts, "autogenerate", False) and directives[0].upgrade_ops.is_empty():
        directives[:] = []
        logger.info("No changes in schema detected.")


def _metadata():
    from wavebooks.extensions import db
    import wavebooks.models  # noqa: F401

    return db.metadata


def _configure(**kwargs) -> None:
    kwargs.setdefault("include_object", include_object)
    kwargs.setdefault("process_revision_directives", process_revision_directives)
    kwargs.setdefault("compare_type", True)
    context.configure(target_metadata=_metadata(), **kwargs)


def _engine():
    """DATABASE_URL when set (CI, containers), else the Flask-Migrate app's engine."""
    url = os.getenv("DATABASE_URL")
    if url:
        from sqlalchemy import create_engine
        from wavebooks.settings import _normalize_db_url

        return create_engine(_normalize_db_url(url)), {}

    from flask import current_app

    migrate = current_app.extensions["migrate"]
    return migrate.db.engine, dict(migrate.configure_args or {})


def run_migrations_offline() -> None:
    engine, conf_args = _engine()
    _configure(url=engine.url.render_as_string(hide_password=False), literal_binds=True, **conf_args)
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    engine, conf_args = _engine()
    with engine.connect() as connection:
        _configure(connection=connection, **conf_args)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
