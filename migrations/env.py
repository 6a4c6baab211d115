import importlib
import logging
import pkgutil
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from flask import current_app

config = context.config

# alembic.ini is optional; fall back to basic console logging
if config.config_file_name and Path(config.config_file_name).exists():
    fileConfig(config.config_file_name)
else:
    logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("alembic.env")


def get_engine():
    # Flask-SQLAlchemy >= 3.x
    return current_app.extensions["migrate"].db.engine


def get_engine_url():
    return get_engine().url.render_as_string(hide_password=False).replace("%", "%%")


config.set_main_option("sqlalchemy.url", get_engine_url())
target_db = current_app.extensions["migrate"].db


def get_metadata():
    if hasattr(target_db, "metadatas"):
        return target_db.metadatas[None]
    return target_db.metadata


def _load_billing_models():
    """Import every telehealth_billing.models module so autogenerate sees all tables."""
    import telehealth_billing.models as models_pkg
    for m in pkgutil.iter_modules(models_pkg.__path__):
        importlib.import_module(f"telehealth_billing.models.{m.name}")


def _skip_reflected_index_drops(object, name, type_, reflected, compare_to):
    # Indexes that exist only in the database are left alone
    if type_ == "index" and reflected and compare_to is None:
        return False
    return True


def run_migrations_offline():
    _load_billing_models()
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=get_metadata(),
        literal_binds=True,
        compare_type=True,
        include_object=_skip_reflected_index_drops,
        render_as_batch=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    def process_revision_directives(context_, revision, directives):
        if getattr(config.cmd_opts, "autogenerate", False):
            if directives[0].upgrade_ops.is_empty():
                directives[:] = []
                logger.info("No changes in schema detected.")

    conf_args = dict(current_app.extensions["migrate"].configure_args)
    conf_args.setdefault("process_revision_directives", process_revision_directives)
    conf_args.update(
        compare_type=True,
        include_object=_skip_reflected_index_drops,
        # SQLite needs batch mode for ALTERs
        render_as_batch=get_engine().dialect.name == "sqlite",
    )

    _load_billing_models()
    with get_engine().connect() as connection:
        context.configure(connection=connection, target_metadata=get_metadata(), **conf_args)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
