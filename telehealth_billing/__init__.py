import os
from flask import Flask

# Load .env only for local/dev. In prod, env vars come from the platform.
if os.getenv("APP_ENV", "development") != "production":
    from dotenv import load_dotenv
    load_dotenv(".env", override=False)


from .config import get_config
from .extensions import db, migrate
from .observability import init_logging, init_sentry

def create_app(config_object=None):
    app = Flask(__name__)

    # Config: clean, explicit, class-based
    app.config.from_object(config_object or get_config())

    # --- Required env validation for prod-like envs (staging/production) ---
    def _require(name: str):
        val = os.getenv(name) or app.config.get(name)
        if not val:
            raise RuntimeError(f"Missing required environment variable: {name}")
        return val

    env_key = (os.getenv("APP_ENV", "development") or "development").lower()
    if env_key in ("staging", "production"):
        # Enforce hard requirements at startup (not at import time)
        _require("SECRET_KEY")
        _require("DATABASE_URL")
        _require("STRIPE_SECRET_KEY")

    init_logging(app)
    init_sentry(app)

    # Init extensions
    db.init_app(app)
    migrate.init_app(app, db, directory="migrations")

    # Models must be imported so metadata (and migrations) see every table
    from . import models  # noqa: F401

    # CLI commands (scheduler entry points and ops utilities)
    from .cli import register_cli
    register_cli(app)

    if not app.config.get("STRIPE_SECRET_KEY"):
        app.logger.warning(
            "Stripe secret key missing; payment gateway calls will fail"
        )

    return app
