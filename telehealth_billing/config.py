import json
import os


def _tax_rates_from_env():
    raw = os.environ.get("BILLING_TAX_RATES")
    if not raw:
        return {"CA": "0.0825", "NY": "0.085", "TX": "0.0625"}
    # e.g. BILLING_TAX_RATES='{"CA": "0.0825", "WA": "0.065"}'
    return {k.upper(): str(v) for k, v in json.loads(raw).items()}


class BaseConfig:
    # Secrets (env in prod; dev/test may use defaults)
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-not-secure")

    # Database (env in prod; dev/test may use default)
    try:
        from dotenv import dotenv_values
        _ENV_FALLBACK = dotenv_values(".env")
    except Exception:
        _ENV_FALLBACK = {}
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL") or _ENV_FALLBACK.get("DATABASE_URL") or "sqlite:///:memory:"
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging / misc
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # --- Stripe (payment gateway) ---
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")

    # --- Billing engine ---
    BILLING_DEFAULT_CURRENCY = os.getenv("BILLING_DEFAULT_CURRENCY", "USD")
    BILLING_TAX_RATES = _tax_rates_from_env()
    BILLING_DEFAULT_TAX_RATE = os.getenv("BILLING_DEFAULT_TAX_RATE", "0.06")
    BILLING_BASE_SHIPPING = os.getenv("BILLING_BASE_SHIPPING", "5.99")
    BILLING_EXPRESS_MULTIPLIER = os.getenv("BILLING_EXPRESS_MULTIPLIER", "2.5")
    BILLING_GRACE_PERIOD_DAYS = int(os.getenv("BILLING_GRACE_PERIOD_DAYS", "7"))

    # --- Recurring billing ---
    BILLING_DEFAULT_CADENCE_DAYS = int(os.getenv("BILLING_DEFAULT_CADENCE_DAYS", "30"))
    BILLING_MAX_PAYMENT_RETRIES = int(os.getenv("BILLING_MAX_PAYMENT_RETRIES", "3"))

    # --- Analytics ---
    BILLING_ANALYTICS_LOOKBACK_MONTHS = int(os.getenv("BILLING_ANALYTICS_LOOKBACK_MONTHS", "12"))

    # Caller identity tokens
    CALLER_TOKEN_SALT = os.getenv("CALLER_TOKEN_SALT", "caller-token-v1")
    CALLER_TOKEN_MAX_AGE = int(os.getenv("CALLER_TOKEN_MAX_AGE", "3600"))

class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "DEBUG")

class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "WARNING")
    # REQUIRE env vars in production (fail fast if missing)
    SECRET_KEY = os.environ.get("SECRET_KEY")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL")

class TestingConfig(BaseConfig):
    TESTING = True
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.environ.get("TEST_DATABASE_URL", "sqlite:///:memory:")
    STRIPE_SECRET_KEY = None

_ENV_MAP = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}

def get_config():
    env = os.environ.get("APP_ENV", "development").lower()
    return _ENV_MAP.get(env, DevelopmentConfig)
