import os


def _bool_env(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _int_env(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


class Config:
    BASE_DIR = os.path.dirname(os.path.dirname(__file__))
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_DIR = None if DATABASE_URL else os.path.join(BASE_DIR, "database")
    DB_PATH = DATABASE_URL or os.path.join(DATABASE_DIR, "fulfillsync.db")
    DB_AUTO_INIT = _bool_env("DB_AUTO_INIT", False)
    DB_BUSY_TIMEOUT_SECONDS = _int_env("DB_BUSY_TIMEOUT_SECONDS", 30)

    LOG_JSON = _bool_env("LOG_JSON", True)
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    JOB_DEFAULT_RETRY_LIMIT = _int_env("JOB_DEFAULT_RETRY_LIMIT", 3)
    JOB_DEFAULT_RETRY_DELAY_SECONDS = _int_env("JOB_DEFAULT_RETRY_DELAY_SECONDS", 60)
    JOB_DEFAULT_EXPIRE_SECONDS = _int_env("JOB_DEFAULT_EXPIRE_SECONDS", 3600)
    JOB_MAX_RETRY_DELAY_SECONDS = _int_env("JOB_MAX_RETRY_DELAY_SECONDS", 3600)
    JOB_HANDLER_TIMEOUT_SECONDS = _int_env("JOB_HANDLER_TIMEOUT_SECONDS", 120)
    WORKER_POOL_ENABLED = _bool_env("WORKER_POOL_ENABLED", True)
    WORKER_POLL_INTERVAL_SECONDS = _float_env("WORKER_POLL_INTERVAL_SECONDS", 5.0)
    WORKER_BATCH_SIZE_PRODUCTS = _int_env("WORKER_BATCH_SIZE_PRODUCTS", 5)
    WORKER_BATCH_SIZE_ORDERS = _int_env("WORKER_BATCH_SIZE_ORDERS", 3)
    WORKER_BATCH_SIZE_CANCELLATIONS = _int_env("WORKER_BATCH_SIZE_CANCELLATIONS", 2)
    WORKER_BATCH_SIZE_RETURNS = _int_env("WORKER_BATCH_SIZE_RETURNS", 2)

    BATCH_SIZE_PRODUCTS = _int_env("BATCH_SIZE_PRODUCTS", 50)
    BATCH_SIZE_ORDERS = _int_env("BATCH_SIZE_ORDERS", 20)
    BATCH_SIZE_RETURNS = _int_env("BATCH_SIZE_RETURNS", 25)
    BATCH_SIZE_MAPPINGS = _int_env("BATCH_SIZE_MAPPINGS", 100)

    FFN_MODE = os.environ.get("FFN_MODE", "simulator")
    FFN_BASE_URL = os.environ.get("FFN_BASE_URL")
    FFN_TIMEOUT_SECONDS = _int_env("FFN_TIMEOUT_SECONDS", 20)
    FFN_VERIFY_SSL = _bool_env("FFN_VERIFY_SSL", True)
    FFN_RETRY_ATTEMPTS = _int_env("FFN_RETRY_ATTEMPTS", 2)
    FFN_RETRY_BACKOFF_MS = _int_env("FFN_RETRY_BACKOFF_MS", 300)
    FFN_SIMULATOR_SEED = _int_env("FFN_SIMULATOR_SEED", 42)
    FFN_CIRCUIT_ENABLED = _bool_env("FFN_CIRCUIT_ENABLED", True)
    FFN_CIRCUIT_ERROR_RATE_THRESHOLD = _float_env("FFN_CIRCUIT_ERROR_RATE_THRESHOLD", 0.6)
    FFN_CIRCUIT_MIN_SAMPLES = _int_env("FFN_CIRCUIT_MIN_SAMPLES", 5)
    FFN_CIRCUIT_WINDOW_SECONDS = _int_env("FFN_CIRCUIT_WINDOW_SECONDS", 120)
    FFN_CIRCUIT_OPEN_SECONDS = _int_env("FFN_CIRCUIT_OPEN_SECONDS", 30)
    FFN_CIRCUIT_HALF_OPEN_MAX_CALLS = _int_env("FFN_CIRCUIT_HALF_OPEN_MAX_CALLS", 1)
    FFN_POLL_ENABLED = _bool_env("FFN_POLL_ENABLED", True)
    FFN_POLL_INTERVAL_SECONDS = _int_env("FFN_POLL_INTERVAL_SECONDS", 300)
    FFN_POLL_WINDOW_HOURS = _int_env("FFN_POLL_WINDOW_HOURS", 24)
    FFN_POLL_MIN_BACKOFF_SECONDS = _int_env("FFN_POLL_MIN_BACKOFF_SECONDS", 30)
    FFN_POLL_MAX_BACKOFF_SECONDS = _int_env("FFN_POLL_MAX_BACKOFF_SECONDS", 1800)

    COMMERCE_MODE = os.environ.get("COMMERCE_MODE", "log")
    CHANNEL_SECRETS = os.environ.get("CHANNEL_SECRETS")
    CHANNEL_CREDENTIALS = os.environ.get("CHANNEL_CREDENTIALS")
    COMMERCE_TIMEOUT_SECONDS = _int_env("COMMERCE_TIMEOUT_SECONDS", 20)
    COMMERCE_VERIFY_SSL = _bool_env("COMMERCE_VERIFY_SSL", True)
    COMMERCE_RETRY_ATTEMPTS = _int_env("COMMERCE_RETRY_ATTEMPTS", 2)
    COMMERCE_RETRY_BACKOFF_MS = _int_env("COMMERCE_RETRY_BACKOFF_MS", 300)
    FFN_TOKEN = os.environ.get("FFN_TOKEN")
    STRESS_TEST_SYNC_TO_FFN = _bool_env("STRESS_TEST_SYNC_TO_FFN", False)

    def __init__(self):
        env = os.environ.get("FLASK_ENV", "development").lower()
        if env == "production" and not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL is required in production.")
