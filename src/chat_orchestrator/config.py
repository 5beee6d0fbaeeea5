"""Provide global constants and tunables for the orchestrator."""
import logging
import os
from pathlib import Path

from dotenv import dotenv_values

PROJECT_ROOT = Path(__file__).resolve().parents[2]

DB_FILE = Path("chat_orchestrator.db")

DATA_DIR = Path("data")
DB_DIR = Path("db")
LOGS_DIR = Path("logs")
CONFIG_DIR = Path("config")

DATA_PATH = (PROJECT_ROOT / DATA_DIR).resolve()
DB_PATH = (DATA_PATH / DB_DIR).resolve()
LOGS_PATH = (DATA_PATH / LOGS_DIR).resolve()

DOTENV_FILE = Path(".env")
DOTENV_FILE_PATH = (PROJECT_ROOT / DOTENV_FILE).resolve()

_DOTENV = dotenv_values(DOTENV_FILE_PATH)


def env_value(name: str, default: str | None = None) -> str | None:
    """Read a setting from the process environment first, then from .env."""
    value = os.environ.get(name)
    if value is None:
        value = _DOTENV.get(name)
    return default if value in (None, "") else value


def _env_float(name: str, default: float) -> float:
    raw = env_value(name)
    try:
        return float(raw) if raw is not None else default
    except ValueError:
        logging.getLogger(__name__).warning(
            "Ignoring non-numeric %s=%r, using %s", name, raw, default
        )
        return default


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, float(default)))


DB_FILE_PATH = Path(
    env_value("DB_FILE_PATH", str(DB_PATH / DB_FILE))
).resolve()

ORCHESTRATION_CONFIG_PATH = Path(
    env_value(
        "ORCHESTRATION_CONFIG_PATH",
        str(PROJECT_ROOT / CONFIG_DIR / "orchestration.json"),
    )
).resolve()

LOG_LEVEL = (env_value("LOG_LEVEL", "INFO") or "INFO").upper()

LOG_FILE = Path("orchestrator.log")
LOG_FILE_PATH = (LOGS_PATH / LOG_FILE).resolve()

# Provider call policy (seconds unless stated otherwise)
PROVIDER_CALL_TIMEOUT = _env_float("PROVIDER_CALL_TIMEOUT", 30.0)
PROVIDER_MAX_RETRIES = _env_int("PROVIDER_MAX_RETRIES", 2)
PROVIDER_BACKOFF_INITIAL = _env_float("PROVIDER_BACKOFF_INITIAL", 0.5)
PROVIDER_BACKOFF_FACTOR = _env_float("PROVIDER_BACKOFF_FACTOR", 2.0)
PROVIDER_BACKOFF_MAX = _env_float("PROVIDER_BACKOFF_MAX", 8.0)

CLASSIFIER_TIMEOUT = _env_float("CLASSIFIER_TIMEOUT", 20.0)
CLASSIFIER_HISTORY_TURNS = 5

HISTORY_LIMIT = _env_int("HISTORY_LIMIT", 10)
MAX_PARALLEL_STEPS = _env_int("MAX_PARALLEL_STEPS", 4)
DEFAULT_BUDGET_CENTS = _env_int("DEFAULT_BUDGET_CENTS", 500)

PROMPT_VALUE_CAP = 20_000
PROMPT_CAP = 40_000

# Fallback pricing in cents per 1K tokens when a model declares none.
DEFAULT_PRICING = {
    "input": 0.05,
    "output": 0.15,
}


def resolve_credential(credential: str | None) -> str | None:
    """
    Resolve a provider credential.

    "env:NAME" reads NAME from the environment / .env; any other
    non-empty value is returned verbatim.
    """
    if not credential:
        return None
    if credential.startswith("env:"):
        return env_value(credential[len("env:"):])
    return credential


def configure_logging():
    root = logging.getLogger()
    if root.handlers:
        return

    from logging.handlers import RotatingFileHandler

    # console/basic config
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    LOGS_PATH.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        LOG_FILE_PATH,
        maxBytes=5 * 1024 * 1024,  # 5 MB per file
        backupCount=3,
        encoding="utf-8",
    )
    file_handler.setLevel(LOG_LEVEL)
    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)


def main():
    """Print resolved paths and tunables."""
    files_and_paths = {"PROJECT_ROOT": PROJECT_ROOT,
                       "DATA_PATH": DATA_PATH,
                       "DB_FILE_PATH": DB_FILE_PATH,
                       "ORCHESTRATION_CONFIG_PATH": ORCHESTRATION_CONFIG_PATH,
                       "LOG_FILE_PATH": LOG_FILE_PATH,
                       }
    tunables = {"PROVIDER_CALL_TIMEOUT": PROVIDER_CALL_TIMEOUT,
                "PROVIDER_MAX_RETRIES": PROVIDER_MAX_RETRIES,
                "PROVIDER_BACKOFF_INITIAL": PROVIDER_BACKOFF_INITIAL,
                "PROVIDER_BACKOFF_FACTOR": PROVIDER_BACKOFF_FACTOR,
                "PROVIDER_BACKOFF_MAX": PROVIDER_BACKOFF_MAX,
                "CLASSIFIER_TIMEOUT": CLASSIFIER_TIMEOUT,
                "HISTORY_LIMIT": HISTORY_LIMIT,
                "MAX_PARALLEL_STEPS": MAX_PARALLEL_STEPS,
                "DEFAULT_BUDGET_CENTS": DEFAULT_BUDGET_CENTS,
                }

    print("Current file and path resolutions:")
    print("----------------------------------")
    for label, file_path in files_and_paths.items():
        print(f"{label}: {file_path}")

    print("\nTunables:")
    print("---------")
    for label, value in tunables.items():
        print(f"{label}: {value}")


if __name__ == "__main__":
    main()
