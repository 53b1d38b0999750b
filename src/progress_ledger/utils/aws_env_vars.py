import logging
import os

_LOGGER = logging.getLogger(__name__)

DEFAULT_LEDGER_ID = "default"
DEFAULT_MAX_PROGRESSES = 10000
DEFAULT_VERIFICATION_FEE = 500
DEFAULT_REWARD_THRESHOLD = 80


def _get_resource_by_env_var(env_var: str) -> str:
    table_name = os.environ.get(env_var)
    if not table_name:
        raise ValueError(f"Missing environment variable: {env_var}")
    return table_name


def _get_int_env_var(env_var: str, default: int) -> int:
    value = os.environ.get(env_var)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        _LOGGER.warning(f"Invalid integer for {env_var}: {value!r}. Using default {default}.")
        return default


def get_progress_ledger_table_name() -> str:
    return _get_resource_by_env_var("PROGRESS_LEDGER_TABLE_NAME")


def get_progress_ledger_id() -> str:
    return os.environ.get("PROGRESS_LEDGER_ID", "").strip() or DEFAULT_LEDGER_ID


def get_max_progresses() -> int:
    return _get_int_env_var("PROGRESS_LEDGER_MAX_PROGRESSES", DEFAULT_MAX_PROGRESSES)


def get_default_verification_fee() -> int:
    return _get_int_env_var("PROGRESS_LEDGER_VERIFICATION_FEE", DEFAULT_VERIFICATION_FEE)


def get_default_reward_threshold() -> int:
    """
    Reward threshold used when a ledger is first created.
    Values outside [0, 100] are ignored in favour of the default.
    """
    value = _get_int_env_var("PROGRESS_LEDGER_REWARD_THRESHOLD", DEFAULT_REWARD_THRESHOLD)
    if value < 0 or value > 100:
        _LOGGER.warning(f"Reward threshold {value} out of range. Using default {DEFAULT_REWARD_THRESHOLD}.")
        return DEFAULT_REWARD_THRESHOLD
    return value
