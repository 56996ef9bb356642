import logging

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
EVENTS_LOGGER = "rewardhub.events"

REWARD_CREATED = "reward_created"
BALANCE_UPDATED = "balance_updated"
REWARD_CONFIRMED = "reward_confirmed"
SETTLEMENT_FAILED = "settlement_failed"
RETRY_EXHAUSTED = "retry_exhausted"
BALANCE_CORRECTED = "balance_corrected"


def get_logger(name: str) -> logging.Logger:
    """
    Return a module-scoped logger with a consistent format.
    """
    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    return logger


def emit(event: str, **fields) -> None:
    """
    Write a structured observability event as a single key=value line.
    """
    logger = get_logger(EVENTS_LOGGER)
    parts = " ".join(f"{key}={value}" for key, value in sorted(fields.items()))
    level = logging.WARNING if event in (SETTLEMENT_FAILED, RETRY_EXHAUSTED) else logging.INFO
    logger.log(level, "event=%s %s", event, parts)
