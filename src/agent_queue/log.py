"""Logging setup for the daemon: console plus a rotating per-agent file."""

import logging
import logging.handlers

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
MAX_LOG_BYTES = 5 * 1024 * 1024
LOG_BACKUPS = 2

_configured = False


def setup_logging(config, level: int = logging.INFO) -> logging.Logger:
    """Attach console and file handlers to the ``agent_queue`` logger once."""
    global _configured
    logger = logging.getLogger("agent_queue")
    if _configured:
        return logger

    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    logger.setLevel(level)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    logger.addHandler(console)

    try:
        config.log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            config.log_file,
            maxBytes=MAX_LOG_BYTES,
            backupCount=LOG_BACKUPS,
            encoding="utf-8",
        )
    except OSError as e:
        logger.warning("File logging disabled (%s): %s", config.log_file, e)
    else:
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    _configured = True
    logger.info("=" * 60)
    logger.info("agent-queue session started for agent %s", config.agent_name)
    logger.info("Log file: %s", config.log_file)
    logger.info("=" * 60)
    return logger
