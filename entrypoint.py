import uvicorn
import os
from logging_config import setup_logging

# Setup logging before importing app
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)

from app import app
from constants import WS_PING_INTERVAL_SECONDS, WS_PING_TIMEOUT_SECONDS
from logging_config import get_logger

logger = get_logger(__name__)

if __name__ == "__main__":
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", 10000))
    logger.info(f"[BOOT] Starting relay server on {host}:{port}")
    # single worker: connection registry and presence live in this process
    uvicorn.run(
        app,
        host=host,
        port=port,
        workers=1,
        log_config=None,
        ws_ping_interval=WS_PING_INTERVAL_SECONDS,
        ws_ping_timeout=WS_PING_TIMEOUT_SECONDS,
    )
