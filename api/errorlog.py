import json
import logging
import os
import traceback
from datetime import datetime, timezone
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

APP_ENV = os.getenv("APP_ENV", "production").lower()
ERROR_LOG_PATH = Path(os.getenv("ERROR_LOG_PATH", ".error-log.txt"))


def append_error(err: BaseException, scope: str = "server") -> None:
    """Append ``err`` to the development error log. Does nothing outside development."""
    if APP_ENV != "development":
        return
    entry = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "scope": scope,
        "message": str(err),
        "stack": "".join(traceback.format_exception(type(err), err, err.__traceback__)),
    }
    try:
        with ERROR_LOG_PATH.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(entry, ensure_ascii=False) + "\n")
    except OSError as exc:
        logger.error("Failed to write to error log: %s", exc)
