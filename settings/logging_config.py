from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from logging.config import dictConfig
from typing import Any, Dict


class JsonFormatter(logging.Formatter):
	def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
		payload: Dict[str, Any] = {
			"ts": datetime.now(timezone.utc).isoformat(),
			"level": record.levelname,
			"msg": record.getMessage(),
			"logger": record.name,
		}
		if record.exc_info:
			payload["exc"] = self.formatException(record.exc_info)
		return json.dumps(payload, ensure_ascii=False)


def configure_logging(level: int | str = logging.INFO, json_logs: bool = False) -> None:
	if isinstance(level, str):
		level = logging.getLevelName(level.upper())
	formatter = "json" if json_logs else "standard"
	dictConfig(
		{
			"version": 1,
			"disable_existing_loggers": False,
			"formatters": {
				"standard": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
				"json": {"()": JsonFormatter},
			},
			"handlers": {
				"console": {
					"class": "logging.StreamHandler",
					"formatter": formatter,
					"level": level,
				}
			},
			"loggers": {
				"": {"handlers": ["console"], "level": level},
				"uvicorn": {"handlers": ["console"], "level": level, "propagate": False},
				"arq": {"handlers": ["console"], "level": level, "propagate": False},
			},
		}
	)
