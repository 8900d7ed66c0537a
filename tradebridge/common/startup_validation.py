from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Iterable, Mapping, NoReturn

from tradebridge.common.logging import default_service_name

logger = logging.getLogger(__name__)

EXIT_CODE_INVALID_CONFIG = 2


def _missing(env: Mapping[str, str], names: Iterable[str]) -> list[str]:
    return [n for n in names if not str(env.get(n) or "").strip()]


def _fatal_exit(*, intent_type: str, missing: list[str], required: list[str]) -> NoReturn:
    diagnostic = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "intent_type": intent_type,
        "service": default_service_name(),
        "reason_codes": [f"{name}_missing" for name in missing],
        "details": {"required": required},
    }
    line = json.dumps(diagnostic, separators=(",", ":"), ensure_ascii=False)
    logger.critical("%s", line)
    # Also plain stdout: logging may not be configured yet at this point of boot.
    sys.stdout.write(line + "\n")
    sys.stdout.flush()
    raise SystemExit(EXIT_CODE_INVALID_CONFIG)


def validate_required_env_or_exit(
    *,
    env: Mapping[str, str] | None = None,
    required: Iterable[str],
    intent_type: str = "startup_validation_failed",
) -> None:
    """
    Exit the process with a one-line diagnostic when a required env var is unset or blank.
    """
    names = list(required)
    missing = _missing(os.environ if env is None else env, names)
    if missing:
        _fatal_exit(intent_type=intent_type, missing=missing, required=names)
