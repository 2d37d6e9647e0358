"""Application entrypoint.

Loads settings, builds the registry and loads one external calendar:

    python main.py github:owner/repo#gregorian
    python main.py https:example.com/calendars/harptos.json --no-cache
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

from calendar_sources.bootstrap import build_registry
from calendar_sources.core.settings import SettingsError, load_settings
from calendar_sources.core.types import LoadCalendarOptions, LoadCalendarResult
from calendar_sources.observability.logger import get_logger


def summarize(result: LoadCalendarResult) -> dict[str, object]:
    summary: dict[str, object] = {
        "success": result.success,
        "from_cache": result.from_cache,
    }
    if result.success and result.calendar is not None:
        summary["calendar_id"] = result.calendar.get("id")
        summary["months"] = len(result.calendar.get("months", []))
        summary["weekdays"] = len(result.calendar.get("weekdays", []))
    else:
        summary["error"] = result.error
        summary["error_type"] = result.error_type
    if result.source is not None:
        summary["source"] = result.source.label or result.source.key
    return summary


async def run(external_id: str, settings_path: str, use_cache: bool) -> int:
    logger = get_logger()

    try:
        settings = load_settings(settings_path)
    except SettingsError as e:
        logger.error(str(e))
        return 1

    registry = build_registry(settings)
    try:
        result = await registry.load_external_calendar(
            external_id, LoadCalendarOptions(use_cache=use_cache)
        )
    finally:
        registry.destroy()

    print(json.dumps(summarize(result), indent=2, ensure_ascii=False))
    return 0 if result.success else 1


def main() -> None:
    parser = argparse.ArgumentParser(description="Load an external calendar definition")
    parser.add_argument("external_id", help="External calendar id, e.g. github:owner/repo#calendar")
    parser.add_argument("--settings", default="config/settings.yaml", help="Settings file path")
    parser.add_argument("--no-cache", action="store_true", help="Bypass the calendar cache")
    args = parser.parse_args()

    raise SystemExit(asyncio.run(run(args.external_id, args.settings, not args.no_cache)))


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        sys.exit(130)
