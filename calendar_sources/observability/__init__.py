from calendar_sources.observability.logger import get_logger

__all__ = ["get_logger"]
