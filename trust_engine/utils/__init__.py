from .logger import LOG_FORMAT, ROOT_LOGGER, get_logger

__all__ = ["LOG_FORMAT", "ROOT_LOGGER", "get_logger"]
