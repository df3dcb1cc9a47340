from .config import Settings, get_settings, load_settings
from .logging import LOG_FORMAT, setup_logging

__all__ = ['Settings', 'get_settings', 'load_settings', 'LOG_FORMAT', 'setup_logging']
