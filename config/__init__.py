from .config_loader import ConfigError, config
from .profiles import TraderSettings, load_profile

__all__ = ['config', 'ConfigError', 'TraderSettings', 'load_profile']
