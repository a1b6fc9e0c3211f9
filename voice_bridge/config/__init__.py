"""
Configuration for the voice bridge: protocol constants, environment settings
and logging setup.

Usage examples:
```python
from voice_bridge.config.settings import Settings
from voice_bridge.config.logging_config import configure_logging

settings = Settings.from_env()
logger = configure_logging(settings.log_level)
logger.info(f"Using model {settings.realtime_model}")
```
"""
