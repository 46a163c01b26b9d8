import json
import logging
import os
import sys

LOG = logging.getLogger(__name__)

# When frozen use the executable directory; otherwise the directory of the
# main script, so config.json stays alongside the app.
if getattr(sys, 'frozen', False):
    APP_DIR = os.path.dirname(sys.executable)
else:
    APP_DIR = os.path.dirname(os.path.abspath(sys.argv[0]))

CONFIG_FILE = os.path.join(APP_DIR, "config.json")

DEFAULT_CONFIG = {
    "cache_dir": "",  # empty => use OS temp directory
    "cache_byte_limit_kb": 51200,  # total bytes kept on disk before LRU eviction
    "cache_single_file_limit_kb": 5120,  # max size of one merged fragment file
    "cache_debug": False,  # log every hit/miss/merge at INFO instead of DEBUG
    "loader_chunk_kb": 1024,  # cap for open-ended ("rest of file") range requests
    "loader_connect_timeout_seconds": 10,
    "loader_read_timeout_seconds": 60,
    "loader_headers": {},  # extra HTTP headers sent with every origin request
}


class ConfigManager:
    def __init__(self, path=None):
        self.path = path or CONFIG_FILE
        self.config = self.load_config()

    def load_config(self):
        if os.path.exists(self.path):
            try:
                with open(self.path, 'r') as f:
                    loaded = json.load(f)
                    return self._apply_defaults(loaded)
            except (OSError, ValueError) as e:
                LOG.warning("Error loading config %s: %s", self.path, e)
        return self._apply_defaults({})

    def _apply_defaults(self, cfg: dict) -> dict:
        """
        Merge any missing default keys into an existing config without clobbering
        user settings.
        """
        def merge(defaults, target):
            for key, val in defaults.items():
                if isinstance(val, dict):
                    if key not in target or not isinstance(target.get(key), dict):
                        target[key] = {}
                    merge(val, target[key])
                else:
                    target.setdefault(key, val)
        merged = cfg if isinstance(cfg, dict) else {}
        merge(DEFAULT_CONFIG, merged)
        return merged

    def save_config(self):
        try:
            with open(self.path, 'w') as f:
                json.dump(self.config, f, indent=4)
        except OSError as e:
            LOG.warning("Error saving config %s: %s", self.path, e)

    def get(self, key, default=None):
        return self.config.get(key, default)

    def set(self, key, value):
        self.config[key] = value
        self.save_config()
