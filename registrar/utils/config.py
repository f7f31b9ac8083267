import yaml
import os
from typing import Dict, Any, Optional

DEFAULT_CONFIG_PATH = "config/config.yaml"

class Config:
    def __init__(self, config_path: Optional[str] = DEFAULT_CONFIG_PATH, required: bool = True):
        self.config_path = config_path
        self.required = required
        self.config_data = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        if not self.config_path or not os.path.exists(self.config_path):
            if self.required:
                raise FileNotFoundError(f"Config file not found: {self.config_path}")
            return {}

        with open(self.config_path, 'r') as f:
            data = yaml.safe_load(f)

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {self.config_path} must contain a mapping at the top level")
        return data

    def get(self, key: str, default: Any = None) -> Any:
        keys = key.split('.')
        data = self.config_data

        for k in keys:
            if isinstance(data, dict):
                data = data.get(k)
            else:
                return default

            if data is None:
                return default

        return data

    def set(self, key: str, value: Any):
        keys = key.split('.')
        data = self.config_data

        for k in keys[:-1]:
            if not isinstance(data.get(k), dict):
                data[k] = {}
            data = data[k]

        data[keys[-1]] = value
