import yaml
import os
import re
from typing import Dict, Any, List

class Config:
    def __init__(self, config_path: str = "config.yaml"):
        self.config_path = config_path
        self._load_env_file()  # Load .env file first
        self._config = self._load_config()

    def _load_env_file(self):
        """Load environment variables from .env file"""
        env_path = os.path.join(os.path.dirname(self.config_path), '.env')
        if os.path.exists(env_path):
            with open(env_path, 'r') as f:
                for line in f:
                    line = line.strip()
                    if line and not line.startswith('#') and '=' in line:
                        key, value = line.split('=', 1)
                        os.environ.setdefault(key.strip(), value.strip().strip('"\''))

    def _load_config(self) -> Dict[str, Any]:
        try:
            with open(self.config_path, 'r', encoding='utf-8') as file:
                config_content = self._substitute_env_vars(file.read())
                return yaml.safe_load(config_content) or {}
        except FileNotFoundError:
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ValueError(f"Error parsing YAML configuration: {e}")

    def _substitute_env_vars(self, content: str) -> str:
        """Replace ${VAR_NAME} with environment variable values"""
        def replace_var(match):
            return os.getenv(match.group(1), match.group(0))

        return re.sub(r'\$\{([^}]+)\}', replace_var, content)

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> 'Config':
        config = cls.__new__(cls)
        config.config_path = None
        config._config = values
        return config

    def get(self, key: str, default: Any = None) -> Any:
        value = self._config
        for k in key.split('.'):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    def get_sources(self) -> List[Dict[str, Any]]:
        return self.get('sources', []) or []

    def get_database_config(self) -> Dict[str, Any]:
        return self.get('database', {}) or {}

    def get_scraping_config(self) -> Dict[str, Any]:
        return self.get('scraping', {}) or {}

    def get_broker_config(self) -> Dict[str, Any]:
        return self.get('broker', {}) or {}

    def get_workers_config(self) -> Dict[str, Any]:
        return self.get('workers', {}) or {}

    def get_scheduling_config(self) -> Dict[str, Any]:
        return self.get('scheduling', {}) or {}

    def get_digest_config(self) -> Dict[str, Any]:
        return self.get('digest', {}) or {}

    def get_email_config(self) -> Dict[str, Any]:
        return self.get('email', {}) or {}

    def get_web_config(self) -> Dict[str, Any]:
        return self.get('web', {}) or {}

def get_config() -> Config:
    config_path = os.getenv('CONFIG_PATH', 'config.yaml')
    return Config(config_path)
