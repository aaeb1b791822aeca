import pytest
import tempfile
import os

from newsagg.utils.cache import CacheService
from newsagg.utils.config import Config


class TestConfig:
    def setup_method(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_path = os.path.join(self.temp_dir.name, 'config.yaml')

    def teardown_method(self):
        self.temp_dir.cleanup()
        os.environ.pop('NEWSAGG_TEST_SMTP_PASSWORD', None)

    def _write(self, name, content):
        with open(os.path.join(self.temp_dir.name, name), 'w', encoding='utf-8') as f:
            f.write(content)

    def test_sections_and_dotted_get(self):
        self._write('config.yaml', '''
database:
  path: data/test.db
  retention_days: 7
workers:
  crawl_concurrency: 2
''')
        config = Config(self.config_path)

        assert config.get_database_config()['retention_days'] == 7
        assert config.get('workers.crawl_concurrency') == 2
        assert config.get('workers.missing', 'default') == 'default'
        assert config.get_email_config() == {}
        assert config.get_sources() == []

    def test_env_file_substitution(self):
        self._write('.env', 'NEWSAGG_TEST_SMTP_PASSWORD="s3cret"\n# comment\n')
        self._write('config.yaml', '''
email:
  password: ${NEWSAGG_TEST_SMTP_PASSWORD}
  username: ${NEWSAGG_TEST_UNSET_VARIABLE}
''')
        config = Config(self.config_path)

        assert config.get('email.password') == 's3cret'
        assert config.get('email.username') == '${NEWSAGG_TEST_UNSET_VARIABLE}'

    def test_missing_file_raises(self):
        with pytest.raises(FileNotFoundError):
            Config(os.path.join(self.temp_dir.name, 'missing.yaml'))

    def test_invalid_yaml_raises(self):
        self._write('config.yaml', 'database: [unclosed')
        with pytest.raises(ValueError):
            Config(self.config_path)


class TestCacheService:
    def setup_method(self):
        self.now = 0.0
        self.cache = CacheService(default_ttl=10, clock=lambda: self.now)

    def test_get_set_and_expiry(self):
        self.cache.set("articles:latest", [1, 2])
        assert self.cache.get("articles:latest") == [1, 2]

        self.now = 11
        assert self.cache.get("articles:latest") is None

    def test_invalidate_pattern(self):
        self.cache.set("articles:latest:50:0:all", [1])
        self.cache.set("articles:latest:10:0:world", [2])
        self.cache.set("sources:all", [3])

        assert self.cache.invalidate("articles:*") == 2
        assert self.cache.get("articles:latest:50:0:all") is None
        assert self.cache.get("sources:all") == [3]

    def test_set_sweeps_expired_entries(self):
        for category in ("world", "sports", "nonsense-1", "nonsense-2"):
            self.cache.set(f"articles:latest:50:0:{category}", [])

        self.now = 11
        self.cache.set("articles:latest:50:0:all", [1])

        assert list(self.cache._entries) == ["articles:latest:50:0:all"]
