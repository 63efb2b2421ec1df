from configparser import ConfigParser

from wsmirror.config import (
    ApiConfig,
    CacheConfig,
    Config,
    ConnectionConfig,
    EditorConfig,
)


def test_api_config_defaults():
    parser = ConfigParser()
    parser.read_string("[api]")

    cfg = ApiConfig.load(parser["api"])

    assert cfg.base_url is not None
    assert cfg.token is None


def test_api_config_load():
    parser = ConfigParser(interpolation=None)
    parser.read_string(
        """
        [api]
        base_url = https://api.example/v1
        token = s3cr%t
        """
    )

    cfg = ApiConfig.load(parser["api"])

    assert cfg.base_url == "https://api.example/v1"
    assert cfg.token == "s3cr%t"


def test_token_not_in_repr():
    cfg = ApiConfig(token="s3cret")

    assert "s3cret" not in repr(cfg)


def test_connection_config_load():
    parser = ConfigParser(interpolation=None)
    parser.read_string(
        """
        [connection]
        timeout = 1234
        port_poll_interval = 50
        preview_url = https://{port}.preview.example
        """
    )

    cfg = ConnectionConfig.load(parser["connection"])

    assert cfg.timeout == 1234
    assert cfg.port_poll_interval == 50
    assert cfg.preview_url.format(port=3000) == "https://3000.preview.example"


def test_cache_and_editor_config_load():
    parser = ConfigParser()
    parser.read_string(
        """
        [cache]
        max_age = 5000

        [editor]
        debounce = 250
        """
    )

    assert CacheConfig.load(parser["cache"]).max_age == 5000
    assert EditorConfig.load(parser["editor"]).debounce == 250


def test_config_defaults(tmp_path):
    cfg = Config.load(str(tmp_path / "nonexistent"))

    assert cfg.api == ApiConfig()
    assert cfg.connection == ConnectionConfig()
    assert cfg.cache.max_age == 1000
    assert cfg.editor.debounce == 2000


def test_config_load(tmp_path):
    (tmp_path / "config").write_text(
        """
        [api]
        base_url = https://api.example/v1

        [editor]
        debounce = 500
        """
    )

    cfg = Config.load(str(tmp_path / "config"))

    assert cfg.api.base_url == "https://api.example/v1"
    assert cfg.editor.debounce == 500
    assert cfg.cache == CacheConfig()


def test_config_load_failure_nonfatal(tmp_path, caplog):
    (tmp_path / "config").write_text("blabla")

    cfg = Config.load(str(tmp_path / "config"))

    assert cfg.api is not None
    assert "failed to read config file" in caplog.text
