from teleblog.config import DEFAULT_MONGODB_URI, DEFAULT_PORT, load_settings


def test_defaults(monkeypatch):
    for name in ["BOT_TOKEN", "MONGODB_URI", "PORT", "LOG_LEVEL", "MONGODB_TIMEOUT_MS"]:
        monkeypatch.delenv(name, raising=False)

    settings = load_settings(dotenv=False)

    assert settings.bot_token == ""
    assert settings.mongodb_uri == DEFAULT_MONGODB_URI
    assert settings.port == DEFAULT_PORT
    assert settings.log_level == "WARNING"


def test_environment_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("BOT_TOKEN", " 42:secret ")
    monkeypatch.setenv("MONGODB_URI", "")
    monkeypatch.setenv("TELEBLOG_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("PORT", "8080")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("BLOG_URL_TEMPLATE", "https://blogs.test/{subdomain}")

    settings = load_settings(dotenv=False)

    assert settings.bot_token == "42:secret"
    assert settings.mongodb_uri == ""
    assert settings.data_dir == str(tmp_path)
    assert settings.port == 8080
    assert settings.log_level == "DEBUG"
    assert settings.blog_url_template.format(subdomain="x") == "https://blogs.test/x"


def test_bad_integer_falls_back_to_default(monkeypatch):
    monkeypatch.setenv("PORT", "eighty")

    assert load_settings(dotenv=False).port == DEFAULT_PORT
