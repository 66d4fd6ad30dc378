import pytest

from quiz_mail_pipeline.config_loader import (
    ProviderConfig,
    Settings,
    load_provider_config,
    load_settings,
    parse_bool,
)


def write_config(tmp_path, body):
    path = tmp_path / "config.ini"
    path.write_text(body)
    return path


def test_defaults_without_file_or_environment(tmp_path):
    settings = load_settings(environ={"QMP_CONFIG": str(tmp_path / "missing.ini")})

    assert settings == Settings()


def test_file_values_are_loaded(tmp_path):
    path = write_config(
        tmp_path,
        """
[storage]
db_path = /tmp/quiz.db

[server]
port = 9000
api_token = secret

[scheduler]
active = yes
worker_interval = 15

[delivery]
batch_size = 25
skip_retry_on_permanent = true

[reconciler]
grace_seconds = 45

[logging]
level = debug
""",
    )

    settings = load_settings(path, environ={})

    assert settings.db_path == "/tmp/quiz.db"
    assert settings.http_port == 9000
    assert settings.api_token == "secret"
    assert settings.scheduler_active is True
    assert settings.worker_interval == 15.0
    assert settings.batch_size == 25
    assert settings.skip_retry_on_permanent is True
    assert settings.grace_seconds == 45
    assert settings.log_level == "DEBUG"


def test_environment_fills_keys_missing_from_file(tmp_path):
    path = write_config(tmp_path, "[server]\nport = 9000\n")

    settings = load_settings(
        path,
        environ={"QMP_PORT": "7000", "QMP_BATCH_SIZE": "3", "QMP_DB_PATH": "postgresql://u@h/db"},
    )

    assert settings.http_port == 9000
    assert settings.batch_size == 3
    assert settings.db_path == "postgresql://u@h/db"


def test_blank_api_token_means_no_token(tmp_path):
    settings = load_settings(environ={"QMP_CONFIG": str(tmp_path / "none.ini"), "QMP_API_TOKEN": "  "})

    assert settings.api_token is None


def test_explicit_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_settings(tmp_path / "nope.ini", environ={})


def test_invalid_number_raises(tmp_path):
    path = write_config(tmp_path, "[delivery]\nbatch_size = lots\n")

    with pytest.raises(ValueError, match="batch_size"):
        load_settings(path, environ={})


@pytest.mark.parametrize(
    "value,expected",
    [("1", True), ("TRUE", True), ("on", True), ("0", False), ("no", False), (None, False), ("maybe", False)],
)
def test_parse_bool(value, expected):
    assert parse_bool(value) is expected


def test_provider_config_defaults():
    config = ProviderConfig.from_values({}, environ={})

    assert config.sender_name == "Sparkly"
    assert config.sender_email == "noreply@sparkly.hr"
    assert config.smtp_port == 587
    assert config.smtp_tls is True
    assert config.api_key is None


def test_provider_config_from_values():
    config = ProviderConfig.from_values(
        {
            "email_sender_name": "Quiz",
            "email_sender_email": "quiz@example.com",
            "smtp_host": " smtp.example.com ",
            "smtp_port": "465",
            "smtp_username": "user",
            "smtp_password": " spaced ",
            "smtp_tls": "false",
            "admin_notification_email": "admin@example.com",
            "email_reply_to": "",
        },
        environ={},
    )

    assert config.smtp_host == "smtp.example.com"
    assert config.smtp_port == 465
    assert config.smtp_password == " spaced "
    assert config.smtp_tls is False
    assert config.admin_email == "admin@example.com"
    assert config.reply_to is None


def test_invalid_smtp_port_falls_back_to_default():
    assert ProviderConfig.from_values({"smtp_port": "abc"}, environ={}).smtp_port == 587


def test_environment_api_key_overrides_stored_key():
    config = ProviderConfig.from_values({"resend_api_key": "stored"}, environ={"RESEND_API_KEY": "from-env"})

    assert config.api_key == "from-env"


def test_stored_api_key_is_used_without_environment():
    assert ProviderConfig.from_values({"resend_api_key": "stored"}, environ={}).api_key == "stored"


@pytest.mark.asyncio
async def test_load_provider_config_reads_current_settings(db, now):
    await db.app_settings.set("smtp_host", "smtp.one", now_ts=now)
    first = await load_provider_config(db.app_settings, environ={})
    await db.app_settings.set("smtp_host", "smtp.two", now_ts=now + 1)
    second = await load_provider_config(db.app_settings, environ={})

    assert first.smtp_host == "smtp.one"
    assert second.smtp_host == "smtp.two"
