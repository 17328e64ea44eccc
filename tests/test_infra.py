import json

import pytest
from fastapi import HTTPException
from starlette.requests import Request

from app.config.settings import Config, config
from app.core.errors import EXTRACTION_STATUS
from app.i18n import I18n, i18n
from app.infra.rate_limit import RedisRateLimiter
from app.utils.locale import get_locale, safe_url_for_log

ERROR_KEYS = [
    "error.internal",
    "error.invalid_url",
    "error.no_viable_format",
    "error.delivery_failed",
    "error.upstream_failed",
    "error.transform_failed",
    "error.transform_unavailable",
    "error.request_closed",
    "error.partial_file",
    "error.rate_limit",
] + [f"error.extraction.{reason.value}" for reason in EXTRACTION_STATUS]


@pytest.mark.parametrize("locale", ["en", "ja"])
def test_every_error_key_is_translated(locale):
    for key in ERROR_KEYS:
        assert key in i18n.catalogs[locale], key


def test_interpolation_and_fallbacks(tmp_path):
    (tmp_path / "en.json").write_text(json.dumps({"greet": {"hello": "Hello {name}"}, "only_en": "x"}))
    (tmp_path / "ja.json").write_text(json.dumps({"greet": {"hello": "こんにちは {name}"}}))
    catalog = I18n(str(tmp_path))

    assert catalog.get("greet.hello", "ja", name="A") == "こんにちは A"
    assert catalog.get("only_en", "ja") == "x"
    assert catalog.get("greet.hello", "fr", name="B") == "Hello B"
    assert catalog.get("greet.hello", "en") == "Hello {name}"
    assert catalog.get("missing.key", "en") == "missing.key"
    assert catalog.has("only_en", "ja")
    assert not catalog.has("missing.key")


@pytest.mark.parametrize("header,expected", [
    (None, "en"),
    ("ja", "ja"),
    ("ja-JP,ja;q=0.9,en;q=0.8", "ja"),
    ("fr,en;q=0.5,ja;q=0.9", "ja"),
    ("ja;q=0,en", "en"),
    ("fr, de", "en"),
])
def test_get_locale(header, expected):
    assert get_locale(header) == expected


def test_safe_url_for_log_keeps_video_id_only():
    url = "https://www.youtube.com/watch?v=dQw4w9WgXcQ&list=PL1&token=secret"
    assert safe_url_for_log(url) == "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
    assert safe_url_for_log("https://youtu.be/dQw4w9WgXcQ?si=abc") == "https://youtu.be/dQw4w9WgXcQ"


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_REQUESTS", "5")
    monkeypatch.setenv("DOWNLOAD_DIR", "/tmp/media")
    monkeypatch.setenv("REDIS_URL", "")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    loaded = Config.load_from_env()
    assert loaded.rate_limit.max_requests == 5
    assert loaded.media.download_dir == "/tmp/media"
    assert loaded.redis.url == ""
    assert loaded.logging.level == "DEBUG"


def test_config_round_trips_through_file(tmp_path):
    path = tmp_path / "config.json"
    Config().save_to_file(str(path))
    loaded = Config.load_from_file(str(path))
    assert loaded.ffmpeg.movflags == "frag_keyframe+empty_moov"
    assert loaded.rate_limit.window_seconds == 60


def make_request(host="10.0.0.1", path="/api/media"):
    return Request({
        "type": "http",
        "method": "GET",
        "path": path,
        "query_string": b"",
        "headers": [],
        "client": (host, 1234),
        "server": ("test", 80),
        "scheme": "http",
    })


@pytest.mark.asyncio
async def test_in_process_window_limits_per_client(monkeypatch):
    monkeypatch.setattr(config.rate_limit, "max_requests", 2)
    limiter = RedisRateLimiter()

    assert await limiter(make_request())
    assert await limiter(make_request())
    with pytest.raises(HTTPException) as exc:
        await limiter(make_request())
    assert exc.value.status_code == 429
    assert int(exc.value.headers["Retry-After"]) >= 1

    # Other clients and other paths have their own windows
    assert await limiter(make_request(host="10.0.0.2"))
    assert await limiter(make_request(path="/health"))


@pytest.mark.asyncio
async def test_redis_failure_falls_back_to_local_window(monkeypatch):
    class BrokenRedis:
        async def eval(self, *args):
            raise ConnectionError("redis down")

    monkeypatch.setattr(config.rate_limit, "max_requests", 1)
    monkeypatch.setattr("app.infra.rate_limit.get_redis", lambda: BrokenRedis())
    limiter = RedisRateLimiter()

    assert await limiter(make_request())
    with pytest.raises(HTTPException):
        await limiter(make_request())


@pytest.mark.asyncio
async def test_disabled_rate_limit(monkeypatch):
    monkeypatch.setattr(config.rate_limit, "enabled", False)
    monkeypatch.setattr(config.rate_limit, "max_requests", 1)
    limiter = RedisRateLimiter()
    for _ in range(3):
        assert await limiter(make_request())


def test_expired_local_windows_are_dropped(monkeypatch):
    monkeypatch.setattr(config.rate_limit, "window_seconds", 60)
    clock = [1000.0]
    monkeypatch.setattr("app.infra.rate_limit.time.monotonic", lambda: clock[0])
    limiter = RedisRateLimiter()

    for n in range(100):
        assert limiter._check_local(f"rate:10.0.{n // 256}.{n % 256}:/api/media") == (True, 0)
    assert len(limiter._local) == 100

    # One window later a single new client is all that is left
    clock[0] += 61
    assert limiter._check_local("rate:10.9.9.9:/api/media") == (True, 0)
    assert list(limiter._local) == ["rate:10.9.9.9:/api/media"]
