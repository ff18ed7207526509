import json
from datetime import datetime, timedelta, timezone

from ratewatch.scraper.session import is_login_redirect, load_session


def _write(path, last_login, cookies=None):
    path.write_text(json.dumps({"cookies": cookies or [{"name": "Rz", "value": "x"}], "lastLogin": last_login}))
    return path


def test_recent_session_is_valid(tmp_path):
    now = datetime(2024, 5, 10, tzinfo=timezone.utc)
    path = _write(tmp_path / "session.json", (now - timedelta(days=6)).isoformat())
    state = load_session(path, now=now)
    assert state is not None
    assert state.cookies[0]["name"] == "Rz"


def test_old_session_is_invalid(tmp_path):
    now = datetime(2024, 5, 10, tzinfo=timezone.utc)
    path = _write(tmp_path / "session.json", (now - timedelta(days=8)).isoformat())
    assert load_session(path, now=now) is None


def test_missing_or_corrupt_session(tmp_path):
    assert load_session(tmp_path / "absent.json") is None
    corrupt = tmp_path / "corrupt.json"
    corrupt.write_text("{not json")
    assert load_session(corrupt) is None
    no_login = tmp_path / "no-login.json"
    no_login.write_text(json.dumps({"cookies": []}))
    assert load_session(no_login) is None


def test_login_redirect_detection():
    assert is_login_redirect("https://grp01.id.rakuten.co.jp/rms/nid/login?service_id=i49")
    assert is_login_redirect("https://affiliate.rakuten.co.jp/login")
    assert not is_login_redirect("https://affiliate.rakuten.co.jp/link/ichiba/")
