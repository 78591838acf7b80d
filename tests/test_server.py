"""Tests for server.py: configuration loading and the example app."""
import urllib.parse

import pytest
from starlette.testclient import TestClient

from conftest import ME
from indieauth import CALLBACK_PATH, SESSION_COOKIE
from server import GateConfig, create_app, load_config


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("INDIEAUTH_ME", "INDIEAUTH_CLIENT_ID", "INDIEAUTH_SECRET_KEY", "INDIEAUTH_CONFIG"):
        monkeypatch.delenv(name, raising=False)


def _write(tmp_path, text: str):
    path = tmp_path / "indieauth.yaml"
    path.write_text(text)
    return path


# ---------------------------------------------------------------------------
# load_config
# ---------------------------------------------------------------------------

class TestLoadConfig:
    def test_minimal_file(self, tmp_path):
        path = _write(tmp_path, "me: https://me.example.com/\n"
                                "client_id: https://app.example.com\n"
                                "secret_key: s3cret\n")
        config = load_config(path)
        assert config.me == "https://me.example.com/"
        assert config.client_id == "https://app.example.com"
        assert config.callback_path == CALLBACK_PATH
        assert config.state_cache_size == 64
        assert config.https_only is False

    def test_optional_settings(self, tmp_path):
        path = _write(tmp_path, "me: https://me.example.com/\n"
                                "client_id: https://app.example.com\n"
                                "secret_key: s3cret\n"
                                "callback_path: /auth/callback\n"
                                "state_cache_size: 8\n"
                                "timeout: 2.5\n"
                                "https_only: true\n")
        config = load_config(path)
        assert config.callback_path == "/auth/callback"
        assert config.state_cache_size == 8
        assert config.timeout == 2.5
        assert config.https_only is True

    def test_env_overrides(self, tmp_path, monkeypatch):
        path = _write(tmp_path, "me: https://me.example.com/\n"
                                "client_id: https://app.example.com\n"
                                "secret_key: from-file\n")
        monkeypatch.setenv("INDIEAUTH_SECRET_KEY", "from-env")
        assert load_config(path).secret_key == "from-env"

    def test_env_only(self, tmp_path, monkeypatch):
        monkeypatch.setenv("INDIEAUTH_ME", "https://me.example.com/")
        monkeypatch.setenv("INDIEAUTH_CLIENT_ID", "https://app.example.com")
        monkeypatch.setenv("INDIEAUTH_SECRET_KEY", "s3cret")
        config = load_config(tmp_path / "missing.yaml")
        assert config.me == "https://me.example.com/"

    def test_config_path_from_env(self, tmp_path, monkeypatch):
        path = _write(tmp_path, "me: https://me.example.com/\n"
                                "client_id: https://app.example.com\n"
                                "secret_key: s3cret\n")
        monkeypatch.setenv("INDIEAUTH_CONFIG", str(path))
        assert load_config().client_id == "https://app.example.com"

    def test_missing_required(self, tmp_path):
        path = _write(tmp_path, "me: https://me.example.com/\n")
        with pytest.raises(SystemExit, match="client_id, secret_key"):
            load_config(path)

    def test_unknown_setting(self, tmp_path):
        path = _write(tmp_path, "me: https://me.example.com/\n"
                                "client_id: https://app.example.com\n"
                                "secret_key: s3cret\n"
                                "colour: blue\n")
        with pytest.raises(SystemExit, match="colour"):
            load_config(path)

    def test_bad_callback_path(self, tmp_path):
        path = _write(tmp_path, "me: https://me.example.com/\n"
                                "client_id: https://app.example.com\n"
                                "secret_key: s3cret\n"
                                "callback_path: callback\n")
        with pytest.raises(SystemExit, match="callback_path"):
            load_config(path)

    def test_not_a_mapping(self, tmp_path):
        path = _write(tmp_path, "- just\n- a list\n")
        with pytest.raises(SystemExit, match="mapping"):
            load_config(path)


# ---------------------------------------------------------------------------
# create_app
# ---------------------------------------------------------------------------

class TestApp:
    def _client(self, make_auth) -> TestClient:
        auth = make_auth()
        config = GateConfig(me=auth.me, client_id=auth.client_id, secret_key="s3cret")
        return TestClient(create_app(config, auth=auth), follow_redirects=False)

    def _login(self, client: TestClient) -> None:
        resp = client.get("/")
        assert resp.status_code == 307
        state = dict(urllib.parse.parse_qsl(urllib.parse.urlsplit(resp.headers["location"]).query))["state"]
        resp = client.get(CALLBACK_PATH, params={"me": ME, "code": "ok", "state": state})
        assert resp.status_code == 307
        assert SESSION_COOKIE in client.cookies

    def test_index_requires_login(self, make_auth):
        client = self._client(make_auth)
        self._login(client)
        resp = client.get("/")
        assert resp.status_code == 200
        assert resp.text == f"Hello, {ME}"

    def test_logout(self, make_auth):
        client = self._client(make_auth)
        self._login(client)
        resp = client.get("/logout")
        assert resp.status_code == 200
        assert resp.text == "logged out"
        assert client.get("/").status_code == 307
