"""Tests for jobclient.env module."""

import os

import pytest

from jobclient.env import expand_env, expand_env_string, load_env_file


class TestExpandEnvString:
    def test_braced_and_bare(self):
        env = {"HOST": "api.example.com", "PORT": "8443"}
        assert expand_env_string("https://${HOST}:$PORT/v1", environ=env) == (
            "https://api.example.com:8443/v1"
        )

    def test_fallback(self):
        assert expand_env_string("${MISSING:-default}", environ={}) == "default"
        assert expand_env_string("${MISSING:-}", environ={}) == ""

    def test_unset_left_alone(self):
        assert expand_env_string("${MISSING}", environ={}) == "${MISSING}"

    def test_strict_raises(self):
        with pytest.raises(KeyError):
            expand_env_string("$MISSING", environ={}, strict=True)


class TestExpandEnv:
    def test_recursive(self):
        env = {"TOKEN": "secret"}
        data = {"headers": {"Authorization": "Bearer ${TOKEN}"}, "list": ["$TOKEN", 3], "n": 1}
        assert expand_env(data, environ=env) == {
            "headers": {"Authorization": "Bearer secret"},
            "list": ["secret", 3],
            "n": 1,
        }


class TestLoadEnvFile:
    def test_loads_values(self, tmp_path, monkeypatch):
        monkeypatch.delenv("JOBCLIENT_TEST_VALUE", raising=False)
        env_file = tmp_path / ".env"
        env_file.write_text("JOBCLIENT_TEST_VALUE=from-file\n")
        assert load_env_file(env_file)
        assert os.environ["JOBCLIENT_TEST_VALUE"] == "from-file"
        monkeypatch.delenv("JOBCLIENT_TEST_VALUE")

    def test_does_not_override_by_default(self, tmp_path, monkeypatch):
        monkeypatch.setenv("JOBCLIENT_TEST_VALUE", "from-env")
        env_file = tmp_path / ".env"
        env_file.write_text("JOBCLIENT_TEST_VALUE=from-file\n")
        load_env_file(env_file)
        assert os.environ["JOBCLIENT_TEST_VALUE"] == "from-env"
