"""Tests for AuthFetcher.fetch, the blocking request variant."""

from unittest.mock import Mock

import pytest
import requests

from authfetch.config import ClientConfig
from authfetch.credentials import StaticCredentials
from authfetch.errors import AuthError, AuthErrorKind
from authfetch.executor import AuthFetcher, RequestOptions
from authfetch.session import FileStore, MemoryStore
from conftest import ScriptedSession, make_response

TOKEN_URL = "https://files.example.com/api/v1/auth/token"
FILE_URL = "https://files.example.com/api/v1/files/doc.txt"


def requests_to(http, url):
    return [call for call in http.calls if call["url"] == url]


class TestHeaders:
    """Tests for credential attachment."""

    def test_protected_path_gets_bearer_and_no_cache(self, fetcher, http):
        http.queue(make_response(200, b"data"))

        response = fetcher.fetch("/api/v1/files/doc.txt")

        assert response.content == b"data"
        headers = http.calls[0]["headers"]
        assert headers["Authorization"] == "Bearer cookie:access_token"
        assert headers["Cache-Control"] == "no-store"

    def test_public_path_has_no_credentials(self, fetcher, http):
        http.queue(make_response(200))

        fetcher.fetch("/api/v1/files/shares/abc/doc.txt")

        headers = http.calls[0]["headers"]
        assert "Authorization" not in headers
        assert "Cache-Control" not in headers

    def test_caller_headers_kept(self, fetcher, http):
        http.queue(make_response(200))

        fetcher.fetch("/api/v1/files/doc.txt", headers={"X-FZ-Action": "mkdir"})

        assert http.calls[0]["headers"]["X-FZ-Action"] == "mkdir"

    def test_caller_headers_not_mutated(self, fetcher, http):
        http.queue(make_response(200))
        headers = {"Accept": "application/json"}

        fetcher.fetch("/api/v1/files/doc.txt", headers=headers)

        assert headers == {"Accept": "application/json"}

    def test_static_credentials(self, config, http):
        http.queue(make_response(200))
        fetcher = AuthFetcher(config=config, credentials=StaticCredentials("abc123"), http=http)

        fetcher.fetch("/api/v1/files/doc.txt")

        assert http.calls[0]["headers"]["Authorization"] == "Bearer abc123"

    def test_request_arguments(self, http):
        http.queue(make_response(200))
        fetcher = AuthFetcher(config=ClientConfig(base_url="https://files.example.com", timeout=4.0), http=http)

        fetcher.fetch("/api/v1/files/doc.txt", method="PUT", body=b"payload")

        call = http.calls[0]
        assert call["method"] == "PUT"
        assert call["url"] == FILE_URL
        assert call["data"] == b"payload"
        assert call["timeout"] == 4.0
        assert call["stream"] is False

    def test_mapping_body_is_form_encoded(self, fetcher, http):
        http.queue(make_response(200))

        fetcher.fetch("/api/v1/files/doc.txt", method="POST", body={"a": "1", "b": "x y"})

        call = http.calls[0]
        assert call["data"] == b"a=1&b=x+y"
        assert call["headers"]["Content-Type"] == "application/x-www-form-urlencoded"


class TestStatusHandling:
    """Tests for the response handling loop."""

    @pytest.mark.parametrize("status", [200, 201, 204, 301, 400, 403, 404, 500])
    def test_non_401_returned_after_one_call(self, fetcher, http, status):
        http.queue(make_response(status))

        response = fetcher.fetch("/api/v1/files/doc.txt")

        assert response.status_code == status
        assert len(http.calls) == 1

    def test_protected_401_refreshes_and_retries_once(self, fetcher, http):
        second = make_response(200, b"fresh")
        http.queue(make_response(401, headers={"WWW-Authenticate": "Bearer"}), make_response(200), second)

        response = fetcher.fetch("/api/v1/files/doc.txt")

        assert response is second
        assert len(requests_to(http, FILE_URL)) == 2
        refresh_calls = requests_to(http, TOKEN_URL)
        assert len(refresh_calls) == 1
        assert refresh_calls[0]["data"]["grant_type"] == "refresh_token"
        assert [call["url"] for call in http.calls] == [FILE_URL, TOKEN_URL, FILE_URL]

    def test_second_401_returned_verbatim(self, fetcher, http):
        second = make_response(401, headers={"WWW-Authenticate": "Bearer"})
        http.queue(make_response(401), make_response(200), second)

        response = fetcher.fetch("/api/v1/files/doc.txt")

        assert response is second
        assert len(http.calls) == 3

    def test_second_response_error_status_returned(self, fetcher, http):
        http.queue(make_response(401), make_response(200), make_response(500))

        assert fetcher.fetch("/api/v1/files/doc.txt").status_code == 500

    def test_refresh_failure_raises_and_stops(self, fetcher, http, session_state):
        session_state.mark_logged_in()
        http.queue(make_response(401), make_response(400))

        with pytest.raises(AuthError) as exc_info:
            fetcher.fetch("/api/v1/files/doc.txt")

        assert exc_info.value.kind is AuthErrorKind.TOKEN_REFRESH
        assert len(http.calls) == 2
        assert len(requests_to(http, FILE_URL)) == 1
        assert session_state.is_logged_in() is False

    def test_unauthorized_callback_replaces_refresh(self, fetcher, http):
        on_unauthorized = Mock()
        http.queue(make_response(401), make_response(200))

        response = fetcher.fetch("/api/v1/files/doc.txt", on_unauthorized=on_unauthorized)

        assert response.status_code == 200
        on_unauthorized.assert_called_once_with()
        assert requests_to(http, TOKEN_URL) == []

    def test_unauthorized_callback_error_propagates(self, fetcher, http):
        http.queue(make_response(401))
        on_unauthorized = Mock(side_effect=RuntimeError("boom"))

        with pytest.raises(RuntimeError, match="boom"):
            fetcher.fetch("/api/v1/files/doc.txt", on_unauthorized=on_unauthorized)

        assert len(http.calls) == 1

    def test_public_401_basic_challenge(self, fetcher, http):
        http.queue(make_response(401, headers={"WWW-Authenticate": 'Basic realm="Password needed for abc"'}))

        with pytest.raises(AuthError) as exc_info:
            fetcher.fetch("/api/v1/files/shares/abc/doc.txt")

        assert exc_info.value.kind is AuthErrorKind.BASIC
        assert str(exc_info.value) == "Requires Basic Authentication"
        assert len(http.calls) == 1

    @pytest.mark.parametrize("challenge", [None, "Bearer", 'Digest realm="x"'])
    def test_public_401_other_challenge_returned(self, fetcher, http, challenge):
        headers = {"WWW-Authenticate": challenge} if challenge else {}
        unauthorized = make_response(401, headers=headers)
        http.queue(unauthorized)

        response = fetcher.fetch("/api/v1/files/shares/abc/doc.txt")

        assert response is unauthorized
        assert len(http.calls) == 1

    def test_public_401_outside_files_root(self, fetcher, http):
        http.queue(make_response(401, headers={"WWW-Authenticate": "Basic"}))

        with pytest.raises(AuthError) as exc_info:
            fetcher.fetch("/api/v1/other")

        assert exc_info.value.kind is AuthErrorKind.BASIC

    def test_network_error_propagates(self, fetcher, http):
        http.queue(requests.ConnectionError("unreachable"))

        with pytest.raises(requests.ConnectionError):
            fetcher.fetch("/api/v1/files/doc.txt")

    def test_separate_calls_retry_independently(self, fetcher, http):
        http.queue(
            make_response(401), make_response(200), make_response(200),
            make_response(401), make_response(200), make_response(200),
        )

        assert fetcher.fetch("/api/v1/files/a").status_code == 200
        assert fetcher.fetch("/api/v1/files/b").status_code == 200
        assert len(requests_to(http, TOKEN_URL)) == 2


class TestPreconditions:
    def test_relative_path_rejected_before_network(self, fetcher, http):
        with pytest.raises(ValueError, match="The path must be absolute"):
            fetcher.fetch("api/v1/files/doc.txt")

        assert http.calls == []

    def test_options_and_keywords_exclusive(self, fetcher):
        with pytest.raises(TypeError):
            fetcher.fetch("/api/v1/files/doc.txt", RequestOptions(), method="GET")

    def test_options_object(self, fetcher, http):
        http.queue(make_response(204))

        response = fetcher.fetch("/api/v1/files/doc.txt", RequestOptions(method="DELETE"))

        assert response.status_code == 204
        assert http.calls[0]["method"] == "DELETE"


class TestSessionOperations:
    """Tests for login, logout and refresh through the fetcher."""

    def test_login_logout(self, fetcher, http):
        http.queue(make_response(200), make_response(200))

        fetcher.login("alice", "secret")
        assert fetcher.is_logged_in() is True

        fetcher.logout()
        assert fetcher.is_logged_in() is False

    def test_refresh(self, fetcher, http):
        http.queue(make_response(200))

        fetcher.refresh()

        assert http.calls[0]["url"] == TOKEN_URL

    def test_requires_authorization_uses_config(self, http):
        fetcher = AuthFetcher(config=ClientConfig(protected_pattern=r"^/private"), http=http)

        assert fetcher.requires_authorization("/private/x") is True
        assert fetcher.requires_authorization("/api/v1/files/x") is False


class TestLifecycle:
    def test_close_closes_transport(self, config):
        http = ScriptedSession()

        with AuthFetcher(config=config, http=http):
            pass

        assert http.closed is True

    def test_from_config_memory(self):
        fetcher = AuthFetcher.from_config(ClientConfig())

        assert isinstance(fetcher.session_state.store, MemoryStore)
        assert isinstance(fetcher.http, requests.Session)
        fetcher.close()

    def test_from_config_session_file(self, tmp_path):
        config = ClientConfig(session_file=str(tmp_path / "session.enc"))

        fetcher = AuthFetcher.from_config(config, secret_key="secret")

        assert isinstance(fetcher.session_state.store, FileStore)
        fetcher.close()

    def test_from_config_session_file_without_key(self, tmp_path, monkeypatch):
        monkeypatch.delenv("AUTHFETCH_SECRET_KEY", raising=False)
        config = ClientConfig(session_file=str(tmp_path / "session.enc"))

        fetcher = AuthFetcher.from_config(config)

        assert isinstance(fetcher.session_state.store, MemoryStore)
        fetcher.close()

    def test_from_config_secret_key_from_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("AUTHFETCH_SECRET_KEY", "env-secret")
        path = tmp_path / "session.enc"

        fetcher = AuthFetcher.from_config(ClientConfig(session_file=str(path)))
        fetcher.session_state.mark_logged_in()
        fetcher.close()

        assert isinstance(fetcher.session_state.store, FileStore)
        assert FileStore(str(path), "env-secret").get("isLoggedIn") == "yes"

    def test_from_config_secret_key_from_settings(self, tmp_path, monkeypatch):
        monkeypatch.delenv("AUTHFETCH_SECRET_KEY", raising=False)
        config = ClientConfig(session_file=str(tmp_path / "session.enc"))

        fetcher = AuthFetcher.from_config(config, settings={"secret_key": "file-secret"})

        assert isinstance(fetcher.session_state.store, FileStore)
        fetcher.close()

    def test_from_file_uses_environment(self, tmp_path, monkeypatch):
        session_file = tmp_path / "session.enc"
        monkeypatch.setenv("AUTHFETCH_SESSION_FILE", str(session_file))
        monkeypatch.setenv("AUTHFETCH_SECRET_KEY", "env-secret")
        monkeypatch.delenv("AUTHFETCH_BASE_URL", raising=False)
        monkeypatch.delenv("AUTHFETCH_TIMEOUT", raising=False)

        fetcher = AuthFetcher.from_file(str(tmp_path / "missing.yaml"))

        assert isinstance(fetcher.session_state.store, FileStore)
        assert fetcher.config.session_file == str(session_file)
        fetcher.close()

    def test_from_file_reads_yaml_secret_key(self, tmp_path, monkeypatch):
        for name in ("AUTHFETCH_SECRET_KEY", "AUTHFETCH_SESSION_FILE", "AUTHFETCH_BASE_URL", "AUTHFETCH_TIMEOUT"):
            monkeypatch.delenv(name, raising=False)
        config_file = tmp_path / "authfetch.yaml"
        config_file.write_text(f"session_file: {tmp_path / 'session.enc'}\nsecret_key: file-secret\n")

        fetcher = AuthFetcher.from_file(str(config_file))

        assert isinstance(fetcher.session_state.store, FileStore)
        fetcher.close()
