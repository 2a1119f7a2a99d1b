"""Unit tests for ghproxy.app (Flask front-end).

Drives the full request path through the Flask test client with the
upstream mocked at ``Session.send``.
"""

import json
from unittest.mock import patch

import pytest
import requests

from ghproxy.app import create_app, requested_target
from ghproxy.config_store import ConfigStore
from ghproxy.engine import ProxyEngine
from ghproxy.settings import GatewaySettings
from tests.helpers import make_upstream

RELEASE_PATH = "/https://github.com/alice/repo/releases/download/v1/tool.tgz"


@pytest.fixture
def make_client(write_config):
    """Build a test client over the given access lists and settings."""

    def _build(allow=(), deny=(), **settings_kwargs):
        store = ConfigStore(write_config(allow=allow, deny=deny))
        store.load_initial()
        engine = ProxyEngine(store, GatewaySettings(**settings_kwargs))
        app = create_app(engine=engine)
        app.config["TESTING"] = True
        return app.test_client(), engine

    return _build


class TestProxying:
    def test_admitted_download(self, client, engine):
        upstream = make_upstream(
            headers={"Content-Length": "5", "Content-Type": "application/gzip", "ETag": '"v1"'},
            body=b"hello",
        )
        with patch.object(engine.session, "send", return_value=upstream) as send:
            response = client.get(RELEASE_PATH)
        assert response.status_code == 200
        assert response.data == b"hello"
        assert response.headers["Content-Length"] == "5"
        assert response.headers["Content-Type"] == "application/gzip"
        assert response.headers["ETag"] == '"v1"'
        assert send.call_args.args[0].url == RELEASE_PATH[1:]

    def test_upstream_status_relayed(self, client, engine):
        with patch.object(engine.session, "send", return_value=make_upstream(status=404, body=b"missing")):
            response = client.get(RELEASE_PATH)
        assert response.status_code == 404
        assert response.data == b"missing"

    def test_no_content_type_added(self, client, engine):
        with patch.object(engine.session, "send", return_value=make_upstream(body=b"x")):
            response = client.get(RELEASE_PATH)
        assert "Content-Type" not in response.headers

    def test_security_headers_stripped(self, client, engine):
        upstream = make_upstream(headers={
            "Content-Security-Policy": "default-src 'none'",
            "Strict-Transport-Security": "max-age=1",
            "Referrer-Policy": "origin",
        })
        with patch.object(engine.session, "send", return_value=upstream):
            response = client.get(RELEASE_PATH)
        assert "Content-Security-Policy" not in response.headers
        assert "Strict-Transport-Security" not in response.headers
        assert "Referrer-Policy" not in response.headers

    def test_blob_fetched_as_raw(self, client, engine):
        with patch.object(engine.session, "send", return_value=make_upstream(body=b"text")) as send:
            response = client.get("/https://github.com/bob/repo/blob/main/file.txt")
        assert response.status_code == 200
        assert send.call_args.args[0].url == "https://github.com/bob/repo/raw/main/file.txt"

    def test_query_string_preserved(self, client, engine):
        with patch.object(engine.session, "send", return_value=make_upstream()) as send:
            client.get("/https://github.com/alice/repo/info/refs?service=git-upload-pack")
        assert send.call_args.args[0].url == "https://github.com/alice/repo/info/refs?service=git-upload-pack"

    def test_extra_leading_slashes_stripped(self, client, engine):
        with patch.object(engine.session, "send", return_value=make_upstream()) as send:
            response = client.get(RELEASE_PATH, environ_overrides={"RAW_URI": "//" + RELEASE_PATH[1:]})
        assert response.status_code == 200
        assert send.call_args.args[0].url == RELEASE_PATH[1:]

    def test_post_body_forwarded(self, client, engine):
        captured = {}

        def fake_send(prepared, **kwargs):
            captured["body"] = prepared.body.read()
            captured["headers"] = dict(prepared.headers)
            captured["method"] = prepared.method
            return make_upstream()

        with patch.object(engine.session, "send", side_effect=fake_send):
            response = client.post(
                "/https://github.com/alice/repo.git/git-upload-pack",
                data=b"0032want",
                content_type="application/x-git-upload-pack-request",
            )
        assert response.status_code == 200
        assert captured["method"] == "POST"
        assert captured["body"] == b"0032want"
        assert captured["headers"]["Content-Length"] == "8"
        assert "Transfer-Encoding" not in captured["headers"]
        assert "Host" not in captured["headers"]


class TestRejections:
    def test_missing_scheme(self, client, engine):
        with patch.object(engine.session, "send") as send:
            response = client.get("/github.com/alice/repo/releases/download/v1/x")
        assert response.status_code == 403
        assert response.data == b"Invalid input."
        assert response.mimetype == "text/plain"
        send.assert_not_called()

    def test_unrecognised_upstream(self, client, engine):
        with patch.object(engine.session, "send") as send:
            response = client.get("/https://example.com/alice/repo/releases/v1")
        assert response.status_code == 403
        assert response.data == b"Invalid input."
        send.assert_not_called()

    def test_not_in_allow_list(self, make_client):
        client, engine = make_client(allow=["alice"])
        with patch.object(engine.session, "send") as send:
            response = client.get("/https://github.com/bob/repo/releases/download/v1/x")
        assert response.status_code == 403
        assert response.data == b"Not in allow list, access restricted."
        send.assert_not_called()

    def test_blocked_by_deny_list(self, make_client):
        client, engine = make_client(deny=["mallory"])
        response = client.get("/https://github.com/mallory/repo/releases/download/v1/x")
        assert response.status_code == 403
        assert response.data == b"Blocked by deny list."

    def test_too_large(self, client, engine):
        upstream = make_upstream(headers={"Content-Length": str(11 * 1024 ** 3)})
        with patch.object(engine.session, "send", return_value=upstream):
            response = client.get(RELEASE_PATH)
        assert response.status_code == 413
        assert response.data == b"File too large."

    def test_upstream_unreachable(self, client, engine):
        with patch.object(engine.session, "send", side_effect=requests.ConnectionError("refused")):
            response = client.get(RELEASE_PATH)
        assert response.status_code == 500
        assert response.data.startswith(b"server error")


class TestRedirects:
    def test_matching_redirect_rewritten(self, client, engine):
        upstream = make_upstream(
            status=302,
            headers={"Location": "https://raw.githubusercontent.com/alice/repo/main/install.sh"},
        )
        with patch.object(engine.session, "send", return_value=upstream) as send:
            response = client.get("/https://github.com/alice/repo/raw/main/install.sh")
        assert response.status_code == 302
        assert response.headers["Location"] == "/https://raw.githubusercontent.com/alice/repo/main/install.sh"
        assert send.call_count == 1

    def test_other_redirect_followed(self, client, engine):
        first = make_upstream(status=302, headers={"Location": "https://objects.example.net/release-asset"})
        second = make_upstream(headers={"Content-Length": "3"}, body=b"bin")
        with patch.object(engine.session, "send", side_effect=[first, second]):
            response = client.get(RELEASE_PATH)
        assert response.status_code == 200
        assert response.data == b"bin"
        assert "Location" not in response.headers


class TestRoutePrefix:
    def test_prefixed_request(self, make_client):
        client, engine = make_client(route_prefix="/gh")
        with patch.object(engine.session, "send", return_value=make_upstream(body=b"ok")) as send:
            response = client.get("/gh" + RELEASE_PATH)
        assert response.data == b"ok"
        assert send.call_args.args[0].url == RELEASE_PATH[1:]

    def test_outside_prefix_not_found(self, make_client):
        client, engine = make_client(route_prefix="/gh")
        with patch.object(engine.session, "send") as send:
            response = client.get(RELEASE_PATH)
        assert response.status_code == 404
        send.assert_not_called()

    def test_redirect_rewritten_with_prefix(self, make_client):
        client, engine = make_client(route_prefix="/gh/")
        upstream = make_upstream(status=302, headers={"Location": "https://github.com/alice/repo/releases/download/v2/x"})
        with patch.object(engine.session, "send", return_value=upstream):
            response = client.get("/gh" + RELEASE_PATH)
        assert response.headers["Location"] == "/gh/https://github.com/alice/repo/releases/download/v2/x"

    def test_health_under_prefix(self, make_client):
        client, _ = make_client(route_prefix="/gh")
        assert client.get("/gh/healthz").status_code == 200
        assert client.get("/healthz").status_code == 404


class TestDiagnostic:
    def test_script_served(self, client, engine):
        with patch.object(engine.session, "send") as send:
            response = client.get("/perl-pe-para")
        send.assert_not_called()
        assert response.status_code == 200
        assert response.headers["Content-Type"] == "text/plain; charset=utf-8"
        assert response.headers["Cache-Control"] == "max-age=300"
        body = response.data.decode()
        assert "curl -L http://localhost/perl-pe-para" in body
        assert "#http://localhost/\\1#g" in body


class TestHealthAndRequestId:
    def test_health(self, client, store):
        response = client.get("/healthz")
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data["status"] == "healthy"
        assert data["config_version"] == store.current().version
        assert data["allow_entries"] == 0
        assert data["deny_entries"] == 0

    def test_request_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_request_id_generated(self, client):
        response = client.get("/healthz")
        assert response.headers["X-Request-ID"]

    def test_error_responses_carry_request_id(self, client):
        response = client.get("/not-a-url", headers={"X-Request-ID": "req-9"})
        assert response.status_code == 403
        assert response.headers["X-Request-ID"] == "req-9"


class TestRouting:
    @pytest.mark.parametrize(
        "path",
        ["/a/b", RELEASE_PATH, "/https://github.com/alice/repo/info/refs", "//https://github.com/a/b/releases/x"],
    )
    def test_catch_all_matches_any_path(self, app, path):
        endpoint, _ = app.url_map.bind("localhost").match(path, method="GET")
        assert endpoint == "catch_all"

    def test_relative_redirect_not_followed_past_access_lists(self, make_client):
        client, engine = make_client(allow=["alice"])
        upstream = make_upstream(status=302, headers={"Location": "/mallory/evil/releases/download/v1/x.tgz"})
        with patch.object(engine.session, "send", return_value=upstream) as send:
            response = client.get(RELEASE_PATH)
        assert send.call_count == 1
        assert response.status_code == 302
        assert response.headers["Location"] == "/https://github.com/mallory/evil/releases/download/v1/x.tgz"

        with patch.object(engine.session, "send") as send:
            response = client.get(response.headers["Location"])
        assert response.status_code == 403
        send.assert_not_called()


class TestRequestedTarget:
    @pytest.mark.parametrize(
        "raw_uri,prefix,expected",
        [
            ("/https://github.com/a/b", "/", "https://github.com/a/b"),
            ("///https://github.com/a/b", "/", "https://github.com/a/b"),
            ("/gh/https://github.com/a/b?x=1", "/gh/", "https://github.com/a/b?x=1"),
            ("/other/https://github.com/a/b", "/gh/", None),
            ("/", "/", ""),
        ],
    )
    def test_extraction(self, app, raw_uri, prefix, expected):
        with app.test_request_context("/", environ_overrides={"RAW_URI": raw_uri}):
            assert requested_target(prefix) == expected

    def test_query_appended_when_raw_uri_lacks_it(self, app):
        with app.test_request_context("/https://github.com/a/b?x=1", environ_overrides={"RAW_URI": "/https://github.com/a/b"}):
            assert requested_target("/") == "https://github.com/a/b?x=1"


def test_create_app_defaults(write_config):
    settings = GatewaySettings(config_path=write_config(allow=["alice"]))
    app = create_app(settings=settings)
    ext = app.extensions["ghproxy"]
    assert ext["settings"] is settings
    assert ext["engine"].store is ext["store"]
    assert ext["store"].current().version == 0
