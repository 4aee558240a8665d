"""Integration tests for Flask example."""

import json
import os
import tempfile

import pytest

# Skip tests if Flask is not installed
pytest.importorskip("flask")

from flask import Flask
from flask.testing import FlaskClient

from session_upload import SessionServer, SQLiteSessionStorage
from session_upload.content_hash import ContentHash


@pytest.fixture
def temp_dir():
    """Create a temporary directory for uploads."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def flask_app(temp_dir):
    """Create a Flask app with the session server for testing."""
    app = Flask(__name__)
    app.config["TESTING"] = True

    db_path = os.path.join(temp_dir, "test_sessions.db")
    upload_dir = os.path.join(temp_dir, "uploads")
    storage = SQLiteSessionStorage(db_path=db_path, upload_dir=upload_dir)
    session_server = SessionServer(storage=storage, base_path="/2")

    @app.route("/2/files/<path:endpoint>", methods=["POST"])
    def handle_session_request(endpoint):
        from flask import make_response, request

        status, headers, body = session_server.handle_request(
            request.method, request.path, dict(request.headers), request.get_data()
        )
        response = make_response(body, status)
        for key, value in headers.items():
            response.headers[key] = value
        return response

    return app


@pytest.fixture
def client(flask_app):
    """Create a test client."""
    return flask_app.test_client()


def arg_header(arg):
    return {"Dropbox-API-Arg": json.dumps(arg)}


def start_session(client: FlaskClient) -> str:
    response = client.post("/2/files/upload_session/start", headers=arg_header({}))
    assert response.status_code == 200
    return response.get_json()["session_id"]


def test_flask_start_session(client: FlaskClient):
    """Test starting a session."""
    assert start_session(client)


def test_flask_full_upload(client: FlaskClient):
    """Test appending out of order, finishing and downloading."""
    session_id = start_session(client)

    for offset, data, close in ((5, b" world", True), (0, b"hello", False)):
        arg = {
            "cursor": {"session_id": session_id, "offset": offset},
            "close": close,
            "content_hash": ContentHash.from_bytes(data).finish_hex(),
        }
        response = client.post(
            "/2/files/upload_session/append_v2", headers=arg_header(arg), data=data
        )
        assert response.status_code == 200

    arg = {"cursor": {"session_id": session_id, "offset": 11}, "commit": {"path": "/hello.txt"}}
    response = client.post("/2/files/upload_session/finish", headers=arg_header(arg))
    assert response.status_code == 200
    assert response.get_json()["size"] == 11

    response = client.post(
        "/2/files/download", headers={**arg_header({"path": "/hello.txt"}), "Range": "bytes=6-"}
    )
    assert response.status_code == 206
    assert response.data == b"world"
    assert json.loads(response.headers["Dropbox-API-Result"])["path_display"] == "/hello.txt"


def test_flask_incorrect_offset(client: FlaskClient):
    """Test that the conflict body carries the correct offset."""
    session_id = start_session(client)
    arg = {"cursor": {"session_id": session_id, "offset": 3}, "close": False}
    response = client.post("/2/files/upload_session/append_v2", headers=arg_header(arg))

    assert response.status_code == 409
    assert response.get_json()["error"] == {".tag": "incorrect_offset", "correct_offset": 0}


def test_flask_get_metadata_not_found(client: FlaskClient):
    """Test an RPC endpoint with a JSON body."""
    response = client.post("/2/files/get_metadata", json={"path": "/missing"})
    assert response.status_code == 409
    assert response.get_json()["error"]["path"][".tag"] == "not_found"


def test_flask_unknown_endpoint(client: FlaskClient):
    """Test an unknown endpoint."""
    response = client.post("/2/files/nothing", headers=arg_header({}))
    assert response.status_code == 404
