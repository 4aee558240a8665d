#!/usr/bin/env python3
"""Flask integration example for the session store server."""

import logging

from flask import Flask, make_response, request

from session_upload import SessionServer, SQLiteSessionStorage

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

app = Flask(__name__)

storage = SQLiteSessionStorage(db_path="sessions.db", upload_dir="uploads")
session_server = SessionServer(storage=storage, base_path="/2", max_size=150 * 1024 * 1024)


@app.route("/2/files/<path:endpoint>", methods=["POST"])
def handle_session_request(endpoint):
    """Handle session upload protocol requests."""
    status, response_headers, response_body = session_server.handle_request(
        request.method, request.path, dict(request.headers), request.get_data()
    )

    response = make_response(response_body, status)
    for key, value in response_headers.items():
        response.headers[key] = value

    return response


if __name__ == "__main__":
    print("Session store with Flask running on http://0.0.0.0:5000")
    print("API endpoint: http://0.0.0.0:5000/2")
    print("Press Ctrl+C to stop")
    app.run(host="0.0.0.0", port=5000, debug=False, threaded=True)
